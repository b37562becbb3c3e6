"""
Per-tenant database provider

Each tenant owns a dedicated database. Two backends are supported:
SQLite (one file per tenant, used in development and tests) and PostgreSQL
(one database per tenant on a shared server).
"""

from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional
import os
import re
import shutil
import sqlite3
import subprocess
import tempfile

from sqlalchemy import (
    Boolean, Column, DateTime, Integer, MetaData, String, Table,
    create_engine, inspect, select, text
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
import structlog

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.core.errors import NotFoundError, TransientInfrastructureError, ValidationError
from tenant_lifecycle.models.tenant import Tenant

logger = structlog.get_logger(__name__)

SUPER_ADMIN_ROLE = "Super Administrator"
DEFAULT_ROLES = [SUPER_ADMIN_ROLE, "Administrator", "Employee"]
CORE_MODULE = "core"

_NAME_RE = re.compile(r"^[a-z0-9_]+$")

# Dumps are copied between pg_dump/psql and backup storage in pieces of this size
STREAM_CHUNK_SIZE = 1024 * 1024

# Tenant-side schema
tenant_metadata = MetaData()

roles_table = Table(
    "roles", tenant_metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("is_protected", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False),
)

modules_table = Table(
    "modules", tenant_metadata,
    Column("code", String(100), primary_key=True),
    Column("is_enabled", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False),
)

users_table = Table(
    "users", tenant_metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255), nullable=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("role", String(100), nullable=False),
    Column("created_at", DateTime, nullable=False),
)

settings_table = Table(
    "settings", tenant_metadata,
    Column("key", String(100), primary_key=True),
    Column("value", String(1000), nullable=True),
)

REQUIRED_TABLES = sorted(tenant_metadata.tables.keys())


class SQLiteDatabaseBackend:
    """One SQLite file per tenant database inside a directory"""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def path_for(self, name: str) -> Path:
        return self.directory / f"{name}.sqlite3"

    def url_for(self, name: str) -> str:
        return f"sqlite:///{self.path_for(name)}"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def create(self, name: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        # Opening a connection creates the file
        sqlite3.connect(str(self.path_for(name))).close()

    def drop(self, name: str) -> None:
        for suffix in ("", "-journal", "-wal", "-shm"):
            path = Path(f"{self.path_for(name)}{suffix}")
            if path.exists():
                path.unlink()

    def dump(self, name: str, stream: BinaryIO) -> None:
        connection = sqlite3.connect(str(self.path_for(name)))
        try:
            for line in connection.iterdump():
                stream.write(f"{line}\n".encode("utf-8"))
        finally:
            connection.close()

    def load(self, name: str, stream: BinaryIO) -> None:
        """Replace the database contents with the dumped SQL"""
        script = stream.read().decode("utf-8")
        self.drop(name)
        self.create(name)
        connection = sqlite3.connect(str(self.path_for(name)))
        try:
            connection.executescript(script)
            connection.commit()
        finally:
            connection.close()


class PostgresDatabaseBackend:
    """One database per tenant on a shared PostgreSQL server"""

    def __init__(self, server_url: str):
        self.server_url = make_url(server_url)
        self._admin_engine: Optional[Engine] = None

    @property
    def admin_engine(self) -> Engine:
        # CREATE/DROP DATABASE cannot run inside a transaction
        if self._admin_engine is None:
            self._admin_engine = create_engine(self.server_url, isolation_level="AUTOCOMMIT", pool_pre_ping=True)
        return self._admin_engine

    def url_for(self, name: str) -> str:
        return self.server_url.set(database=name).render_as_string(hide_password=False)

    def _libpq_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.server_url.password:
            env["PGPASSWORD"] = str(self.server_url.password)
        return env

    def _libpq_args(self, name: str) -> List[str]:
        args = ["--dbname", name]
        if self.server_url.host:
            args += ["--host", self.server_url.host]
        if self.server_url.port:
            args += ["--port", str(self.server_url.port)]
        if self.server_url.username:
            args += ["--username", self.server_url.username]
        return args

    def exists(self, name: str) -> bool:
        with self.admin_engine.connect() as conn:
            row = conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": name}
            ).first()
        return row is not None

    def create(self, name: str) -> None:
        with self.admin_engine.connect() as conn:
            conn.execute(text(f'CREATE DATABASE "{name}"'))

    def drop(self, name: str) -> None:
        with self.admin_engine.connect() as conn:
            conn.execute(text(f'DROP DATABASE IF EXISTS "{name}" WITH (FORCE)'))

    def _stream(self, command: List[str], source: Optional[BinaryIO] = None, sink: Optional[BinaryIO] = None) -> None:
        """Run a libpq client, feeding it `source` or copying its output to `sink`.

        Data moves in STREAM_CHUNK_SIZE pieces, so dump size is bounded by
        storage rather than worker memory. Only one direction is used per call.
        stderr goes to a temporary file and is reported on a non-zero exit.
        """
        if shutil.which(command[0]) is None:
            raise TransientInfrastructureError(f"{command[0]} is not available on this worker")

        with tempfile.TemporaryFile() as errors:
            with subprocess.Popen(
                command,
                env=self._libpq_env(),
                stdin=subprocess.DEVNULL if source is None else subprocess.PIPE,
                stdout=subprocess.DEVNULL if sink is None else subprocess.PIPE,
                stderr=errors,
            ) as process:
                try:
                    if sink is not None:
                        shutil.copyfileobj(process.stdout, sink, STREAM_CHUNK_SIZE)
                    if source is not None:
                        _feed(source, process.stdin)
                except BaseException:
                    process.kill()
                    raise
                returncode = process.wait()

            if returncode != 0:
                errors.seek(0)
                stderr = errors.read().decode("utf-8", "replace").strip()
                raise TransientInfrastructureError(
                    f"{command[0]} failed (exit {returncode}): {stderr}",
                    context={"command": command[0], "returncode": returncode},
                )

    def dump(self, name: str, stream: BinaryIO) -> None:
        self._stream(["pg_dump", "--no-owner", "--clean", "--if-exists"] + self._libpq_args(name), sink=stream)

    def load(self, name: str, stream: BinaryIO) -> None:
        self._stream(["psql", "--quiet", "--set", "ON_ERROR_STOP=1"] + self._libpq_args(name), source=stream)


def _feed(source: BinaryIO, pipe: BinaryIO) -> None:
    """Copy `source` into a child's stdin, then close it"""
    try:
        shutil.copyfileobj(source, pipe, STREAM_CHUNK_SIZE)
    except BrokenPipeError:
        logger.warning("Database client stopped reading its input early")
    finally:
        try:
            pipe.close()
        except BrokenPipeError:
            # Same early exit; the return code carries the failure
            pass


class TenantDatabaseManager:
    """Create, migrate, seed, verify, dump and drop tenant databases"""

    def __init__(self, backend, prefix: Optional[str] = None):
        self.backend = backend
        self.prefix = prefix if prefix is not None else get_settings().TENANT_DATABASE_PREFIX

    @classmethod
    def from_settings(cls) -> "TenantDatabaseManager":
        settings = get_settings()
        url = make_url(settings.tenant_database_url)
        if url.get_backend_name() == "sqlite":
            database = url.database
            if not database or database == ":memory:":
                directory = "storage/databases"
            else:
                directory = str(Path(database).parent / "tenants")
            return cls(SQLiteDatabaseBackend(directory))
        return cls(PostgresDatabaseBackend(settings.tenant_database_url))

    def database_name(self, tenant: Tenant) -> str:
        name = f"{self.prefix}{tenant.id.hex}"
        if not _NAME_RE.match(name):
            raise ValidationError(f"Invalid tenant database name: {name}", tenant_id=tenant.id)
        return name

    def engine_for(self, name: str) -> Engine:
        return create_engine(self.backend.url_for(name))

    def exists(self, name: str) -> bool:
        try:
            return self.backend.exists(name)
        except OperationalError as e:
            raise TransientInfrastructureError(f"Database server unavailable: {e}", cause=e)

    def create(self, name: str) -> bool:
        """Create the database; returns False when it already existed"""
        if self.exists(name):
            logger.info("Tenant database already exists, reusing", database=name)
            return False
        try:
            self.backend.create(name)
        except OperationalError as e:
            raise TransientInfrastructureError(f"Could not create database {name}: {e}", cause=e)
        logger.info("Tenant database created", database=name)
        return True

    def drop(self, name: str) -> None:
        try:
            self.backend.drop(name)
        except OperationalError as e:
            raise TransientInfrastructureError(f"Could not drop database {name}: {e}", cause=e)
        logger.info("Tenant database dropped", database=name)

    def migrate(self, name: str) -> None:
        engine = self.engine_for(name)
        try:
            tenant_metadata.create_all(engine)
        finally:
            engine.dispose()
        logger.info("Tenant database migrated", database=name)

    def seed(self, name: str, modules: List[str], admin: Optional[Dict[str, Any]] = None) -> None:
        """Insert default roles, enabled modules and the bootstrap admin (idempotent)"""
        now = utcnow()
        engine = self.engine_for(name)
        try:
            with engine.begin() as conn:
                existing_roles = set(conn.execute(select(roles_table.c.name)).scalars())
                for role in DEFAULT_ROLES:
                    if role not in existing_roles:
                        conn.execute(roles_table.insert().values(
                            name=role, is_protected=(role == SUPER_ADMIN_ROLE), created_at=now
                        ))

                existing_modules = set(conn.execute(select(modules_table.c.code)).scalars())
                for code in [CORE_MODULE, *modules]:
                    if code not in existing_modules:
                        conn.execute(modules_table.insert().values(code=code, is_enabled=True, created_at=now))
                        existing_modules.add(code)

                if admin and admin.get("email"):
                    found = conn.execute(
                        select(users_table.c.id).where(users_table.c.email == admin["email"])
                    ).first()
                    if found is None:
                        conn.execute(users_table.insert().values(
                            name=admin.get("name"), email=admin["email"], role=SUPER_ADMIN_ROLE, created_at=now
                        ))
        finally:
            engine.dispose()
        logger.info("Tenant database seeded", database=name, modules=modules)

    def verify(self, name: str) -> List[str]:
        """Return the list of problems; empty means the database is usable"""
        if not self.exists(name):
            return [f"Database {name} does not exist"]
        problems = []
        engine = self.engine_for(name)
        try:
            present = set(inspect(engine).get_table_names())
            missing = [t for t in REQUIRED_TABLES if t not in present]
            if missing:
                problems.append(f"Missing tables: {', '.join(missing)}")
            elif not self._has_role(engine, SUPER_ADMIN_ROLE):
                problems.append(f"Missing role: {SUPER_ADMIN_ROLE}")
        finally:
            engine.dispose()
        return problems

    def _has_role(self, engine: Engine, role: str) -> bool:
        with engine.connect() as conn:
            return conn.execute(select(roles_table.c.id).where(roles_table.c.name == role)).first() is not None

    def dump(self, name: str, stream: BinaryIO) -> None:
        if not self.exists(name):
            raise NotFoundError(f"Database {name} does not exist", operation="dump")
        self.backend.dump(name, stream)

    def load(self, name: str, stream: BinaryIO) -> None:
        if not self.exists(name):
            self.create(name)
        self.backend.load(name, stream)
        logger.info("Tenant database loaded from dump", database=name)
