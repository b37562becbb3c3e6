"""
Background job to purge archived tenants past their retention window

This script should be run periodically (e.g., via cron) when celery beat
is not deployed. It sends purge notices to tenants nearing the end of
retention, then purges every eligible tenant.
"""

import argparse
import sys
import uuid

from sqlmodel import Session
import structlog

from tenant_lifecycle.core.database import engine
from tenant_lifecycle.core.logging import configure_logging
from tenant_lifecycle.services.factory import build_services

logger = structlog.get_logger(__name__)


def purge_expired_tenants(session: Session, dry_run: bool = False) -> dict:
    """Notify tenants nearing purge, then purge the eligible ones"""
    services = build_services(session, inline=True)

    if dry_run:
        eligible = services.retention.tenants_eligible_for_purge(session)
        for tenant in eligible:
            logger.info("Would purge tenant", tenant_id=str(tenant.id), subdomain=tenant.subdomain,
                        deleted_at=tenant.deleted_at.isoformat(),
                        blocked=bool((tenant.data or {}).get("purge_blocked")))
        return {"eligible": len(eligible), "dry_run": True}

    notices = services.purge.send_purge_notices()
    results = services.purge.purge_expired()
    results["notices_sent"] = notices
    return results


def main(argv=None):
    """Main entry point for purge job"""
    parser = argparse.ArgumentParser(description="Purge archived tenants whose retention has expired")
    parser.add_argument("--dry-run", action="store_true", help="List eligible tenants without purging")
    parser.add_argument("--tenant", type=uuid.UUID, help="Purge one tenant explicitly (ignores purge_blocked)")
    args = parser.parse_args(argv)

    configure_logging()
    logger.info("Starting tenant purge job", dry_run=args.dry_run, tenant=str(args.tenant) if args.tenant else None)

    try:
        with Session(engine) as session:
            if args.tenant:
                results = build_services(session, inline=True).purge.purge(args.tenant)
            else:
                results = purge_expired_tenants(session, dry_run=args.dry_run)
            logger.info("Tenant purge job complete", results=results)

    except Exception as e:
        logger.error("Fatal error in purge job", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
