"""
Optimistic concurrency for mutable lifecycle records

Every state transition bumps `version` itself. The mapper turns that column
into a guard: UPDATEs carry `WHERE version = <loaded value>`, and a row that
changed underneath a session raises StaleDataError on flush instead of
silently overwriting the newer state.
"""

from sqlalchemy.orm import declared_attr


def _versioned_mapper_args(cls):
    return {
        "version_id_col": cls.__table__.c.version,
        # Transitions increment the counter explicitly
        "version_id_generator": False,
    }


versioned_mapper_args = declared_attr(_versioned_mapper_args)
