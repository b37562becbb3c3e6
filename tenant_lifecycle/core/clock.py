"""
Naive-UTC clock shared by models and services
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo (matches stored column values)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
