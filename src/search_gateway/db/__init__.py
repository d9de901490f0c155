"""Database package for the quota ledger."""

from search_gateway.db.base import Base
from search_gateway.db.manager import DatabaseManager
from search_gateway.db.models import OrgPlan, OrgQuota

__all__ = [
    "Base",
    "DatabaseManager",
    "OrgPlan",
    "OrgQuota",
]
