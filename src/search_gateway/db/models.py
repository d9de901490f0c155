"""SQLAlchemy models for the quota ledger."""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from search_gateway.db.base import Base


class OrgPlan(Base):
    """Plan tier an organization is subscribed to."""

    __tablename__ = "org_plans"

    org_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    plan_tier: Mapped[str] = mapped_column(String(50), nullable=False, default="free")


class OrgQuota(Base):
    """Metered usage of one resource by one organization for the current period."""

    __tablename__ = "org_quotas"

    org_id: Mapped[str] = mapped_column(String(255), nullable=False)
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    plan_tier: Mapped[str] = mapped_column(String(50), nullable=False, default="free")
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # "limit" is reserved in SQL
    limit: Mapped[int] = mapped_column("quota_limit", Integer, nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    reset_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("org_id", "resource", name="uq_org_quotas_org_resource"),
        Index("ix_org_quotas_org", "org_id"),
    )
