from sqlalchemy import Column, Integer, String, Boolean, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from receiptbridge.core.database import Base


class LedgerCategory(Base):
    """Local cache of a tenant's QuickBooks expense accounts."""

    __tablename__ = "ledger_categories"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    qb_account_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    account_type = Column(String(64), nullable=True)
    account_sub_type = Column(String(128), nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    last_synced_at = Column(DateTime(timezone=True), server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "qb_account_id", name="uq_category_tenant_account"),
    )
