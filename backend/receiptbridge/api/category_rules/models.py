import enum
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, Enum, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from receiptbridge.core.database import Base
from receiptbridge.api.categories.models import LedgerCategory


class MatchTypeEnum(str, enum.Enum):
    exact = "exact"
    contains = "contains"


class CategoryRule(Base):
    __tablename__ = "category_rules"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(255), nullable=False, index=True)

    vendor_pattern = Column(String(255), nullable=False)
    match_type = Column(Enum(MatchTypeEnum), nullable=False, default=MatchTypeEnum.exact)
    target_category_id = Column(
        Integer, ForeignKey("ledger_categories.id", ondelete="CASCADE"), nullable=False
    )

    is_active = Column(Boolean, nullable=False, default=True)
    times_applied = Column(Integer, nullable=False, default=0)
    created_from_receipt_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    category = relationship(LedgerCategory, lazy="joined")

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "vendor_pattern", "match_type", "target_category_id",
            name="uq_rule_tenant_pattern_type_category",
        ),
        Index("ix_rule_tenant_active_type", "tenant_id", "is_active", "match_type"),
    )

    def __repr__(self):
        return f"<CategoryRule id={self.id} {self.match_type}:{self.vendor_pattern!r}>"
