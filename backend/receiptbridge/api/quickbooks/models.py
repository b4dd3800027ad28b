from sqlalchemy import Column, Integer, String, Text, DateTime, Index
from sqlalchemy.sql import func
from receiptbridge.core.database import Base


class QuickBooksConnection(Base):
    __tablename__ = "quickbooks_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(255), nullable=False, unique=True)
    user_id = Column(String(255), nullable=False)
    organization_id = Column(String(255), nullable=True)

    realm_id = Column(String(255), nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)

    access_token_expires_at = Column(DateTime(timezone=True), nullable=False)
    refresh_token_created_at = Column(DateTime(timezone=True), nullable=False)
    refresh_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)

    company_name = Column(String(255), nullable=True)
    connected_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index("ix_qb_conn_realm", "realm_id"),
        Index("ix_qb_conn_refresh_created", "refresh_token_created_at"),
    )

    def __repr__(self):
        return f"<QuickBooksConnection tenant={self.tenant_id} realm={self.realm_id}>"
