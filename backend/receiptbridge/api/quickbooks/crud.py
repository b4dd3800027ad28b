from datetime import datetime
from typing import List, Optional
from sqlalchemy import select

from receiptbridge.core.database import SessionLocal
from .models import QuickBooksConnection
from .schemas import Connection


_WRITABLE_FIELDS = (
    "user_id",
    "organization_id",
    "realm_id",
    "access_token",
    "refresh_token",
    "access_token_expires_at",
    "refresh_token_created_at",
    "refresh_token_expires_at",
    "last_refreshed_at",
    "company_name",
)


class ConnectionStore:
    """Durable per-tenant QuickBooks credentials.

    Every call opens its own session so refreshes started from a request can
    finish after that request's session is gone.
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    async def load(self, tenant_id: str) -> Optional[Connection]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(QuickBooksConnection).where(QuickBooksConnection.tenant_id == tenant_id)
            )
            record = result.scalar_one_or_none()
            return Connection.model_validate(record) if record else None

    async def save(self, connection: Connection) -> Connection:
        async with self.session_factory() as db:
            result = await db.execute(
                select(QuickBooksConnection).where(
                    QuickBooksConnection.tenant_id == connection.tenant_id
                )
            )
            record = result.scalar_one_or_none()

            if record is None:
                record = QuickBooksConnection(tenant_id=connection.tenant_id)
                db.add(record)

            # access and refresh token are always written in the same commit
            for field in _WRITABLE_FIELDS:
                setattr(record, field, getattr(connection, field))

            await db.commit()
            await db.refresh(record)
            return Connection.model_validate(record)

    async def delete(self, tenant_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(QuickBooksConnection).where(QuickBooksConnection.tenant_id == tenant_id)
            )
            record = result.scalar_one_or_none()
            if not record:
                return False
            await db.delete(record)
            await db.commit()
            return True

    async def list_stale(
        self,
        created_before: datetime,
        refreshed_before: datetime,
        now: datetime,
        limit: int = 100,
    ) -> List[Connection]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(QuickBooksConnection)
                .where(
                    QuickBooksConnection.refresh_token_created_at < created_before,
                    (QuickBooksConnection.last_refreshed_at.is_(None))
                    | (QuickBooksConnection.last_refreshed_at < refreshed_before),
                    (QuickBooksConnection.refresh_token_expires_at.is_(None))
                    | (QuickBooksConnection.refresh_token_expires_at > now),
                )
                .order_by(QuickBooksConnection.refresh_token_created_at.asc())
                .limit(limit)
            )
            return [Connection.model_validate(r) for r in result.scalars().all()]
