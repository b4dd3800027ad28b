from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy import update

from .models import LedgerCategory


async def get_category_by_account(db: AsyncSession, tenant_id: str, qb_account_id: str, active_only: bool = True):
    stmt = select(LedgerCategory).where(
        LedgerCategory.tenant_id == tenant_id,
        LedgerCategory.qb_account_id == str(qb_account_id),
    )
    if active_only:
        stmt = stmt.where(LedgerCategory.active == True)
    result = await db.execute(stmt)
    return result.scalars().first()


async def list_categories(db: AsyncSession, tenant_id: str):
    result = await db.execute(
        select(LedgerCategory)
        .where(LedgerCategory.tenant_id == tenant_id, LedgerCategory.active == True)
        .order_by(LedgerCategory.name.asc())
    )
    return result.scalars().all()


async def sync_categories(db: AsyncSession, tenant_id: str, accounts: list) -> dict:
    """
    Upsert the ledger's expense accounts and deactivate the ones that vanished.
    """
    now = datetime.now(timezone.utc)
    seen = []
    added = 0

    for account in accounts:
        account_id = str(account["Id"])
        seen.append(account_id)

        category = await get_category_by_account(db, tenant_id, account_id, active_only=False)
        if category is None:
            category = LedgerCategory(tenant_id=tenant_id, qb_account_id=account_id)
            db.add(category)
            added += 1

        category.name = account.get("Name") or account_id
        category.account_type = account.get("AccountType")
        category.account_sub_type = account.get("AccountSubType")
        category.active = True
        category.last_synced_at = now

    deactivated = 0
    if seen:
        result = await db.execute(
            update(LedgerCategory)
            .where(
                LedgerCategory.tenant_id == tenant_id,
                LedgerCategory.active == True,
                LedgerCategory.qb_account_id.not_in(seen),
            )
            .values(active=False, last_synced_at=now)
            .execution_options(synchronize_session=False)
        )
        deactivated = result.rowcount or 0

    await db.commit()
    return {"synced": len(accounts), "added": added, "deactivated": deactivated}
