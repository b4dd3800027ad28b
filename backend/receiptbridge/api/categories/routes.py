from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from receiptbridge.core.auth import Tenant, get_current_tenant
from receiptbridge.core.database import get_db
from receiptbridge.api.quickbooks.client import QuickBooksClient
from receiptbridge.api.quickbooks.deps import get_token_manager
from receiptbridge.api.quickbooks.errors import QuickBooksError
from receiptbridge.api.quickbooks.routes import to_http_error
from receiptbridge.api.quickbooks.tokens import TokenLifecycleManager
from . import crud
from .schemas import CategoryListResponse, CategorySyncResponse

router = APIRouter(prefix="/categories", tags=["Categories"])


@router.post("/sync", response_model=CategorySyncResponse)
async def sync_categories(
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
    manager: TokenLifecycleManager = Depends(get_token_manager),
):
    try:
        token = await manager.resolve_usable_token(tenant.scope_key)
        client = QuickBooksClient(token.access_token, token.realm_id)
        accounts = await client.fetch_expense_accounts()
    except QuickBooksError as e:
        raise to_http_error(e)

    counts = await crud.sync_categories(db, tenant.scope_key, accounts)
    return {"ok": True, **counts}


@router.get("", response_model=CategoryListResponse)
async def list_categories(
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    categories = await crud.list_categories(db, tenant.scope_key)
    return {"ok": True, "data": categories}
