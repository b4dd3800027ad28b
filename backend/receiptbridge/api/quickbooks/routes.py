import logging
from typing import Optional
from fastapi import APIRouter, Request, HTTPException, Depends
from fastapi.responses import RedirectResponse

from receiptbridge.core import auth
from receiptbridge.core.auth import (
    ORG_ADMIN,
    ORG_BOOKKEEPER,
    Tenant,
    get_current_tenant,
    require_org_role,
)
from receiptbridge.core.config import FRONTEND_REDIRECT_URL
from .client import QuickBooksClient
from .deps import get_token_manager, get_publish_orchestrator
from .errors import (
    LedgerApiError,
    LedgerAuthError,
    LedgerValidationError,
    NotConnected,
    PaymentCreationFailed,
    QuickBooksError,
    TransientNetworkError,
)
from .publish import PublishOrchestrator
from .schemas import ChartOfAccountsResponse, ConnectionHealth, PublishRequest
from .tokens import TokenLifecycleManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/quickbooks", tags=["QuickBooks"])

admin_only = require_org_role(ORG_ADMIN)
ledger_access = require_org_role(ORG_ADMIN, ORG_BOOKKEEPER)


def to_http_error(e: QuickBooksError) -> HTTPException:
    """Translate an integration error into the response the frontend expects."""
    if isinstance(e, NotConnected):
        return HTTPException(
            status_code=401,
            detail={"message": str(e), "needs_reconnect": True},
        )
    if isinstance(e, LedgerValidationError):
        detail = {"message": str(e)}
        if getattr(e, "fields", None):
            detail["fields"] = e.fields
        return HTTPException(status_code=400, detail=detail)
    if isinstance(e, PaymentCreationFailed):
        return HTTPException(status_code=502, detail={"message": str(e)})
    if isinstance(e, LedgerAuthError):
        return HTTPException(
            status_code=401,
            detail={"message": str(e), "needs_reconnect": True},
        )
    if isinstance(e, LedgerApiError):
        return HTTPException(
            status_code=502,
            detail={"message": str(e), "fault_code": e.fault_code},
        )
    if isinstance(e, TransientNetworkError):
        return HTTPException(
            status_code=503,
            detail={"message": "QuickBooks is temporarily unreachable. Please try again."},
        )
    return HTTPException(status_code=500, detail={"message": str(e)})


def _normalize_accounts(accounts: list) -> list:
    return [
        {
            "id": a["Id"],
            "name": a["Name"],
            "type": a.get("AccountType"),
            "sub_type": a.get("AccountSubType"),
            "balance": a.get("CurrentBalance"),
        }
        for a in accounts
    ]


async def _client_for(tenant: Tenant, manager: TokenLifecycleManager) -> QuickBooksClient:
    token = await manager.resolve_usable_token(tenant.scope_key)
    return QuickBooksClient(token.access_token, token.realm_id)


# ------------------------------------------------------------
# Connection lifecycle
# ------------------------------------------------------------
@router.get("/connect")
async def connect_quickbooks(
    request: Request,
    manager: TokenLifecycleManager = Depends(get_token_manager),
):
    token = request.query_params.get("token")
    if not token:
        raise HTTPException(status_code=401, detail="Missing user token")
    # the user's token travels as OAuth state and identifies the tenant on callback
    auth.ensure_org_role(auth.tenant_from_token(token), ORG_ADMIN)

    url = await manager.authorization_url(token)
    return RedirectResponse(url=url)


@router.get("/callback")
async def quickbooks_callback(
    request: Request,
    manager: TokenLifecycleManager = Depends(get_token_manager),
):
    code = request.query_params.get("code")
    realm_id = request.query_params.get("realmId")
    token = request.query_params.get("state")
    redirect_url = f"{FRONTEND_REDIRECT_URL}?view=expense"

    if not code or not token or not realm_id:
        return RedirectResponse(url=f"{redirect_url}&error=missing_params")

    decoded = auth.decode_token(token)
    if not decoded.get("ok"):
        return RedirectResponse(url=f"{redirect_url}&error=invalid_token")

    org_id = decoded.get("org_id")
    tenant = Tenant(user_id=decoded["user_id"], organization_id=str(org_id) if org_id else None)

    try:
        connection = await manager.connect(
            tenant.scope_key,
            tenant.user_id,
            code,
            realm_id,
            organization_id=tenant.organization_id,
        )
    except QuickBooksError as e:
        logger.error("QuickBooks callback for %s failed: %s", tenant.scope_key, e)
        return RedirectResponse(url=f"{redirect_url}&error=token_exchange_failed")

    try:
        client = QuickBooksClient(connection.access_token, connection.realm_id)
        info = await client.get_company_info()
        if info.get("CompanyName"):
            await manager.set_company_name(tenant.scope_key, info["CompanyName"])
    except QuickBooksError as e:
        logger.warning("Could not fetch company info for %s: %s", tenant.scope_key, e)

    return RedirectResponse(url=f"{redirect_url}&qb_connected=true")


@router.get("/status", response_model=ConnectionHealth)
async def quickbooks_status(
    tenant: Tenant = Depends(get_current_tenant),
    manager: TokenLifecycleManager = Depends(get_token_manager),
):
    return await manager.get_health(tenant.scope_key)


@router.delete("/disconnect")
async def disconnect_quickbooks(
    tenant: Tenant = Depends(admin_only),
    manager: TokenLifecycleManager = Depends(get_token_manager),
):
    deleted = await manager.disconnect(tenant.scope_key)
    return {
        "ok": True,
        "message": "QuickBooks disconnected" if deleted else "No QuickBooks connection found",
    }


# ------------------------------------------------------------
# Accounts
# ------------------------------------------------------------
@router.get("/accounts", response_model=ChartOfAccountsResponse)
async def fetch_expense_accounts(
    tenant: Tenant = Depends(ledger_access),
    manager: TokenLifecycleManager = Depends(get_token_manager),
):
    try:
        client = await _client_for(tenant, manager)
        accounts = await client.fetch_expense_accounts()
    except QuickBooksError as e:
        raise to_http_error(e)
    return {"accounts": _normalize_accounts(accounts)}


@router.get("/payment-accounts", response_model=ChartOfAccountsResponse)
async def fetch_payment_accounts(
    tenant: Tenant = Depends(ledger_access),
    manager: TokenLifecycleManager = Depends(get_token_manager),
):
    try:
        client = await _client_for(tenant, manager)
        accounts = await client.fetch_payment_accounts()
    except QuickBooksError as e:
        raise to_http_error(e)
    return {"accounts": _normalize_accounts(accounts)}


# ------------------------------------------------------------
# Publishing
# ------------------------------------------------------------
@router.post("/publish")
async def publish_receipt(
    body: PublishRequest,
    receipt_id: Optional[str] = None,
    tenant: Tenant = Depends(ledger_access),
    orchestrator: PublishOrchestrator = Depends(get_publish_orchestrator),
):
    try:
        result = await orchestrator.publish(tenant.scope_key, body, receipt_id=receipt_id)
    except QuickBooksError as e:
        raise to_http_error(e)
    return {"ok": True, "data": result}
