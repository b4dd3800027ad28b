from fastapi import APIRouter, Depends, HTTPException

from receiptbridge.core.auth import Tenant, get_current_tenant
from .crud import CategoryRuleStore, DuplicateRule, UnknownCategory
from .matcher import CategoryRuleMatcher
from .schemas import (
    ApiResponse,
    CategoryRuleCreate,
    CategoryRuleListResponse,
    CategoryRuleUpdate,
    LearnRequest,
    MatchRequest,
    MatchResponse,
)

router = APIRouter(prefix="/category-rules", tags=["Category Rules"])


def get_rule_store() -> CategoryRuleStore:
    return CategoryRuleStore()


def get_matcher(store: CategoryRuleStore = Depends(get_rule_store)) -> CategoryRuleMatcher:
    return CategoryRuleMatcher(store)


@router.get("", response_model=CategoryRuleListResponse)
async def list_rules(
    tenant: Tenant = Depends(get_current_tenant),
    store: CategoryRuleStore = Depends(get_rule_store),
):
    rules = await store.list_rules(tenant.scope_key)
    return {"ok": True, "data": rules}


@router.post("", response_model=ApiResponse)
async def create_rule(
    body: CategoryRuleCreate,
    tenant: Tenant = Depends(get_current_tenant),
    store: CategoryRuleStore = Depends(get_rule_store),
):
    try:
        rule = await store.create_rule(
            tenant.scope_key,
            body.vendor_pattern,
            body.qb_account_id,
            body.match_type,
            body.receipt_id,
        )
    except UnknownCategory as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "message": "Rule saved", "data": rule}


@router.post("/match", response_model=MatchResponse)
async def match_vendor(
    body: MatchRequest,
    tenant: Tenant = Depends(get_current_tenant),
    matcher: CategoryRuleMatcher = Depends(get_matcher),
):
    rule = await matcher.match(tenant.scope_key, body.vendor_name)
    return {"ok": True, "matched": rule is not None, "rule": rule}


@router.post("/learn", response_model=ApiResponse)
async def learn_from_assignment(
    body: LearnRequest,
    tenant: Tenant = Depends(get_current_tenant),
    store: CategoryRuleStore = Depends(get_rule_store),
):
    """Called when a user picks a category by hand for a receipt."""
    try:
        rule = await store.learn_from_assignment(
            tenant.scope_key, body.vendor_name, body.qb_account_id, body.receipt_id
        )
    except UnknownCategory as e:
        raise HTTPException(status_code=404, detail=str(e))
    if not rule:
        return {"ok": True, "message": "No vendor name, nothing learned"}
    return {"ok": True, "message": "Rule learned", "data": rule}


@router.post("/{rule_id}/applied", response_model=ApiResponse)
async def record_rule_applied(
    rule_id: int,
    tenant: Tenant = Depends(get_current_tenant),
    matcher: CategoryRuleMatcher = Depends(get_matcher),
):
    await matcher.record_applied(rule_id, tenant.scope_key)
    return {"ok": True, "message": "Usage recorded"}


@router.patch("/{rule_id}", response_model=ApiResponse)
async def update_rule(
    rule_id: int,
    body: CategoryRuleUpdate,
    tenant: Tenant = Depends(get_current_tenant),
    store: CategoryRuleStore = Depends(get_rule_store),
):
    try:
        rule = await store.update_rule(tenant.scope_key, rule_id, body.model_dump(exclude_unset=True))
    except UnknownCategory as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DuplicateRule as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    return {"ok": True, "message": "Rule updated", "data": rule}


@router.delete("/{rule_id}", response_model=ApiResponse)
async def delete_rule(
    rule_id: int,
    tenant: Tenant = Depends(get_current_tenant),
    store: CategoryRuleStore = Depends(get_rule_store),
):
    deleted = await store.delete_rule(tenant.scope_key, rule_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Rule not found")
    return {"ok": True, "message": "Rule deleted"}
