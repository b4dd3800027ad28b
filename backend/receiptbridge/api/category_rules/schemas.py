from datetime import datetime
from pydantic import BaseModel
from typing import Optional, List

from .models import MatchTypeEnum


class CategoryRuleOut(BaseModel):
    id: int
    tenant_id: str
    vendor_pattern: str
    match_type: MatchTypeEnum
    target_category_id: int
    is_active: bool = True
    times_applied: int = 0
    created_from_receipt_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    category_name: Optional[str] = None
    qb_account_id: Optional[str] = None


class CategoryRuleCreate(BaseModel):
    vendor_pattern: str
    qb_account_id: str
    match_type: MatchTypeEnum = MatchTypeEnum.exact
    receipt_id: Optional[str] = None


class CategoryRuleUpdate(BaseModel):
    qb_account_id: Optional[str] = None
    match_type: Optional[MatchTypeEnum] = None
    is_active: Optional[bool] = None
    vendor_pattern: Optional[str] = None


class MatchRequest(BaseModel):
    vendor_name: str


class MatchResponse(BaseModel):
    ok: bool
    matched: bool
    rule: Optional[CategoryRuleOut] = None


class CategoryRuleListResponse(BaseModel):
    ok: bool
    data: List[CategoryRuleOut]


class ApiResponse(BaseModel):
    ok: bool
    message: Optional[str] = None
    error: Optional[str] = None
    data: Optional[CategoryRuleOut] = None


class LearnRequest(BaseModel):
    vendor_name: Optional[str] = None
    qb_account_id: str
    receipt_id: Optional[str] = None
