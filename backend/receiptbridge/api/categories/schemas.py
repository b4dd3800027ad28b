from datetime import datetime
from pydantic import BaseModel
from typing import Optional, List


class CategoryOut(BaseModel):
    id: int
    qb_account_id: str
    name: str
    account_type: Optional[str] = None
    account_sub_type: Optional[str] = None
    active: bool
    last_synced_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CategoryListResponse(BaseModel):
    ok: bool
    data: List[CategoryOut]


class CategorySyncResponse(BaseModel):
    ok: bool
    synced: int
    added: int
    deactivated: int
