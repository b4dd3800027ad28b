import enum
from datetime import date, datetime
from decimal import Decimal
from pydantic import BaseModel
from typing import Optional, List


class Connection(BaseModel):
    tenant_id: str
    user_id: str
    organization_id: Optional[str] = None
    realm_id: str
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_created_at: datetime
    refresh_token_expires_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
    company_name: Optional[str] = None
    connected_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TokenSet(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int = 3600
    x_refresh_token_expires_in: Optional[int] = None


class UsableToken(BaseModel):
    access_token: str
    realm_id: str


class ConnectionHealth(BaseModel):
    connected: bool
    usable: bool = False
    needs_reconnect: bool = False
    realm_id: Optional[str] = None
    company_name: Optional[str] = None
    access_token_expired: bool = True
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    refresh_token_age_days: Optional[int] = None
    last_refreshed_at: Optional[datetime] = None


class PublishTarget(str, enum.Enum):
    expense = "Expense"
    bill = "Bill"


class PaymentAccountType(str, enum.Enum):
    bank = "Bank"
    credit_card = "Credit Card"


class TransactionKind(str, enum.Enum):
    purchase = "Purchase"
    bill = "Bill"


class PublishRequest(BaseModel):
    vendor_name: Optional[str] = None
    transaction_date: Optional[date] = None
    total: Optional[Decimal] = None
    expense_account_id: Optional[str] = None
    payment_account_id: Optional[str] = None
    payment_account_type: PaymentAccountType = PaymentAccountType.bank
    is_paid: bool = True
    publish_target: PublishTarget = PublishTarget.expense
    description: Optional[str] = None
    paid_by: Optional[str] = None
    due_date: Optional[date] = None
    image_url: Optional[str] = None


class PublishResult(BaseModel):
    transaction_id: str
    transaction_type: TransactionKind
    attachment_uploaded: bool = False


class AccountBase(BaseModel):
    id: str
    name: str
    type: Optional[str] = None
    sub_type: Optional[str] = None
    balance: Optional[float] = None


class ChartOfAccountsResponse(BaseModel):
    accounts: List[AccountBase]
