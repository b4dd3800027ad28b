"""
Publishing reviewed receipts to QuickBooks.

Two shapes exist on the ledger side:

* ``Expense`` -> a single Purchase paid from a bank or card account.
* ``Bill``    -> a Bill (accounts payable) followed by a BillPayment that
  settles it. The two calls run as a saga so a failed payment never leaves
  an orphaned unpaid bill behind.

The receipt image, when present, is attached last and on a best-effort basis.
"""

import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .attachments import attach_receipt_image, download_receipt_image
from .client import QuickBooksClient
from .errors import (
    MissingExpenseCategory,
    MissingPaymentAccount,
    MissingRequiredField,
    PaymentCreationFailed,
)
from .saga import Saga, SagaStep, SagaStepFailed
from .schemas import (
    PaymentAccountType,
    PublishRequest,
    PublishResult,
    PublishTarget,
    TransactionKind,
)
from .tokens import TokenLifecycleManager

logger = logging.getLogger(__name__)

MINOR_UNIT = Decimal("0.01")
DEFAULT_BILL_TERMS_DAYS = 30
PRIVATE_NOTE_MAX = 4000

BILL_STEP = "bill"
PAYMENT_STEP = "bill_payment"


def to_minor_units(amount) -> Decimal:
    return Decimal(str(amount)).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def _amount(amount: Decimal) -> float:
    # JSON carries numbers; the value is already rounded to cents
    return float(amount)


def build_private_note(description: Optional[str], paid_by: Optional[str]) -> str:
    note = (description or "").strip()
    if paid_by:
        paid_by_note = f"Paid by: {paid_by}"
        note = f"{note}\n{paid_by_note}" if note else paid_by_note
    return note[:PRIVATE_NOTE_MAX]


def validate_publish_request(request: PublishRequest) -> None:
    missing = []
    if not (request.vendor_name or "").strip():
        missing.append("vendor")
    if request.transaction_date is None:
        missing.append("date")
    if request.total is None or Decimal(request.total) == 0:
        missing.append("total")
    if missing:
        raise MissingRequiredField(missing)
    if not request.expense_account_id:
        raise MissingExpenseCategory()
    if not request.payment_account_id:
        raise MissingPaymentAccount()


def _expense_line(amount: Decimal, expense_account_id: str, description: Optional[str]) -> dict:
    line = {
        "Amount": _amount(amount),
        "DetailType": "AccountBasedExpenseLineDetail",
        "AccountBasedExpenseLineDetail": {
            "AccountRef": {"value": str(expense_account_id)},
        },
    }
    if description:
        line["Description"] = description[:PRIVATE_NOTE_MAX]
    return line


def build_purchase_payload(request: PublishRequest, vendor_id: str, amount: Decimal, note: str) -> dict:
    payment_type = (
        "CreditCard"
        if request.payment_account_type == PaymentAccountType.credit_card
        else "Cash"
    )
    payload = {
        "PaymentType": payment_type,
        "AccountRef": {"value": str(request.payment_account_id)},
        "EntityRef": {"value": str(vendor_id), "type": "Vendor"},
        "TxnDate": request.transaction_date.isoformat(),
        "TotalAmt": _amount(amount),
        "Line": [_expense_line(amount, request.expense_account_id, request.description)],
    }
    if note:
        payload["PrivateNote"] = note
    return payload


def build_bill_payload(request: PublishRequest, vendor_id: str, amount: Decimal, note: str) -> dict:
    due_date = request.due_date or (
        request.transaction_date + timedelta(days=DEFAULT_BILL_TERMS_DAYS)
    )
    payload = {
        "VendorRef": {"value": str(vendor_id)},
        "TxnDate": request.transaction_date.isoformat(),
        "DueDate": due_date.isoformat(),
        "TotalAmt": _amount(amount),
        "Line": [_expense_line(amount, request.expense_account_id, request.description)],
    }
    if note:
        payload["PrivateNote"] = note
    return payload


def build_bill_payment_payload(
    request: PublishRequest, vendor_id: str, bill_id: str, amount: Decimal
) -> dict:
    payload = {
        "VendorRef": {"value": str(vendor_id)},
        "TotalAmt": _amount(amount),
        "TxnDate": request.transaction_date.isoformat(),
        "Line": [
            {
                "Amount": _amount(amount),
                "LinkedTxn": [{"TxnId": str(bill_id), "TxnType": "Bill"}],
            }
        ],
    }
    if request.payment_account_type == PaymentAccountType.credit_card:
        payload["PayType"] = "CreditCard"
        payload["CreditCardPayment"] = {"CCAccountRef": {"value": str(request.payment_account_id)}}
    else:
        payload["PayType"] = "Check"
        payload["CheckPayment"] = {"BankAccountRef": {"value": str(request.payment_account_id)}}
    return payload


class PublishOrchestrator:
    def __init__(
        self,
        tokens: TokenLifecycleManager,
        client_factory=QuickBooksClient,
        downloader=download_receipt_image,
    ):
        self.tokens = tokens
        self.client_factory = client_factory
        self.downloader = downloader

    async def publish(
        self,
        tenant_id: str,
        request: PublishRequest,
        receipt_id: Optional[str] = None,
    ) -> PublishResult:
        validate_publish_request(request)

        token = await self.tokens.resolve_usable_token(tenant_id)
        client = self.client_factory(token.access_token, token.realm_id)

        amount = to_minor_units(request.total)
        note = build_private_note(request.description, request.paid_by)
        vendor_name = request.vendor_name.strip()

        logger.info(
            "Publishing receipt %s for %s as %s",
            receipt_id or "-", tenant_id, request.publish_target.value,
        )

        vendor_id = await client.get_or_create_vendor(vendor_name)

        if request.publish_target == PublishTarget.expense:
            purchase = await client.create_purchase(
                build_purchase_payload(request, vendor_id, amount, note)
            )
            transaction_id = str(purchase["Id"])
            kind = TransactionKind.purchase
            logger.info("Purchase %s created for receipt %s", transaction_id, receipt_id or "-")
        else:
            transaction_id = await self._publish_bill(client, request, vendor_id, amount, note)
            kind = TransactionKind.bill

        attached = await attach_receipt_image(
            client, kind.value, transaction_id, request.image_url, downloader=self.downloader
        )

        return PublishResult(
            transaction_id=transaction_id,
            transaction_type=kind,
            attachment_uploaded=attached,
        )

    async def _publish_bill(
        self,
        client: QuickBooksClient,
        request: PublishRequest,
        vendor_id: str,
        amount: Decimal,
        note: str,
    ) -> str:
        async def create_bill(ctx):
            return await client.create_bill(build_bill_payload(request, vendor_id, amount, note))

        async def delete_bill(ctx, bill):
            logger.warning("Deleting orphaned bill %s", bill.get("Id"))
            await client.delete_bill(str(bill["Id"]), str(bill.get("SyncToken", "0")))

        async def pay_bill(ctx):
            bill_id = str(ctx[BILL_STEP]["Id"])
            return await client.create_bill_payment(
                build_bill_payment_payload(request, vendor_id, bill_id, amount)
            )

        steps = [SagaStep(BILL_STEP, create_bill, delete_bill)]
        if request.is_paid:
            steps.append(SagaStep(PAYMENT_STEP, pay_bill))

        ctx = {}
        try:
            await Saga(steps).run(ctx)
        except SagaStepFailed as e:
            if e.step != PAYMENT_STEP:
                raise e.cause
            bill_id = str(ctx[BILL_STEP].get("Id"))
            if BILL_STEP in e.compensation_errors:
                logger.error("Bill payment failed and bill %s could not be deleted", bill_id)
            else:
                logger.error("Bill payment failed, bill %s deleted: %s", bill_id, e.cause)
            raise PaymentCreationFailed(bill_id=bill_id, cause=e.cause) from e.cause

        bill_id = str(ctx[BILL_STEP]["Id"])
        if PAYMENT_STEP in ctx:
            logger.info("Bill %s created and paid by payment %s", bill_id, ctx[PAYMENT_STEP].get("Id"))
        else:
            logger.info("Bill %s created, left unpaid", bill_id)
        return bill_id
