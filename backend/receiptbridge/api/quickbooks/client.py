import json
import logging
from typing import Optional

import httpx

from receiptbridge.core.config import INTUIT_ENVIRONMENT, QB_TIMEOUT
from .errors import QuickBooksError, LedgerApiError, LedgerAuthError, TransientNetworkError

logger = logging.getLogger(__name__)

MINOR_VERSION = 65
MAX_UPLOAD_BYTES = 100 * 1024 * 1024  # QBO upload request max total size
AUTH_FAULT_CODE = "3200"


def qb_base_url(environment: str = INTUIT_ENVIRONMENT) -> str:
    return (
        "https://quickbooks.api.intuit.com"
        if environment == "production"
        else "https://sandbox-quickbooks.api.intuit.com"
    )


def qb_headers(access_token: str) -> dict:
    return {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/json",
    }


def _escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _fault_code(payload) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    errors = (payload.get("Fault") or {}).get("Error") or []
    if errors:
        return str(errors[0].get("code"))
    return None


class QuickBooksClient:
    """Stateless executor for the QuickBooks Online REST API.

    Bound to one bearer token and realm; build a new one per resolved token.
    """

    def __init__(
        self,
        access_token: str,
        realm_id: str,
        base_url: Optional[str] = None,
        timeout: float = QB_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.realm_id = realm_id
        self.base_url = base_url or qb_base_url()
        self.timeout = timeout
        self.transport = transport

    def _url(self, path: str) -> str:
        return f"{self.base_url}/v3/company/{self.realm_id}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, params=None, json_body=None, files=None) -> dict:
        params = dict(params or {})
        params.setdefault("minorversion", MINOR_VERSION)
        headers = qb_headers(self.access_token)

        try:
            async with httpx.AsyncClient(
                headers=headers, timeout=self.timeout, transport=self.transport
            ) as client:
                resp = await client.request(
                    method, self._url(path), params=params, json=json_body, files=files
                )
        except httpx.TransportError as e:
            raise TransientNetworkError(f"QuickBooks request to {path} failed: {e}") from e

        if resp.status_code >= 400:
            raise self._error_from_response(path, resp)

        try:
            return resp.json()
        except ValueError:
            return {"raw": resp.text}

    def _error_from_response(self, path: str, resp: httpx.Response) -> QuickBooksError:
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        fault_code = _fault_code(payload)
        detail = json.dumps(payload) if payload is not None else resp.text

        logger.warning("QuickBooks API error on %s (%s): %s", path, resp.status_code, detail[:500])

        if resp.status_code == 401 or fault_code == AUTH_FAULT_CODE:
            return LedgerAuthError(
                "QuickBooks authentication failed. Please reconnect to QuickBooks.",
                status_code=resp.status_code,
                fault_code=fault_code,
                detail=detail,
            )
        if resp.status_code == 429 or resp.status_code >= 500:
            return TransientNetworkError(
                f"QuickBooks API temporarily unavailable ({resp.status_code})"
            )
        return LedgerApiError(
            f"QuickBooks API error: {resp.status_code}",
            status_code=resp.status_code,
            fault_code=fault_code,
            detail=detail,
        )

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------
    async def query(self, statement: str, entity: str) -> list:
        data = await self._request("GET", "query", params={"query": statement})
        return data.get("QueryResponse", {}).get(entity, [])

    async def fetch_expense_accounts(self) -> list:
        return await self.query(
            "SELECT * FROM Account WHERE AccountType = 'Expense' AND Active = true",
            "Account",
        )

    async def fetch_payment_accounts(self) -> list:
        return await self.query(
            "SELECT * FROM Account WHERE AccountType IN ('Bank', 'Credit Card') AND Active = true",
            "Account",
        )

    async def get_company_info(self) -> dict:
        data = await self._request("GET", f"companyinfo/{self.realm_id}")
        return data.get("CompanyInfo", {})

    async def find_vendor_by_name(self, name: str) -> Optional[dict]:
        vendors = await self.query(
            f"SELECT * FROM Vendor WHERE DisplayName = '{_escape_query_value(name)}'",
            "Vendor",
        )
        return vendors[0] if vendors else None

    # ------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------
    async def create_vendor(self, name: str) -> dict:
        data = await self._request("POST", "vendor", json_body={"DisplayName": name})
        return data.get("Vendor", {})

    async def get_or_create_vendor(self, name: str) -> str:
        if not name:
            raise ValueError("vendor name is required")
        vendor = await self.find_vendor_by_name(name)
        if vendor:
            return vendor["Id"]
        logger.info("Creating QuickBooks vendor %r in realm %s", name, self.realm_id)
        created = await self.create_vendor(name)
        return created["Id"]

    async def create_purchase(self, payload: dict) -> dict:
        data = await self._request("POST", "purchase", json_body=payload)
        return data.get("Purchase", {})

    async def create_bill(self, payload: dict) -> dict:
        data = await self._request("POST", "bill", json_body=payload)
        return data.get("Bill", {})

    async def delete_bill(self, bill_id: str, sync_token: str) -> dict:
        data = await self._request(
            "POST",
            "bill",
            params={"operation": "delete"},
            json_body={"Id": bill_id, "SyncToken": sync_token},
        )
        return data.get("Bill", {})

    async def create_bill_payment(self, payload: dict) -> dict:
        data = await self._request("POST", "billpayment", json_body=payload)
        return data.get("BillPayment", {})

    async def upload_attachment(
        self,
        entity_type: str,
        entity_id: str,
        filename: str,
        content: bytes,
        content_type: str,
    ) -> dict:
        if len(content) > MAX_UPLOAD_BYTES:
            raise ValueError("Attachment exceeds upload size limit")

        metadata = {
            "AttachableRef": [
                {
                    "EntityRef": {"type": entity_type, "value": str(entity_id)},
                    "IncludeOnSend": False,
                }
            ],
            "FileName": filename,
            "ContentType": content_type,
        }

        files = {
            "file_metadata_01": (
                "metadata.json",
                json.dumps(metadata),
                "application/json; charset=UTF-8",
            ),
            "file_content_01": (filename, content, content_type),
        }

        return await self._request("POST", "upload", files=files)
