"""
Shared fixtures: in-memory stores and a fake Intuit OAuth client so the
token and publish engines run without a database or network.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from receiptbridge.core.config import RefreshPolicy
from receiptbridge.api.quickbooks.errors import TokenEndpointError
from receiptbridge.api.quickbooks.schemas import Connection, TokenSet
from receiptbridge.api.quickbooks.tokens import TokenLifecycleManager
from receiptbridge.api.category_rules.models import MatchTypeEnum
from receiptbridge.api.category_rules.schemas import CategoryRuleOut


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
TENANT = "org:org_1"


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeConnectionStore:
    def __init__(self):
        self.rows: Dict[str, Connection] = {}
        self.saves: List[Connection] = []
        self.deleted: List[str] = []

    async def load(self, tenant_id: str) -> Optional[Connection]:
        await asyncio.sleep(0)
        row = self.rows.get(tenant_id)
        return row.model_copy() if row else None

    async def save(self, connection: Connection) -> Connection:
        await asyncio.sleep(0)
        self.rows[connection.tenant_id] = connection.model_copy()
        self.saves.append(connection)
        return connection.model_copy()

    async def delete(self, tenant_id: str) -> bool:
        self.deleted.append(tenant_id)
        return self.rows.pop(tenant_id, None) is not None

    async def list_stale(self, created_before, refreshed_before, now, limit=100):
        rows = [
            r for r in self.rows.values()
            if r.refresh_token_created_at < created_before
            and (r.last_refreshed_at is None or r.last_refreshed_at < refreshed_before)
            and (r.refresh_token_expires_at is None or r.refresh_token_expires_at > now)
        ]
        rows.sort(key=lambda r: r.refresh_token_created_at)
        return [r.model_copy() for r in rows[:limit]]


class FakeOAuth:
    """Rotates tokens like Intuit does; queued outcomes simulate failures."""

    def __init__(self):
        self.outcomes: List = []
        self.refresh_calls: List[str] = []
        self.revoked: List[str] = []
        self.revoke_error: Optional[Exception] = None
        self.counter = 0
        self.delay = 0.0

    def queue(self, *outcomes):
        self.outcomes.extend(outcomes)

    async def refresh(self, refresh_token: str) -> TokenSet:
        self.refresh_calls.append(refresh_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
        self.counter += 1
        return TokenSet(
            access_token=f"access-{self.counter}",
            refresh_token=f"refresh-{self.counter}",
            expires_in=3600,
            x_refresh_token_expires_in=8726400,
        )

    async def revoke(self, token: str) -> None:
        self.revoked.append(token)
        if self.revoke_error:
            raise self.revoke_error

    async def exchange_code(self, code: str, realm_id: str) -> TokenSet:
        return TokenSet(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_in=3600,
            x_refresh_token_expires_in=8726400,
        )

    async def get_authorization_url(self, state: str) -> str:
        return f"https://appcenter.intuit.com/connect/oauth2?state={state}"


def make_connection(
    tenant_id: str = TENANT,
    now: datetime = NOW,
    access_expires_in: timedelta = timedelta(minutes=50),
    refresh_age: timedelta = timedelta(days=1),
    last_refreshed_ago: Optional[timedelta] = None,
    refresh_expires_at: Optional[datetime] = None,
    refresh_token: str = "refresh-0",
) -> Connection:
    created = now - refresh_age
    return Connection(
        tenant_id=tenant_id,
        user_id="user_1",
        organization_id="org_1",
        realm_id="9130",
        access_token="access-0",
        refresh_token=refresh_token,
        access_token_expires_at=now + access_expires_in,
        refresh_token_created_at=created,
        refresh_token_expires_at=refresh_expires_at or created + timedelta(days=100),
        last_refreshed_at=now - (last_refreshed_ago if last_refreshed_ago is not None else refresh_age),
    )


def token_error(status_code: int, body: str) -> TokenEndpointError:
    return TokenEndpointError(status_code, body)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return FakeConnectionStore()


@pytest.fixture
def oauth():
    return FakeOAuth()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def manager(store, oauth, clock, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return TokenLifecycleManager(
        store=store,
        oauth=oauth,
        policy=RefreshPolicy(),
        clock=clock,
        sleep=fake_sleep,
    )


# ------------------------------------------------------------
# Category rules
# ------------------------------------------------------------
class FakeRuleStore:
    def __init__(self):
        self.rules: List[CategoryRuleOut] = []
        self.increments: List[int] = []
        self._next_id = 1

    def add(self, pattern: str, match_type: MatchTypeEnum, category_id: int = 10,
            active: bool = True, created_at: Optional[datetime] = None) -> CategoryRuleOut:
        rule = CategoryRuleOut(
            id=self._next_id,
            tenant_id=TENANT,
            vendor_pattern=pattern,
            match_type=match_type,
            target_category_id=category_id,
            is_active=active,
            created_at=created_at or NOW + timedelta(seconds=self._next_id),
        )
        self._next_id += 1
        self.rules.append(rule)
        return rule

    async def find_active_exact(self, tenant_id, vendor_name):
        for rule in self.rules:
            if (rule.tenant_id == tenant_id and rule.is_active
                    and rule.match_type == MatchTypeEnum.exact
                    and rule.vendor_pattern.lower() == vendor_name.lower()):
                return rule
        return None

    async def find_active_contains(self, tenant_id, vendor_name):
        # unordered on purpose; the matcher owns the ranking
        return [
            r for r in reversed(self.rules)
            if r.tenant_id == tenant_id and r.is_active
            and r.match_type == MatchTypeEnum.contains
            and r.vendor_pattern.lower() in vendor_name.lower()
        ]

    async def increment_usage(self, rule_id, tenant_id=None):
        self.increments.append(rule_id)
        for i, rule in enumerate(self.rules):
            if rule.id == rule_id:
                self.rules[i] = rule.model_copy(update={"times_applied": rule.times_applied + 1})


@pytest.fixture
def rule_store():
    return FakeRuleStore()
