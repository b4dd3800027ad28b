"""
QuickBooks token lifecycle.

Access tokens live about an hour; refresh tokens rotate on every use and
expire after roughly 100 days. The manager decides when to refresh, retries
transient failures with exponential backoff, and serializes refreshes per
tenant so a rotated refresh token is never spent twice.
"""

import asyncio
import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from receiptbridge.core.config import RefreshPolicy, default_refresh_policy
from .crud import ConnectionStore
from .errors import (
    FATAL,
    FatalCredentialError,
    NotConnected,
    TransientNetworkError,
    classify_refresh_failure,
)
from .oauth import IntuitOAuth
from .schemas import Connection, ConnectionHealth, TokenSet, UsableToken

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_TOKEN_LIFETIME = timedelta(days=100)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RefreshDecision(str, enum.Enum):
    none = "none"
    opportunistic = "opportunistic"
    mandatory = "mandatory"


def refresh_decision(connection: Connection, now: datetime, policy: RefreshPolicy) -> RefreshDecision:
    expires_at = as_utc(connection.access_token_expires_at)
    if now >= expires_at - policy.refresh_buffer:
        return RefreshDecision.mandatory

    refresh_age = now - as_utc(connection.refresh_token_created_at)
    if refresh_age >= policy.proactive_threshold:
        return RefreshDecision.opportunistic

    return RefreshDecision.none


def refresh_token_expiry(connection: Connection) -> datetime:
    if connection.refresh_token_expires_at is not None:
        return as_utc(connection.refresh_token_expires_at)
    return as_utc(connection.refresh_token_created_at) + DEFAULT_REFRESH_TOKEN_LIFETIME


def apply_token_set(connection: Connection, tokens: TokenSet, now: datetime) -> Connection:
    """Return a copy of the connection carrying a freshly issued token pair."""
    if tokens.x_refresh_token_expires_in:
        refresh_expires_at = now + timedelta(seconds=int(tokens.x_refresh_token_expires_in))
    else:
        refresh_expires_at = now + DEFAULT_REFRESH_TOKEN_LIFETIME

    return connection.model_copy(
        update={
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "access_token_expires_at": now + timedelta(seconds=int(tokens.expires_in)),
            "refresh_token_created_at": now,
            "refresh_token_expires_at": refresh_expires_at,
            "last_refreshed_at": now,
        }
    )


class TokenLifecycleManager:
    def __init__(
        self,
        store: Optional[ConnectionStore] = None,
        oauth: Optional[IntuitOAuth] = None,
        policy: Optional[RefreshPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep=asyncio.sleep,
    ):
        self.store = store or ConnectionStore()
        self.oauth = oauth or IntuitOAuth()
        self.policy = policy or default_refresh_policy()
        self.clock = clock
        self.sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = {}
        self._background: Dict[str, asyncio.Task] = {}

    def lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    # ------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------
    async def resolve_usable_token(self, tenant_id: str) -> UsableToken:
        connection = await self.store.load(tenant_id)
        if connection is None:
            raise NotConnected()

        decision = refresh_decision(connection, self.clock(), self.policy)

        if decision is RefreshDecision.mandatory:
            logger.info("Access token for %s is expiring, refreshing", tenant_id)
            connection = await self._refresh_serialized(tenant_id, RefreshDecision.mandatory)
        elif decision is RefreshDecision.opportunistic:
            self._schedule_opportunistic(tenant_id)

        return UsableToken(access_token=connection.access_token, realm_id=connection.realm_id)

    def _schedule_opportunistic(self, tenant_id: str) -> None:
        task = self._background.get(tenant_id)
        if task is not None and not task.done():
            return
        task = asyncio.create_task(self._opportunistic_refresh(tenant_id))
        self._background[tenant_id] = task

    async def _opportunistic_refresh(self, tenant_id: str) -> None:
        try:
            await self._refresh_serialized(tenant_id, RefreshDecision.opportunistic)
        except FatalCredentialError as e:
            logger.error("Proactive refresh for %s hit a dead refresh token: %s", tenant_id, e)
        except (TransientNetworkError, NotConnected) as e:
            logger.warning("Proactive refresh for %s failed, keeping current token: %s", tenant_id, e)
        except Exception:
            logger.exception("Proactive refresh for %s crashed, keeping current token", tenant_id)
        finally:
            self._background.pop(tenant_id, None)

    async def wait_for_background_refreshes(self) -> None:
        tasks = [t for t in self._background.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _refresh_serialized(self, tenant_id: str, needed: RefreshDecision) -> Connection:
        async with self.lock_for(tenant_id):
            # whoever held the lock before us may already have rotated the pair
            connection = await self.store.load(tenant_id)
            if connection is None:
                raise NotConnected()
            decision = refresh_decision(connection, self.clock(), self.policy)
            if decision is RefreshDecision.none:
                return connection
            if needed is RefreshDecision.mandatory and decision is not RefreshDecision.mandatory:
                return connection
            return await self.refresh(connection)

    async def refresh_tenant(
        self,
        tenant_id: str,
        only_if: Optional[Callable[[Connection], bool]] = None,
    ) -> Connection:
        """Refresh under the tenant's lock (background sweep, admin tools).

        ``only_if`` is re-checked against the freshly loaded row so a refresh
        that happened while waiting for the lock is not repeated.
        """
        async with self.lock_for(tenant_id):
            connection = await self.store.load(tenant_id)
            if connection is None:
                raise NotConnected()
            if only_if is not None and not only_if(connection):
                return connection
            return await self.refresh(connection)

    # ------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------
    async def refresh(self, connection: Connection) -> Connection:
        """Exchange the stored refresh token, retrying transient failures.

        Callers must hold the tenant's lock.
        """
        attempts = 0
        delay = self.policy.base_delay
        last_error: Optional[BaseException] = None

        while attempts < self.policy.max_attempts:
            attempts += 1
            try:
                tokens = await self.oauth.refresh(connection.refresh_token)
            except Exception as e:
                if classify_refresh_failure(e) == FATAL:
                    logger.error(
                        "Refresh token for %s rejected, reconnect required: %s",
                        connection.tenant_id, e,
                    )
                    raise FatalCredentialError(detail=str(e)) from e

                last_error = e
                logger.warning(
                    "Token refresh attempt %s/%s for %s failed: %s",
                    attempts, self.policy.max_attempts, connection.tenant_id, e,
                )
                if attempts < self.policy.max_attempts:
                    await self.sleep(delay)
                    delay *= 2
                continue

            updated = apply_token_set(connection, tokens, self.clock())
            saved = await self.store.save(updated)
            logger.info(
                "Tokens refreshed for %s (access expires %s)",
                connection.tenant_id, saved.access_token_expires_at.isoformat(),
            )
            return saved

        raise TransientNetworkError(
            f"Token refresh failed after {attempts} attempts: {last_error}",
            attempts=attempts,
        ) from last_error

    # ------------------------------------------------------------
    # Health
    # ------------------------------------------------------------
    def check_health(self, connection: Optional[Connection]) -> ConnectionHealth:
        """Answer from stored timestamps only; never touches the network."""
        if connection is None:
            return ConnectionHealth(connected=False, usable=False, needs_reconnect=False)

        now = self.clock()
        access_expires_at = as_utc(connection.access_token_expires_at)
        refresh_expires_at = refresh_token_expiry(connection)
        refresh_alive = refresh_expires_at > now

        return ConnectionHealth(
            connected=True,
            usable=refresh_alive,
            needs_reconnect=not refresh_alive,
            realm_id=connection.realm_id,
            company_name=connection.company_name,
            access_token_expired=now >= access_expires_at,
            access_token_expires_at=access_expires_at,
            refresh_token_expires_at=refresh_expires_at,
            refresh_token_age_days=(now - as_utc(connection.refresh_token_created_at)).days,
            last_refreshed_at=as_utc(connection.last_refreshed_at),
        )

    async def get_health(self, tenant_id: str) -> ConnectionHealth:
        return self.check_health(await self.store.load(tenant_id))

    # ------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------
    async def authorization_url(self, state: str) -> str:
        return await self.oauth.get_authorization_url(state)

    async def connect(
        self,
        tenant_id: str,
        user_id: str,
        code: str,
        realm_id: str,
        organization_id: Optional[str] = None,
    ) -> Connection:
        tokens = await self.oauth.exchange_code(code, realm_id)
        now = self.clock()
        async with self.lock_for(tenant_id):
            existing = await self.store.load(tenant_id)
            base = Connection(
                tenant_id=tenant_id,
                user_id=user_id,
                organization_id=organization_id or (existing.organization_id if existing else None),
                realm_id=realm_id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                access_token_expires_at=now,
                refresh_token_created_at=now,
                company_name=existing.company_name if existing and existing.realm_id == realm_id else None,
            )
            saved = await self.store.save(apply_token_set(base, tokens, now))
        logger.info("QuickBooks connected for %s (realm %s)", tenant_id, realm_id)
        return saved

    async def set_company_name(self, tenant_id: str, company_name: str) -> Optional[Connection]:
        async with self.lock_for(tenant_id):
            connection = await self.store.load(tenant_id)
            if connection is None:
                return None
            return await self.store.save(connection.model_copy(update={"company_name": company_name}))

    async def disconnect(self, tenant_id: str) -> bool:
        async with self.lock_for(tenant_id):
            connection = await self.store.load(tenant_id)
            if connection is None:
                return False
            try:
                await self.oauth.revoke(connection.refresh_token)
            except Exception as e:
                # local record goes away even when Intuit refuses the revoke
                logger.warning("Revoking QuickBooks tokens for %s failed: %s", tenant_id, e)
            deleted = await self.store.delete(tenant_id)
        logger.info("QuickBooks disconnected for %s", tenant_id)
        return deleted
