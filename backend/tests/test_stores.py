"""
Store tests against a real SQL engine (in-memory SQLite through aiosqlite),
covering the queries the in-memory fakes stand in for elsewhere.
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from receiptbridge.core.database import Base
from receiptbridge.api.quickbooks import models as quickbooks_models  # noqa: F401
from receiptbridge.api.quickbooks.crud import ConnectionStore
from receiptbridge.api.categories.crud import list_categories, sync_categories
from receiptbridge.api.categories.models import LedgerCategory
from receiptbridge.api.category_rules.crud import CategoryRuleStore, DuplicateRule, UnknownCategory
from receiptbridge.api.category_rules.models import MatchTypeEnum

from conftest import NOW, TENANT, make_connection

OTHER_TENANT = "org:org_2"


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def connection_store(session_factory):
    return ConnectionStore(session_factory)


@pytest_asyncio.fixture
async def sql_rule_store(session_factory):
    async with session_factory() as db:
        db.add_all([
            LedgerCategory(tenant_id=TENANT, qb_account_id="80", name="Office Supplies"),
            LedgerCategory(tenant_id=TENANT, qb_account_id="81", name="Travel"),
            LedgerCategory(tenant_id=TENANT, qb_account_id="82", name="Old", active=False),
            LedgerCategory(tenant_id=OTHER_TENANT, qb_account_id="80", name="Office Supplies"),
        ])
        await db.commit()
    return CategoryRuleStore(session_factory)


class TestConnectionStore:
    @pytest.mark.asyncio
    async def test_load_missing(self, connection_store):
        assert await connection_store.load(TENANT) is None

    @pytest.mark.asyncio
    async def test_save_updates_token_pair_in_place(self, connection_store):
        await connection_store.save(make_connection())
        rotated = make_connection(refresh_token="refresh-1").model_copy(
            update={"access_token": "access-1", "company_name": "Acme"}
        )

        await connection_store.save(rotated)
        loaded = await connection_store.load(TENANT)

        assert loaded.access_token == "access-1"
        assert loaded.refresh_token == "refresh-1"
        assert loaded.company_name == "Acme"
        assert loaded.connected_at is not None

    @pytest.mark.asyncio
    async def test_delete(self, connection_store):
        await connection_store.save(make_connection())

        assert await connection_store.delete(TENANT) is True
        assert await connection_store.delete(TENANT) is False
        assert await connection_store.load(TENANT) is None

    @pytest.mark.asyncio
    async def test_list_stale_filters_and_orders(self, connection_store):
        rows = [
            make_connection("user:a", refresh_age=timedelta(days=40)),
            make_connection("user:b", refresh_age=timedelta(days=60)),
            make_connection("user:young", refresh_age=timedelta(days=3)),
            make_connection(
                "user:recent", refresh_age=timedelta(days=45), last_refreshed_ago=timedelta(hours=2)
            ),
            make_connection(
                "user:dead", refresh_age=timedelta(days=50), refresh_expires_at=NOW - timedelta(days=1)
            ),
            make_connection("user:c", refresh_age=timedelta(days=35)).model_copy(
                update={"refresh_token_expires_at": None, "last_refreshed_at": None}
            ),
        ]
        for row in rows:
            await connection_store.save(row)

        stale = await connection_store.list_stale(
            created_before=NOW - timedelta(days=30),
            refreshed_before=NOW - timedelta(hours=24),
            now=NOW,
        )

        assert [c.tenant_id for c in stale] == ["user:b", "user:a", "user:c"]

    @pytest.mark.asyncio
    async def test_list_stale_limit(self, connection_store):
        for name, days in (("user:a", 40), ("user:b", 60)):
            await connection_store.save(make_connection(name, refresh_age=timedelta(days=days)))

        stale = await connection_store.list_stale(
            created_before=NOW - timedelta(days=30),
            refreshed_before=NOW - timedelta(hours=24),
            now=NOW,
            limit=1,
        )

        assert [c.tenant_id for c in stale] == ["user:b"]


class TestCategoryRuleStore:
    @pytest.mark.asyncio
    async def test_create_resolves_category(self, sql_rule_store):
        rule = await sql_rule_store.create_rule(TENANT, "  Amazon ", "80", receipt_id="r1")

        assert rule.vendor_pattern == "Amazon"
        assert rule.category_name == "Office Supplies"
        assert rule.qb_account_id == "80"
        assert rule.created_from_receipt_id == "r1"
        assert rule.times_applied == 0

    @pytest.mark.asyncio
    async def test_create_with_inactive_category(self, sql_rule_store):
        with pytest.raises(UnknownCategory):
            await sql_rule_store.create_rule(TENANT, "Amazon", "82")

    @pytest.mark.asyncio
    async def test_create_reactivates_equivalent_rule(self, sql_rule_store):
        first = await sql_rule_store.create_rule(TENANT, "Amazon", "80")
        await sql_rule_store.update_rule(TENANT, first.id, {"is_active": False})

        again = await sql_rule_store.create_rule(TENANT, "Amazon", "80")

        assert again.id == first.id
        assert again.is_active is True
        assert len(await sql_rule_store.list_rules(TENANT)) == 1

    @pytest.mark.asyncio
    async def test_find_exact_ignores_case_and_tenant(self, sql_rule_store):
        rule = await sql_rule_store.create_rule(TENANT, "Amazon", "80")

        found = await sql_rule_store.find_active_exact(TENANT, "AMAZON")

        assert found.id == rule.id
        assert await sql_rule_store.find_active_exact(OTHER_TENANT, "Amazon") is None
        assert await sql_rule_store.find_active_exact(TENANT, "Amazon Web Services") is None

    @pytest.mark.asyncio
    async def test_find_exact_skips_inactive(self, sql_rule_store):
        rule = await sql_rule_store.create_rule(TENANT, "Amazon", "80")
        await sql_rule_store.update_rule(TENANT, rule.id, {"is_active": False})

        assert await sql_rule_store.find_active_exact(TENANT, "amazon") is None

    @pytest.mark.asyncio
    async def test_find_contains_longest_first(self, sql_rule_store):
        await sql_rule_store.create_rule(TENANT, "amazon", "80", MatchTypeEnum.contains)
        await sql_rule_store.create_rule(TENANT, "Amazon Web", "81", MatchTypeEnum.contains)
        await sql_rule_store.create_rule(TENANT, "Walmart", "80", MatchTypeEnum.contains)
        await sql_rule_store.create_rule(TENANT, "Amazon Web Services", "80")

        found = await sql_rule_store.find_active_contains(TENANT, "AMAZON WEB SERVICES INC")

        assert [r.vendor_pattern for r in found] == ["Amazon Web", "amazon"]

    @pytest.mark.asyncio
    async def test_update_into_duplicate_is_rejected(self, sql_rule_store):
        existing = await sql_rule_store.create_rule(TENANT, "Amazon", "80")
        other = await sql_rule_store.create_rule(TENANT, "Amazon", "81")

        with pytest.raises(DuplicateRule):
            await sql_rule_store.update_rule(TENANT, other.id, {"qb_account_id": "80"})

        rules = {r.id: r for r in await sql_rule_store.list_rules(TENANT)}
        assert rules[existing.id].qb_account_id == "80"
        assert rules[other.id].qb_account_id == "81"

    @pytest.mark.asyncio
    async def test_update_changes_category(self, sql_rule_store):
        rule = await sql_rule_store.create_rule(TENANT, "Amazon", "80")

        updated = await sql_rule_store.update_rule(
            TENANT, rule.id, {"qb_account_id": "81", "match_type": MatchTypeEnum.contains}
        )

        assert updated.category_name == "Travel"
        assert updated.match_type == MatchTypeEnum.contains

    @pytest.mark.asyncio
    async def test_increment_usage_is_tenant_scoped(self, sql_rule_store):
        rule = await sql_rule_store.create_rule(TENANT, "Amazon", "80")

        await sql_rule_store.increment_usage(rule.id, OTHER_TENANT)
        await sql_rule_store.increment_usage(rule.id, TENANT)
        await sql_rule_store.increment_usage(rule.id, TENANT)

        found = await sql_rule_store.find_active_exact(TENANT, "amazon")
        assert found.times_applied == 2

    @pytest.mark.asyncio
    async def test_delete_rule(self, sql_rule_store):
        rule = await sql_rule_store.create_rule(TENANT, "Amazon", "80")

        assert await sql_rule_store.delete_rule(OTHER_TENANT, rule.id) is False
        assert await sql_rule_store.delete_rule(TENANT, rule.id) is True
        assert await sql_rule_store.list_rules(TENANT) == []


class TestCategorySync:
    @pytest.mark.asyncio
    async def test_sync_upserts_and_deactivates(self, session_factory):
        async with session_factory() as db:
            first = await sync_categories(
                db, TENANT, [{"Id": "1", "Name": "Meals"}, {"Id": "2", "Name": "Travel"}]
            )
            second = await sync_categories(db, TENANT, [{"Id": 1, "Name": "Meals & Entertainment"}])
            categories = await list_categories(db, TENANT)

        assert first == {"synced": 2, "added": 2, "deactivated": 0}
        assert second == {"synced": 1, "added": 0, "deactivated": 1}
        assert [(c.qb_account_id, c.name) for c in categories] == [("1", "Meals & Entertainment")]

    @pytest.mark.asyncio
    async def test_sync_is_per_tenant(self, session_factory):
        async with session_factory() as db:
            await sync_categories(db, TENANT, [{"Id": "1", "Name": "Meals"}])
            await sync_categories(db, OTHER_TENANT, [{"Id": "9", "Name": "Rent"}])

            assert [c.name for c in await list_categories(db, TENANT)] == ["Meals"]
