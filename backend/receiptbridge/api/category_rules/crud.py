from typing import List, Optional
from sqlalchemy.future import select
from sqlalchemy import update, func, literal

from receiptbridge.core.database import SessionLocal
from receiptbridge.api.categories.crud import get_category_by_account
from .models import CategoryRule, MatchTypeEnum
from .schemas import CategoryRuleOut


class UnknownCategory(ValueError):
    pass


class DuplicateRule(ValueError):
    pass


def to_rule_out(rule: CategoryRule) -> CategoryRuleOut:
    category = rule.category
    return CategoryRuleOut(
        id=rule.id,
        tenant_id=rule.tenant_id,
        vendor_pattern=rule.vendor_pattern,
        match_type=rule.match_type,
        target_category_id=rule.target_category_id,
        is_active=rule.is_active,
        times_applied=rule.times_applied or 0,
        created_from_receipt_id=rule.created_from_receipt_id,
        created_at=rule.created_at,
        updated_at=rule.updated_at,
        category_name=category.name if category else None,
        qb_account_id=category.qb_account_id if category else None,
    )


class CategoryRuleStore:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    # ------------------------------------------------------------
    # Matching reads
    # ------------------------------------------------------------
    async def find_active_exact(self, tenant_id: str, vendor_name: str) -> Optional[CategoryRuleOut]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(CategoryRule)
                .where(
                    CategoryRule.tenant_id == tenant_id,
                    CategoryRule.is_active == True,
                    CategoryRule.match_type == MatchTypeEnum.exact,
                    func.lower(CategoryRule.vendor_pattern) == vendor_name.lower(),
                )
                .order_by(CategoryRule.created_at.asc(), CategoryRule.id.asc())
                .limit(1)
            )
            rule = result.scalars().first()
            return to_rule_out(rule) if rule else None

    async def find_active_contains(self, tenant_id: str, vendor_name: str) -> List[CategoryRuleOut]:
        """Active contains-rules whose pattern occurs in the vendor, longest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(CategoryRule)
                .where(
                    CategoryRule.tenant_id == tenant_id,
                    CategoryRule.is_active == True,
                    CategoryRule.match_type == MatchTypeEnum.contains,
                    literal(vendor_name.lower()).contains(func.lower(CategoryRule.vendor_pattern)),
                )
                .order_by(
                    func.length(CategoryRule.vendor_pattern).desc(),
                    CategoryRule.created_at.asc(),
                    CategoryRule.id.asc(),
                )
            )
            return [to_rule_out(r) for r in result.unique().scalars().all()]

    async def increment_usage(self, rule_id: int, tenant_id: Optional[str] = None) -> None:
        stmt = update(CategoryRule).where(CategoryRule.id == rule_id)
        if tenant_id is not None:
            stmt = stmt.where(CategoryRule.tenant_id == tenant_id)
        async with self.session_factory() as db:
            await db.execute(
                stmt
                .values(times_applied=CategoryRule.times_applied + 1)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    # ------------------------------------------------------------
    # Management
    # ------------------------------------------------------------
    async def list_rules(self, tenant_id: str) -> List[CategoryRuleOut]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(CategoryRule)
                .where(CategoryRule.tenant_id == tenant_id)
                .order_by(CategoryRule.vendor_pattern.asc())
            )
            return [to_rule_out(r) for r in result.unique().scalars().all()]

    async def create_rule(
        self,
        tenant_id: str,
        vendor_pattern: str,
        qb_account_id: str,
        match_type: MatchTypeEnum = MatchTypeEnum.exact,
        receipt_id: Optional[str] = None,
    ) -> CategoryRuleOut:
        """Create a rule, or reactivate the equivalent one that already exists."""
        vendor_pattern = vendor_pattern.strip()
        if not vendor_pattern:
            raise ValueError("vendor_pattern is required")

        async with self.session_factory() as db:
            category = await get_category_by_account(db, tenant_id, qb_account_id)
            if not category:
                raise UnknownCategory(f'No active category found for account ID "{qb_account_id}"')

            result = await db.execute(
                select(CategoryRule).where(
                    CategoryRule.tenant_id == tenant_id,
                    CategoryRule.vendor_pattern == vendor_pattern,
                    CategoryRule.match_type == match_type,
                    CategoryRule.target_category_id == category.id,
                )
            )
            rule = result.scalars().first()

            if rule:
                rule.is_active = True
            else:
                rule = CategoryRule(
                    tenant_id=tenant_id,
                    vendor_pattern=vendor_pattern,
                    match_type=match_type,
                    target_category_id=category.id,
                    created_from_receipt_id=receipt_id,
                    is_active=True,
                    times_applied=0,
                )
                db.add(rule)

            await db.commit()
            await db.refresh(rule, attribute_names=["category", "created_at", "updated_at"])
            return to_rule_out(rule)

    async def learn_from_assignment(
        self,
        tenant_id: str,
        vendor_name: Optional[str],
        qb_account_id: str,
        receipt_id: Optional[str] = None,
    ) -> Optional[CategoryRuleOut]:
        """Remember a manual category choice as an exact vendor rule."""
        if not vendor_name or not vendor_name.strip():
            return None
        return await self.create_rule(
            tenant_id, vendor_name, qb_account_id, MatchTypeEnum.exact, receipt_id
        )

    async def update_rule(self, tenant_id: str, rule_id: int, data: dict) -> Optional[CategoryRuleOut]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(CategoryRule).where(
                    CategoryRule.id == rule_id, CategoryRule.tenant_id == tenant_id
                )
            )
            rule = result.scalars().first()
            if not rule:
                return None

            target_category_id = rule.target_category_id
            if data.get("qb_account_id") is not None:
                category = await get_category_by_account(db, tenant_id, data["qb_account_id"])
                if not category:
                    raise UnknownCategory(
                        f'No active category found for account ID "{data["qb_account_id"]}"'
                    )
                target_category_id = category.id
            match_type = data.get("match_type") or rule.match_type
            vendor_pattern = rule.vendor_pattern
            if data.get("vendor_pattern") is not None:
                vendor_pattern = data["vendor_pattern"].strip()
                if not vendor_pattern:
                    raise ValueError("vendor_pattern is required")

            # checked before touching the row so the session never flushes a duplicate
            result = await db.execute(
                select(CategoryRule.id).where(
                    CategoryRule.tenant_id == tenant_id,
                    CategoryRule.id != rule_id,
                    CategoryRule.vendor_pattern == vendor_pattern,
                    CategoryRule.match_type == match_type,
                    CategoryRule.target_category_id == target_category_id,
                )
            )
            existing_id = result.scalars().first()
            if existing_id is not None:
                raise DuplicateRule(f"An equivalent rule already exists (id {existing_id})")

            rule.target_category_id = target_category_id
            rule.match_type = match_type
            rule.vendor_pattern = vendor_pattern
            if data.get("is_active") is not None:
                rule.is_active = data["is_active"]

            await db.commit()
            await db.refresh(rule, attribute_names=["category", "updated_at"])
            return to_rule_out(rule)

    async def delete_rule(self, tenant_id: str, rule_id: int) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(CategoryRule).where(
                    CategoryRule.id == rule_id, CategoryRule.tenant_id == tenant_id
                )
            )
            rule = result.scalars().first()
            if not rule:
                return False
            await db.delete(rule)
            await db.commit()
            return True
