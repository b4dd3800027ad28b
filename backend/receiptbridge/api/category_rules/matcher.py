import logging
from typing import Optional

from .crud import CategoryRuleStore
from .schemas import CategoryRuleOut

logger = logging.getLogger(__name__)


def _specificity(rule: CategoryRuleOut):
    created = rule.created_at.timestamp() if rule.created_at else 0.0
    return (-len(rule.vendor_pattern), created, rule.id)


class CategoryRuleMatcher:
    """
    Maps a free-text vendor name to a learned category rule.
    Exact rules win outright; otherwise the longest matching contains-pattern.
    Matching never writes; callers report usage through record_applied.
    """

    def __init__(self, store: Optional[CategoryRuleStore] = None):
        self.store = store or CategoryRuleStore()

    async def match(self, tenant_id: str, vendor_name: Optional[str]) -> Optional[CategoryRuleOut]:
        if not vendor_name or not vendor_name.strip():
            return None
        vendor = vendor_name.strip()

        rule = await self.store.find_active_exact(tenant_id, vendor)
        if rule:
            return rule

        needle = vendor.lower()
        candidates = [
            r for r in await self.store.find_active_contains(tenant_id, vendor)
            if r.vendor_pattern and r.vendor_pattern.lower() in needle
        ]
        if not candidates:
            return None
        return min(candidates, key=_specificity)

    async def record_applied(self, rule_id: int, tenant_id: Optional[str] = None) -> None:
        await self.store.increment_usage(rule_id, tenant_id)
        logger.debug("Category rule %s applied", rule_id)
