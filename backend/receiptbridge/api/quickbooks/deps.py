from typing import Optional

from .publish import PublishOrchestrator
from .tokens import TokenLifecycleManager

_token_manager: Optional[TokenLifecycleManager] = None
_orchestrator: Optional[PublishOrchestrator] = None


def get_token_manager() -> TokenLifecycleManager:
    # one manager per process so the per-tenant refresh locks are shared
    global _token_manager
    if _token_manager is None:
        _token_manager = TokenLifecycleManager()
    return _token_manager


def get_publish_orchestrator() -> PublishOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PublishOrchestrator(get_token_manager())
    return _orchestrator
