import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Action = Callable[[Dict[str, Any]], Awaitable[Any]]
Compensation = Callable[[Dict[str, Any], Any], Awaitable[Any]]


@dataclass
class SagaStep:
    name: str
    action: Action
    compensation: Optional[Compensation] = None


class SagaStepFailed(Exception):
    def __init__(self, step: str, cause: BaseException, compensated: List[str], compensation_errors: Dict[str, BaseException]):
        super().__init__(f"Step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause
        self.compensated = compensated
        self.compensation_errors = compensation_errors


class Saga:
    """Runs steps in order; when one fails, undoes the completed ones in reverse.

    Each action receives the shared context dict and its result is stored under
    the step name. Compensations receive the context and that result.
    """

    def __init__(self, steps: List[SagaStep]):
        self.steps = steps

    async def run(self, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        context = context if context is not None else {}
        completed: List[SagaStep] = []

        for step in self.steps:
            try:
                context[step.name] = await step.action(context)
            except Exception as e:
                compensated, errors = await self._compensate(completed, context)
                raise SagaStepFailed(step.name, e, compensated, errors) from e
            completed.append(step)

        return context

    async def _compensate(self, completed: List[SagaStep], context: Dict[str, Any]):
        compensated: List[str] = []
        errors: Dict[str, BaseException] = {}

        for step in reversed(completed):
            if step.compensation is None:
                continue
            try:
                await step.compensation(context, context.get(step.name))
                compensated.append(step.name)
                logger.info("Compensated saga step '%s'", step.name)
            except Exception as e:
                errors[step.name] = e
                logger.error("Compensation for saga step '%s' failed: %s", step.name, e)

        return compensated, errors
