"""
Saga orchestration for multi-step checkout workflows.

Each step pairs a forward action with an optional compensating action.
When a step fails, completed steps are compensated in reverse order and the
original error is re-raised to the caller.
"""
import asyncio
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

ForwardAction = Callable[[Dict[str, Any]], Awaitable[Any]]
CompensatingAction = Callable[[Dict[str, Any], Any], Awaitable[None]]


class SagaState(Enum):
    """Saga execution states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


class StepStatus(Enum):
    """Step execution status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


class SagaStep:
    """
    Represents a single step in a saga.

    Each step has:
    - Forward action (the main operation)
    - Compensating action (rollback/undo operation)
    """

    def __init__(
        self,
        name: str,
        forward_action: ForwardAction,
        compensating_action: Optional[CompensatingAction] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Initialize saga step.

        Args:
            name: Step name
            forward_action: Async function to execute
            compensating_action: Async function to compensate/rollback
            timeout_seconds: Optional bound on the forward action
        """
        self.name = name
        self.forward_action = forward_action
        self.compensating_action = compensating_action
        self.timeout_seconds = timeout_seconds
        self.status = StepStatus.PENDING
        self.result: Optional[Any] = None
        self.error: Optional[str] = None

    async def execute(self, context: Dict[str, Any]) -> Any:
        """
        Execute the forward action.

        Raises:
            Exception: If step execution fails
        """
        logger.info("saga_step_executing", step=self.name)

        try:
            if self.timeout_seconds is None:
                self.result = await self.forward_action(context)
            else:
                self.result = await asyncio.wait_for(
                    self.forward_action(context), timeout=self.timeout_seconds
                )
            self.status = StepStatus.COMPLETED
            logger.info("saga_step_completed", step=self.name)
            return self.result
        except Exception as e:
            self.status = StepStatus.FAILED
            self.error = str(e)
            logger.error("saga_step_failed", step=self.name, error=str(e))
            raise

    async def compensate(self, context: Dict[str, Any]) -> None:
        """
        Execute the compensating action.

        Compensation failures are recorded on the step and logged; they
        need manual follow-up and never mask the error that triggered them.
        """
        if self.compensating_action is None:
            return

        if self.status != StepStatus.COMPLETED:
            logger.info("saga_step_skip_compensation", step=self.name, status=self.status.value)
            return

        logger.info("saga_step_compensating", step=self.name)

        try:
            await self.compensating_action(context, self.result)
            self.status = StepStatus.COMPENSATED
            logger.info("saga_step_compensated", step=self.name)
        except Exception as e:
            self.status = StepStatus.COMPENSATION_FAILED
            self.error = str(e)
            logger.error("saga_step_compensation_failed", step=self.name, error=str(e))


class Saga:
    """
    Represents a saga.

    Orchestrates multiple steps with compensating actions for rollback.
    """

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.saga_id = str(uuid.uuid4())
        self.name = name
        self.steps: List[SagaStep] = []
        self.state = SagaState.PENDING
        self.context: Dict[str, Any] = dict(context or {})

    def add_step(
        self,
        name: str,
        forward_action: ForwardAction,
        compensating_action: Optional[CompensatingAction] = None,
        timeout_seconds: Optional[float] = None,
    ) -> "Saga":
        """
        Add a step to the saga.

        Returns:
            Saga: Self for method chaining
        """
        self.steps.append(
            SagaStep(
                name=name,
                forward_action=forward_action,
                compensating_action=compensating_action,
                timeout_seconds=timeout_seconds,
            )
        )
        return self

    async def execute(self) -> Dict[str, Any]:
        """
        Execute the saga.

        Executes all steps in order, storing each result in the context as
        ``<step>_result``. If any step fails, completed steps are compensated
        in reverse order and the step's exception propagates.

        Returns:
            Dict[str, Any]: The saga context
        """
        logger.info("saga_execution_started", saga_id=self.saga_id, name=self.name)

        self.state = SagaState.IN_PROGRESS
        completed_steps: List[SagaStep] = []

        try:
            for step in self.steps:
                result = await step.execute(self.context)
                completed_steps.append(step)
                self.context[f"{step.name}_result"] = result
        except Exception as e:
            logger.error(
                "saga_execution_failed", saga_id=self.saga_id, name=self.name, error=str(e)
            )
            self.state = SagaState.COMPENSATING
            await self._compensate(completed_steps)
            self.state = SagaState.COMPENSATED
            raise

        self.state = SagaState.COMPLETED
        logger.info(
            "saga_completed_successfully",
            saga_id=self.saga_id,
            name=self.name,
            steps_completed=len(completed_steps),
        )
        return self.context

    async def _compensate(self, completed_steps: List[SagaStep]) -> None:
        logger.info(
            "saga_compensation_started",
            saga_id=self.saga_id,
            steps_to_compensate=len(completed_steps),
        )

        for step in reversed(completed_steps):
            await step.compensate(self.context)

        logger.info("saga_compensation_completed", saga_id=self.saga_id)
