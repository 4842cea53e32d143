"""
Per-step error policy.

Applied by the engine when a step's action fails and the step carries an
``errorConfig``. Retries are scheduled, not slept: a retry decision carries
``next_retry_at`` and the engine parks the instance until the poller (or a
resume) re-runs the step.

Actions:
    retry  delay = retryDelayMinutes * multiplier ** (attempt - 1), capped;
           beyond retryCount the step fails with "Max retries exceeded"
    skip   the step is marked Skipped and the workflow continues
    goto   the workflow continues at ``gotoStepId``
    fail   the step fails; ``notifyOnError`` addresses are told (best-effort)
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from core.constants import ErrorAction
from notifications.manager import NotificationManager
from workflow.models import ErrorConfig
from workflow.results import ActionContext, ActionResult
from workflow.retry_strategies import RetryStrategy
from workflow.state import StepState, utcnow

logger = structlog.get_logger(__name__)


class StepErrorPolicy:

    def __init__(
        self,
        notifier: Optional[NotificationManager] = None,
        max_delay_minutes: float = 60.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.notifier = notifier
        self.max_delay_minutes = max_delay_minutes
        self._now = clock or utcnow

    async def handle_failure(self, context: ActionContext, failure: ActionResult) -> ActionResult:
        """Turn a failed action result into the policy's decision.

        Returns ``failure`` unchanged when the step has no error policy.
        """
        step = context.step
        config = step.error_policy
        if config is None:
            return failure

        attempt = (context.step_state.retry_count if context.step_state else 0) + 1
        last_error = failure.error or "Unknown error"

        if config.action == ErrorAction.RETRY:
            return self._retry(context, config, attempt, last_error)

        if config.action == ErrorAction.SKIP:
            logger.info("Skipping failed step per error policy", step_id=step.id, error=last_error)
            return ActionResult.ok(
                {"stepSkipped": True, "skipReason": last_error},
                skip_step=True,
            )

        if config.action == ErrorAction.GOTO:
            if not config.goto_step_id:
                return ActionResult.fail("Goto action requires gotoStepId")
            logger.info("Redirecting failed step", step_id=step.id, goto_step_id=config.goto_step_id)
            return ActionResult.ok(
                {
                    "errorRedirect": True,
                    "originalError": last_error,
                    "redirectToStepId": config.goto_step_id,
                },
                redirect_to_step_id=config.goto_step_id,
            )

        logger.error("Step failed permanently", step_id=step.id, error=last_error)
        if config.notify_on_error and self.notifier is not None:
            await self.notifier.step_error(context.instance, step.name, config.notify_on_error, last_error)

        return ActionResult.fail(
            last_error,
            {"stepFailed": True, "failureReason": last_error, "attemptsMade": attempt},
        )

    def _retry(self, context: ActionContext, config: ErrorConfig, attempt: int, last_error: str) -> ActionResult:
        step = context.step
        if attempt > config.retry_count:
            logger.warning("Max retries exceeded", step_id=step.id, retry_count=config.retry_count)
            return ActionResult.fail(
                f"Max retries exceeded: {last_error}",
                {"stepFailed": True, "failureReason": last_error, "attemptsMade": attempt},
            )

        delay_ms = self.strategy_for(config).compute_delay(attempt)
        next_retry_at = self._now() + timedelta(milliseconds=delay_ms)
        logger.info(
            "Scheduling step retry",
            step_id=step.id,
            attempt=attempt,
            delay_seconds=delay_ms / 1000,
            next_retry_at=next_retry_at.isoformat(),
        )
        return ActionResult(
            success=False,
            error=last_error,
            retry_attempt=attempt,
            next_retry_at=next_retry_at,
        )

    def strategy_for(self, config: ErrorConfig) -> RetryStrategy:
        return RetryStrategy.from_error_config(config, self.max_delay_minutes)

    # ─── Scheduling helpers ───

    def should_retry_now(self, step_state: StepState) -> bool:
        if step_state.next_retry_at is None:
            return False
        return self._now() >= step_state.next_retry_at

    def remaining_delay(self, step_state: StepState) -> timedelta:
        if step_state.next_retry_at is None:
            return timedelta(0)
        return max(timedelta(0), step_state.next_retry_at - self._now())

    def max_retry_duration(self, config: ErrorConfig) -> timedelta:
        """Sum of every delay the policy would wait before giving up."""
        return timedelta(milliseconds=self.strategy_for(config).total_delay_ms())
