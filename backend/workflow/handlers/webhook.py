"""Webhook step: call an external HTTP endpoint.

URL, header values and body template accept ``{{path}}`` tokens over four
namespaces: ``variables``, ``process``, ``instance`` and ``step``. An
unprefixed path looks in variables first, then process fields. Unresolved
tokens are left as written.
"""

import asyncio
import json
import time
from typing import Any, Dict, Optional

import structlog

from core.constants import HTTP_METHODS_WITH_BODY
from workflow.conditions import ConditionEvaluator
from workflow.interfaces import HttpTransport
from workflow.models import WebhookConfig
from workflow.results import ActionContext, ActionResult

logger = structlog.get_logger(__name__)

DEFAULT_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


def token_context(context: ActionContext) -> Dict[str, Any]:
    return {
        **context.process,
        **context.variables,
        "variables": context.variables,
        "process": context.process,
        "instance": context.instance.to_dict(),
        "step": context.step.to_dict(),
    }


class WebhookHandler:

    def __init__(
        self,
        transport: HttpTransport,
        evaluator: Optional[ConditionEvaluator] = None,
        default_timeout_ms: int = 30000,
    ):
        self.transport = transport
        self.evaluator = evaluator or ConditionEvaluator()
        self.default_timeout_ms = default_timeout_ms

    async def execute(self, context: ActionContext) -> ActionResult:
        config = context.step.config
        if not isinstance(config, WebhookConfig):
            config = WebhookConfig.model_validate(config.model_dump(exclude_unset=True))
        if not config.webhook_url:
            return ActionResult.fail("Webhook step requires webhookUrl configuration")

        tokens = token_context(context)
        method = (config.webhook_method or "POST").upper()
        url = self.evaluator.replace_tokens(config.webhook_url, tokens)
        headers = {
            **DEFAULT_HEADERS,
            **{k: self.evaluator.replace_tokens(v, tokens) for k, v in config.webhook_headers.items()},
        }
        body = None
        if config.webhook_body_template and method in HTTP_METHODS_WITH_BODY:
            body = self.evaluator.replace_tokens(config.webhook_body_template, tokens)

        timeout_ms = config.webhook_timeout or self.default_timeout_ms
        logger.info("Calling webhook", step_id=context.step.id, method=method, url=url, timeout_ms=timeout_ms)
        started = time.monotonic()

        try:
            response = await asyncio.wait_for(
                self.transport.request(method, url, headers=headers, body=body),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            return self._failed(f"Request timeout after {timeout_ms}ms", started)
        except Exception as e:
            return self._failed(str(e) or type(e).__name__, started)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        try:
            payload: Any = json.loads(response.text)
        except ValueError:
            payload = response.text

        if response.ok:
            logger.info("Webhook succeeded", step_id=context.step.id, status_code=response.status_code, elapsed_ms=elapsed_ms)
            outputs: Dict[str, Any] = {
                "webhookStatus": response.status_code,
                "webhookSuccess": True,
                "webhookExecutionTimeMs": elapsed_ms,
            }
            if config.webhook_response_variable:
                outputs[config.webhook_response_variable] = payload
            return ActionResult.ok(outputs)

        logger.warning("Webhook returned error status", step_id=context.step.id, status_code=response.status_code)
        rendered = payload if isinstance(payload, str) else json.dumps(payload)
        return ActionResult.fail(
            f"Webhook returned {response.status_code}: {rendered}",
            {
                "webhookStatus": response.status_code,
                "webhookSuccess": False,
                "webhookError": response.text,
                "webhookExecutionTimeMs": elapsed_ms,
            },
        )

    @staticmethod
    def _failed(message: str, started: float) -> ActionResult:
        logger.error("Webhook call failed", error=message)
        return ActionResult.fail(
            f"Webhook failed: {message}",
            {
                "webhookSuccess": False,
                "webhookError": message,
                "webhookExecutionTimeMs": int((time.monotonic() - started) * 1000),
            },
        )
