from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
from pathlib import Path
import time
from typing import Any, Awaitable, Callable

import httpx

from cronshift.core.config import Settings, get_settings
from cronshift.core.errors import IntegrationUnavailableError
from cronshift.services.resilience import CircuitBreaker, CircuitBreakerConfig, retry_async
from cronshift.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FallbackResult:
    operation: str
    success: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)


FallbackHandler = Callable[[dict[str, Any]], Awaitable[FallbackResult]]

# Logical operation -> compensating workflow dispatched on the CI runner.
DEFAULT_WORKFLOWS = {
    "audit-complete": "fallback-urgent-alerts.yml",
    "maintenance-weekly": "fallback-emergency-maintenance.yml",
    "health-monitoring": "fallback-health-monitoring.yml",
}


def workflow_presence(root: Path, workflows: list[str]) -> dict[str, bool]:
    # Keyed by workflow stem, as used in fallback-<stem> health checks.
    return {Path(workflow).stem: (Path(root) / workflow).exists() for workflow in workflows}


class GitHubActionsFallback:
    """Dispatches ``workflow_dispatch`` events through the GitHub REST API."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport

    def is_configured(self) -> bool:
        repository = self._settings.github_repository or ""
        return bool(self._settings.github_token and repository.count("/") == 1)

    def dispatch_url(self, workflow_file: str) -> str:
        base = self._settings.github_api_url.rstrip("/")
        return f"{base}/repos/{self._settings.github_repository}/actions/workflows/{workflow_file}/dispatches"

    async def trigger_workflow(self, workflow_file: str, inputs: dict[str, Any] | None = None) -> FallbackResult:
        operation = f"workflow:{workflow_file}"
        if not self.is_configured():
            return FallbackResult(operation, False, "GitHub fallback not configured (token or repository missing)")
        settings = self._settings
        # workflow_dispatch inputs must be strings.
        body = {"ref": settings.github_ref, "inputs": {key: str(value) for key, value in (inputs or {}).items()}}
        headers = {
            "Authorization": f"Bearer {settings.github_token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": f"{settings.app_name}-fallback",
        }
        timeout = settings.ext_call_timeout_ms / 1000.0
        start = time.monotonic()

        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                return await client.post(self.dispatch_url(workflow_file), json=body, headers=headers)

        try:
            response = await retry_async(_call)
        except (httpx.HTTPError, TimeoutError) as exc:
            record_external_call(
                integration="github.actions",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("fallback_dispatch_failed workflow=%s", workflow_file, exc_info=exc)
            return FallbackResult(operation, False, str(exc))

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            record_external_call(integration="github.actions", latency_ms=latency_ms, success=False)
            return FallbackResult(
                operation,
                False,
                f"HTTP {response.status_code}: {response.text}",
                {"status_code": response.status_code},
            )
        record_external_call(integration="github.actions", latency_ms=latency_ms, success=True)
        logger.info("fallback_workflow_dispatched workflow=%s ref=%s", workflow_file, settings.github_ref)
        return FallbackResult(
            operation,
            True,
            f"Workflow {workflow_file} dispatched",
            {"workflow": workflow_file, "ref": settings.github_ref},
        )


class FallbackManager:
    """Registry of compensating actions keyed by logical operation."""

    def __init__(self, *, breaker_config: CircuitBreakerConfig | None = None) -> None:
        self._handlers: dict[str, FallbackHandler] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._breaker_config = breaker_config

    def register_fallback(self, operation: str, handler: FallbackHandler) -> None:
        self._handlers[operation] = handler
        self._breakers[operation] = CircuitBreaker(f"fallback.{operation}", config=self._breaker_config)
        logger.info("fallback_registered operation=%s", operation)

    def registered_operations(self) -> list[str]:
        return sorted(self._handlers)

    async def execute_fallback(self, operation: str, params: dict[str, Any] | None = None) -> FallbackResult:
        handler = self._handlers.get(operation)
        if handler is None:
            return FallbackResult(operation, False, f"No fallback registered for {operation}")
        breaker = self._breakers[operation]
        try:
            await breaker.before_call()
        except IntegrationUnavailableError as exc:
            return FallbackResult(operation, False, str(exc))
        increment_counter(f"fallback_executions_total.{operation}")
        try:
            result = await handler(dict(params or {}))
        except Exception as exc:  # noqa: BLE001 - handler failures become unsuccessful results
            await breaker.record_failure()
            logger.warning("fallback_handler_failed operation=%s", operation, exc_info=exc)
            return FallbackResult(operation, False, f"Fallback failed: {exc}")
        if result.success:
            await breaker.record_success()
        else:
            await breaker.record_failure()
        return result


def build_default_fallbacks(
    github: GitHubActionsFallback | None = None,
    *,
    workflows: dict[str, str] | None = None,
) -> FallbackManager:
    github = github or GitHubActionsFallback()
    manager = FallbackManager()
    for operation, workflow in (workflows or DEFAULT_WORKFLOWS).items():

        async def _dispatch(
            params: dict[str, Any],
            workflow: str = workflow,
            operation: str = operation,
        ) -> FallbackResult:
            return replace(await github.trigger_workflow(workflow, params), operation=operation)

        manager.register_fallback(operation, _dispatch)
    return manager
