"""Instrumentation hooks: structured JSON logging and Prometheus metrics.

Register them on the hook registry::

    registry = get_hook_registry()
    registry.register(StructuredLoggingHook())
    registry.register(PrometheusMetricsHook(), operations=["pipeline.*"])

``PrometheusMetricsHook`` emits ``pipeline_operation_duration_seconds`` and
``pipeline_operation_total`` with labels ``{operation, outcome}``.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from .correlation import get_correlation_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

_log = logging.getLogger("reliable_pipeline.observability")

_SCALARS = (str, int, float, bool)


async def _timed(
    next_handler: Callable[[], Awaitable[Any]],
    record: Callable[[str, float], None],
) -> Any:
    """Await *next_handler* and report ``(outcome, seconds)`` to *record*."""
    start = time.perf_counter()
    outcome = "error"
    try:
        result = await next_handler()
        outcome = "success"
        return result
    finally:
        try:
            record(outcome, time.perf_counter() - start)
        except Exception:  # noqa: BLE001
            _log.debug("Failed to record %s operation", outcome, exc_info=True)


class StructuredLoggingHook:
    """One JSON log line per instrumented operation.

    Failed operations are logged at WARNING, successful ones at ``level``.
    Scalar attributes (topic, partition key, sequence token, attempt, ...)
    are copied into the entry.
    """

    def __init__(
        self, logger: logging.Logger | None = None, *, level: int = logging.INFO
    ) -> None:
        self._log = logger or _log
        self._level = level

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        def record(outcome: str, seconds: float) -> None:
            entry: dict[str, Any] = {
                k: v for k, v in attributes.items() if isinstance(v, _SCALARS)
            }
            entry.update(
                operation=operation,
                outcome=outcome,
                duration_ms=round(seconds * 1000, 2),
                correlation_id=get_correlation_id() or attributes.get("correlation_id"),
            )
            level = self._level if outcome == "success" else logging.WARNING
            self._log.log(level, json.dumps(entry, sort_keys=True))

        return await _timed(next_handler, record)


class PrometheusMetricsHook:
    """Duration histogram and outcome counter per operation.

    Pass a dedicated ``CollectorRegistry`` when more than one hook is
    created in a process (tests, multiple pipelines).
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        target = REGISTRY if registry is None else registry
        labels = ("operation", "outcome")
        self._duration = Histogram(
            "pipeline_operation_duration_seconds",
            "Duration of pipeline operations",
            labels,
            registry=target,
        )
        self._total = Counter(
            "pipeline_operation_total",
            "Completed pipeline operations",
            labels,
            registry=target,
        )

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],  # noqa: ARG002
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        def record(outcome: str, seconds: float) -> None:
            self._duration.labels(operation, outcome).observe(seconds)
            self._total.labels(operation, outcome).inc()

        return await _timed(next_handler, record)
