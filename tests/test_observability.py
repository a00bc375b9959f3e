"""Tests for the structured logging and Prometheus hooks."""

from __future__ import annotations

import json
import logging

import pytest
from prometheus_client import CollectorRegistry

from reliable_pipeline.correlation import set_correlation_id
from reliable_pipeline.exceptions import TransientError
from reliable_pipeline.instrumentation import HookRegistry
from reliable_pipeline.observability import PrometheusMetricsHook, StructuredLoggingHook
from reliable_pipeline.pipeline import FunctionHandler

from .conftest import make_message, run_until_drained


async def succeed():
    return "ok"


async def fail():
    raise TransientError("down")


async def test_structured_log_entry(caplog) -> None:
    set_correlation_id("c-7")
    hook = StructuredLoggingHook()

    with caplog.at_level(logging.INFO, logger="reliable_pipeline.observability"):
        result = await hook(
            "pipeline.process.orders",
            {"message.sequence_token": 3, "ignored": object()},
            succeed,
        )

    assert result == "ok"
    entry = json.loads(caplog.records[-1].getMessage())
    assert entry["operation"] == "pipeline.process.orders"
    assert entry["outcome"] == "success"
    assert entry["correlation_id"] == "c-7"
    assert entry["message.sequence_token"] == 3
    assert "ignored" not in entry
    set_correlation_id(None)


async def test_structured_log_records_errors(caplog) -> None:
    logger = logging.getLogger("tests.structured")
    hook = StructuredLoggingHook(logger)

    with caplog.at_level(logging.INFO, logger="tests.structured"):
        with pytest.raises(TransientError):
            await hook("pipeline.sweep", {"correlation_id": "c-9"}, fail)

    entry = json.loads(caplog.records[-1].getMessage())
    assert entry["outcome"] == "error"
    assert entry["correlation_id"] == "c-9"


async def test_prometheus_hook_counts_outcomes() -> None:
    registry = CollectorRegistry()
    hook = PrometheusMetricsHook(registry)

    await hook("pipeline.sweep", {}, succeed)
    await hook("pipeline.sweep", {}, succeed)
    with pytest.raises(TransientError):
        await hook("pipeline.sweep", {}, fail)

    labels = {"operation": "pipeline.sweep"}
    assert registry.get_sample_value(
        "pipeline_operation_total", {**labels, "outcome": "success"}
    ) == 2
    assert registry.get_sample_value(
        "pipeline_operation_total", {**labels, "outcome": "error"}
    ) == 1
    assert registry.get_sample_value(
        "pipeline_operation_duration_seconds_count", {**labels, "outcome": "success"}
    ) == 2


async def test_metrics_for_pipeline_operations(make_pipeline, transport) -> None:
    metrics = CollectorRegistry()
    hooks = HookRegistry()
    hooks.register(PrometheusMetricsHook(metrics), operations=["pipeline.*"])

    async def process(message) -> None:
        if message.payload == b"bad":
            raise ValueError("unparseable")

    pipeline = make_pipeline(handler=FunctionHandler(process), hooks=hooks)
    await run_until_drained(
        pipeline, transport, make_message(0), make_message(1, payload=b"bad")
    )

    assert metrics.get_sample_value(
        "pipeline_operation_total",
        {"operation": "pipeline.process.orders", "outcome": "success"},
    ) == 1
    assert metrics.get_sample_value(
        "pipeline_operation_total",
        {"operation": "pipeline.dead_letter.ValidationError", "outcome": "success"},
    ) == 1
