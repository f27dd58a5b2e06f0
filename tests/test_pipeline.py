"""
Tests for the pipeline driver: ordering, short-circuit and unexpected errors.
"""
from unittest.mock import MagicMock

import pytest

from middleware.pipeline import SecurityPipeline
from models.request_context import RequestContext
from monitoring.metrics import SecurityMetrics
from utils.exceptions import FailureKind, SecurityFailure


def recording_gate(calls, name, failure=None):
    async def gate(ctx):
        calls.append(name)
        return failure
    return gate


def full_pipeline(calls, failing=None, metrics=None, recorder=None):
    def slot(name):
        failure = SecurityFailure.of(FailureKind.PERMISSION_DENIED) if name == failing else None
        return recording_gate(calls, name, failure)

    return SecurityPipeline(
        rate_limit=slot("rate_limit"),
        authentication=slot("authentication"),
        authorization=(slot("authorization"),),
        sql_guard=slot("sql_injection"),
        sanitizer=slot("sanitizer"),
        csrf=slot("csrf"),
        recorder=recorder,
        metrics=metrics or SecurityMetrics(),
    )


def ctx():
    return RequestContext.build("POST", "/api/v1/students", headers={"User-Agent": "pytest"})


@pytest.mark.asyncio
async def test_gates_run_in_fixed_order():
    calls = []

    assert await full_pipeline(calls).run(ctx()) is None
    assert calls == ["rate_limit", "authentication", "authorization", "sql_injection", "sanitizer", "csrf"]


@pytest.mark.asyncio
async def test_first_failure_stops_the_request():
    calls = []
    metrics = SecurityMetrics()

    failure = await full_pipeline(calls, failing="authorization", metrics=metrics).run(ctx())

    assert failure.kind is FailureKind.PERMISSION_DENIED
    assert calls == ["rate_limit", "authentication", "authorization"]
    assert metrics.registry.get_sample_value(
        "schoolgate_gate_failures_total", {"kind": "permission_denied", "stage": "authorization"}
    ) == 1.0


@pytest.mark.asyncio
async def test_unexpected_gate_error_becomes_internal_error():
    metrics = SecurityMetrics()

    async def broken(ctx):
        raise KeyError("boom")

    pipeline = SecurityPipeline(authentication=broken, metrics=metrics)

    failure = await pipeline.run(ctx())

    assert failure.kind is FailureKind.INTERNAL_ERROR
    assert failure.status_code == 500
    assert failure.message == "Internal security error"
    assert metrics.registry.get_sample_value(
        "schoolgate_gate_failures_total", {"kind": "internal_error", "stage": "authentication"}
    ) == 1.0


@pytest.mark.asyncio
async def test_denial_is_handed_to_recorder():
    recorder = MagicMock()

    await full_pipeline([], failing="csrf", recorder=recorder).run(ctx())

    kwargs = recorder.record_denial.call_args.kwargs
    assert kwargs["failure_code"] == "permission_denied"
    assert kwargs["status_code"] == 403
    assert kwargs["path"] == "/api/v1/students"
    assert kwargs["user_agent"] == "pytest"


@pytest.mark.asyncio
async def test_recorder_error_does_not_change_outcome():
    recorder = MagicMock()
    recorder.record_denial.side_effect = RuntimeError("no loop")

    failure = await full_pipeline([], failing="rate_limit", recorder=recorder).run(ctx())

    assert failure.kind is FailureKind.PERMISSION_DENIED


def test_variants_leave_original_untouched():
    calls = []
    base = full_pipeline(calls)

    async def extra(ctx):
        return None

    extended = base.with_authorization(extra)
    no_csrf = base.without_csrf()

    assert len(base.authorization) == 1
    assert len(extended.authorization) == 2
    assert base.csrf is not None
    assert no_csrf.csrf is None
    assert [stage for stage, _ in no_csrf.gates()][-1] == "sanitizer"
    assert base.with_authorization() is base


@pytest.mark.asyncio
async def test_complete_without_rate_limit_gate():
    await SecurityPipeline(metrics=SecurityMetrics()).complete(ctx(), 200)
