import asyncio

import pytest

from guardian.app.coordinator.engine_pool import EnginePool
from guardian.app.errors import AggregationInputError, ConfigurationError
from guardian.app.events import VerificationEventType
from guardian.app.schemas.evidence import (
    ForensicResult,
    SignalName,
    UnavailableReason,
    VisionResult,
)
from guardian.app.schemas.request import DocumentPayload
from guardian.tests.fixtures.engines import (
    ScriptedVisionEngine,
    forensic,
    permanent,
    transient,
    vision,
)

pytestmark = pytest.mark.anyio

PAYLOAD = DocumentPayload(content=b"jpeg", document_type="passport")


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ListEmitter:
    def __init__(self):
        self.events = []

    async def emit(self, event) -> None:
        self.events.append(event)


def _pool(sleep=None, **overrides) -> EnginePool:
    values = dict(
        signal=SignalName.VISION,
        size=2,
        timeout_seconds=0.5,
        retry_budget=2,
        backoff_base_seconds=0.1,
        backoff_max_seconds=0.3,
        sleep=sleep or RecordingSleep(),
    )
    values.update(overrides)
    return EnginePool(**values)


def _call(pool, engine, **kwargs):
    return pool.call(
        lambda: engine.analyze(PAYLOAD),
        expected=VisionResult,
        request_id="GRD-POOL",
        **kwargs,
    )


async def test_first_attempt_success_returns_result():
    engine = ScriptedVisionEngine([vision(0.9)])
    outcome = await _call(_pool(), engine)

    assert outcome.available
    assert outcome.confidence == pytest.approx(0.9)
    assert outcome.attempts == 1
    assert engine.calls == 1


async def test_transient_failures_are_retried_with_backoff():
    sleep = RecordingSleep()
    engine = ScriptedVisionEngine([transient(), transient(), vision(0.8)])

    outcome = await _call(_pool(sleep=sleep), engine)

    assert outcome.available
    assert outcome.attempts == 3
    assert sleep.delays == [pytest.approx(0.1), pytest.approx(0.2)]


async def test_backoff_is_bounded():
    sleep = RecordingSleep()
    engine = ScriptedVisionEngine([transient()])

    outcome = await _call(
        _pool(
            sleep=sleep,
            retry_budget=4,
            backoff_base_seconds=0.1,
            backoff_max_seconds=0.3,
        ),
        engine,
    )

    assert outcome.attempts == 5
    assert sleep.delays == [
        pytest.approx(0.1),
        pytest.approx(0.2),
        pytest.approx(0.3),
        pytest.approx(0.3),
    ]


async def test_zero_retry_budget_makes_a_single_attempt():
    sleep = RecordingSleep()
    engine = ScriptedVisionEngine([transient()])

    outcome = await _call(_pool(sleep=sleep, retry_budget=0), engine)

    assert not outcome.available
    assert outcome.attempts == 1
    assert sleep.delays == []


async def test_failed_attempts_are_logged(caplog):
    engine = ScriptedVisionEngine([transient(), vision(0.9)])

    with caplog.at_level("WARNING"):
        await _call(_pool(), engine)

    assert any("attempt 1/3 failed" in r.getMessage() for r in caplog.records)


async def test_exhausted_retry_budget_yields_unavailable_marker():
    engine = ScriptedVisionEngine([transient()])

    outcome = await _call(_pool(retry_budget=2), engine)

    assert not outcome.available
    assert outcome.unavailable_reason == UnavailableReason.FAILED
    assert outcome.attempts == 3
    assert "retry budget exhausted" in outcome.detail
    assert engine.calls == 3


async def test_non_transient_failure_is_not_retried():
    engine = ScriptedVisionEngine([permanent(), vision(0.9)])

    outcome = await _call(_pool(), engine)

    assert not outcome.available
    assert outcome.unavailable_reason == UnavailableReason.FAILED
    assert engine.calls == 1


async def test_per_attempt_timeout_counts_as_transient():
    engine = ScriptedVisionEngine([vision(0.9)], delay=5.0)

    outcome = await _call(_pool(timeout_seconds=0.01, retry_budget=1), engine)

    assert not outcome.available
    assert engine.calls == 2
    assert engine.cancelled == 2
    assert "timed out" in outcome.detail


async def test_malformed_response_is_excluded_without_retry():
    engine = ScriptedVisionEngine(
        [AggregationInputError("confidence out of range"), vision(0.9)]
    )

    outcome = await _call(_pool(), engine)

    assert not outcome.available
    assert outcome.unavailable_reason == UnavailableReason.MALFORMED
    assert engine.calls == 1


async def test_wrong_result_type_is_treated_as_malformed():
    engine = ScriptedVisionEngine([forensic(0.9)])

    outcome = await _call(_pool(), engine)

    assert outcome.unavailable_reason == UnavailableReason.MALFORMED
    assert ForensicResult.__name__ in outcome.detail


async def test_configuration_error_propagates():
    engine = ScriptedVisionEngine([ConfigurationError("no credentials")])

    with pytest.raises(ConfigurationError):
        await _call(_pool(), engine)

    assert engine.calls == 1


async def test_pool_bounds_concurrency():
    pool = _pool(size=2)
    active = 0
    peak = 0

    async def slow_call():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return vision(0.9)

    outcomes = await asyncio.gather(
        *(
            pool.call(slow_call, expected=VisionResult, request_id=f"GRD-{i}")
            for i in range(6)
        )
    )

    assert all(o.available for o in outcomes)
    assert peak == 2


async def test_engine_call_events_are_emitted():
    emitter = ListEmitter()
    engine = ScriptedVisionEngine([transient(), vision(0.9)])

    await _call(_pool(), engine, emitter=emitter)

    types = [e.event_type for e in emitter.events]
    assert types.count(VerificationEventType.ENGINE_CALL_STARTED) == 2
    assert types[-1] == VerificationEventType.ENGINE_CALL_COMPLETED
    assert emitter.events[-1].details["success"] is True
