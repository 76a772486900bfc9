import pytest

from guardian.app.coordinator.aggregator import ConfidenceAggregator
from guardian.app.coordinator.pii_purger import (
    PIIPurger,
    RequestContext,
    RetentionStore,
)
from guardian.app.coordinator.state_machine import RequestStateMachine
from guardian.app.schemas.decision import VerificationStatus
from guardian.app.schemas.evidence import SignalName, SignalOutcome, UnavailableReason
from guardian.tests.fixtures.capture import FIXED_NOW, make_config, make_request
from guardian.tests.fixtures.engines import descriptor, forensic, logic, vision

pytestmark = pytest.mark.anyio


class RecordingAlertSink:
    def __init__(self):
        self.alerts = []

    def alert(self, message: str, *, request_id: str) -> None:
        self.alerts.append((request_id, message))


class RecordingEraser:
    def __init__(self, fail: bool = False):
        self.erased = []
        self._fail = fail

    async def erase(self, request_id: str) -> None:
        self.erased.append(request_id)
        if self._fail:
            raise OSError("artifact store unreachable for jane.doe@example.com")


def _context(request_id: str = "GRD-X1") -> RequestContext:
    request = make_request(request_id)
    v = SignalOutcome.of(
        SignalName.VISION,
        vision(
            0.9,
            anomalies=[
                descriptor(reason="number X1234567 reprinted", severity="high")
            ],
            fields={"surname": "DOE", "birth_date": "1990-04-01"},
        ),
    )
    f = SignalOutcome.of(SignalName.FORENSIC, forensic(0.9))
    lg = SignalOutcome.of(SignalName.LOGIC, logic(0.9))
    decision = ConfidenceAggregator.from_config(make_config()).aggregate(
        request_id=request_id,
        vision=v,
        forensic=f,
        logic=lg,
        decided_at=FIXED_NOW,
    )
    return RequestContext(
        request_id=request_id,
        request=request,
        state=RequestStateMachine(request_id),
        vision=v,
        forensic=f,
        logic=lg,
        decision=decision,
        status=VerificationStatus.VERIFIED,
        flags=list(decision.flags),
    )


async def test_purge_drops_payload_and_extracted_values():
    context = _context()
    assert context.holds_pii

    await PIIPurger().purge(context)

    assert context.request is None
    assert context.vision.result.extracted_fields == {
        "surname": None,
        "birth_date": None,
    }
    assert context.decision.vision.result.extracted_fields["surname"] is None
    assert not context.holds_pii


async def test_purge_writes_retention_record_with_redacted_descriptors():
    store = RetentionStore()
    context = _context()

    record = await PIIPurger(retention_store=store).purge(context)

    assert store.get("GRD-X1") == record
    assert record.status == VerificationStatus.VERIFIED
    assert record.confidence == pytest.approx(context.decision.confidence)
    assert len(record.descriptor_summary) == 1
    assert "X1234567" not in record.descriptor_summary[0].reason
    assert "[redacted]" in record.descriptor_summary[0].reason


async def test_purge_runs_exactly_once():
    eraser = RecordingEraser()
    purger = PIIPurger(erasers=[eraser])
    context = _context()

    first = await purger.purge(context)
    second = await purger.purge(context)

    assert first is second
    assert eraser.erased == ["GRD-X1"]


async def test_eraser_failure_is_alerted_not_raised():
    alerts = RecordingAlertSink()
    store = RetentionStore()
    purger = PIIPurger(
        retention_store=store,
        alert_sink=alerts,
        erasers=[RecordingEraser(fail=True)],
    )
    context = _context()

    record = await purger.purge(context)

    assert record is not None
    assert "GRD-X1" in store
    assert context.request is None
    assert len(alerts.alerts) == 1
    request_id, message = alerts.alerts[0]
    assert request_id == "GRD-X1"
    assert "jane.doe@example.com" not in message


async def test_purge_error_is_logged(caplog):
    purger = PIIPurger(erasers=[RecordingEraser(fail=True)])

    with caplog.at_level("ERROR"):
        await purger.purge(_context())

    assert any("PII purge incomplete" in r.getMessage() for r in caplog.records)


async def test_context_without_decision_still_produces_record():
    request = make_request("GRD-X2")
    context = RequestContext(
        request_id="GRD-X2",
        request=request,
        state=RequestStateMachine("GRD-X2"),
        status=VerificationStatus.REJECTED,
        reason="attestation failure",
    )

    record = await PIIPurger().purge(context)

    assert record.status == VerificationStatus.REJECTED
    assert record.confidence == 0.0
    assert record.reason == "attestation failure"
    assert record.descriptor_summary == []


async def test_retention_record_keeps_redacted_signals_and_case():
    store = RetentionStore()
    context = _context()
    context.case_id = "case-abc"

    record = await PIIPurger(retention_store=store).purge(context)

    assert [s.signal for s in record.signals] == [
        SignalName.VISION,
        SignalName.FORENSIC,
        SignalName.LOGIC,
    ]
    assert set(record.signals[0].result.extracted_fields.values()) == {None}
    assert "DOE" not in record.model_dump_json()
    assert store.for_case("case-abc") == record
    assert store.for_case("case-unknown") is None


async def test_missing_signals_are_reported_as_skipped_or_cancelled():
    context = RequestContext(
        request_id="GRD-X2",
        request=None,
        state=RequestStateMachine("GRD-X2"),
        reason="attestation failure",
    )
    assert {s.unavailable_reason for s in context.signal_outcomes()} == {
        UnavailableReason.SKIPPED
    }

    context.reason = "request timeout"
    assert {s.unavailable_reason for s in context.signal_outcomes()} == {
        UnavailableReason.CANCELLED
    }
