import asyncio

import pytest

from guardian.app.schemas.audit_case import ReviewDecision
from guardian.app.schemas.decision import VerificationStatus
from guardian.app.schemas.evidence import SignalName, UnavailableReason
from guardian.tests.fixtures.capture import MutableClock, make_config, make_submission
from guardian.tests.fixtures.engines import (
    descriptor,
    forensic,
    logic,
    permanent,
    transient,
    vision,
)
from guardian.tests.fixtures.orchestrator import (
    ListEmitter,
    RecordingEraser,
    build_harness,
)

pytestmark = pytest.mark.anyio


def _borderline_harness(**kwargs):
    return build_harness(
        vision_script=[vision(0.70, anomalies=[descriptor()])],
        forensic_script=[forensic(0.65)],
        logic_script=[logic(0.72)],
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Automatic outcomes
# ---------------------------------------------------------------------------


async def test_clean_capture_is_verified_with_proof():
    h = build_harness()

    response = await h.orchestrator.verify(make_submission())

    assert response.request_id == "GRD-000001"
    assert response.status == VerificationStatus.VERIFIED
    assert response.confidence == pytest.approx(0.947)
    assert response.proof is not None
    assert response.flags == []
    assert h.orchestrator.verify_proof(response.proof.token).valid
    assert h.orchestrator.proof_issuer.binds(response.proof.token, "GRD-000001")


async def test_verified_request_is_purged_with_retention_record():
    h = build_harness()

    response = await h.orchestrator.verify(make_submission())

    record = h.orchestrator.retention_record(response.request_id)
    assert record.status == VerificationStatus.VERIFIED
    assert record.confidence == pytest.approx(response.confidence)
    assert h.eraser.erased == [response.request_id]


async def test_response_never_carries_extracted_values():
    h = build_harness(
        vision_script=[
            vision(0.95, fields={"surname": "DOE", "document_number": "X1234567"})
        ]
    )

    response = await h.orchestrator.verify(make_submission())
    body = response.model_dump_json()

    assert "X1234567" not in body
    vision_outcome = response.signals[0]
    assert set(vision_outcome.result.extracted_fields.values()) == {None}
    assert set(vision_outcome.result.extracted_fields) == {
        "surname",
        "document_number",
    }


async def test_low_confidence_is_rejected():
    h = build_harness(
        vision_script=[vision(0.30)],
        forensic_script=[forensic(0.30)],
        logic_script=[logic(0.30)],
    )

    response = await h.orchestrator.verify(make_submission())

    assert response.status == VerificationStatus.REJECTED
    assert response.reason == "confidence below review threshold"
    assert response.proof is None
    assert h.orchestrator.retention_record(response.request_id) is not None


async def test_forensic_outage_still_verifies_with_flag():
    h = build_harness(forensic_script=[transient("forensic")])

    response = await h.orchestrator.verify(make_submission())

    assert response.status == VerificationStatus.VERIFIED
    assert "forensic_unavailable" in response.flags
    assert "missing_coverage" in response.flags
    forensic_outcome = response.signals[1]
    assert not forensic_outcome.available
    assert forensic_outcome.result is None


async def test_forensic_retries_then_timeout_renormalizes_weights():
    h = build_harness(
        vision_script=[vision(0.90)],
        forensic_script=[
            transient("forensic"),
            transient("forensic"),
            asyncio.TimeoutError(),
        ],
        logic_script=[logic(0.90)],
    )

    response = await h.orchestrator.verify(make_submission())

    assert h.forensic.calls == 3
    assert response.confidence == pytest.approx(0.90)
    assert response.status == VerificationStatus.VERIFIED
    assert "forensic_unavailable" in response.flags


async def test_vision_outage_skips_logic_validation():
    h = build_harness(
        vision_script=[permanent("vision")],
        forensic_script=[forensic(0.90)],
    )

    response = await h.orchestrator.verify(make_submission())

    assert h.logic.calls == 0
    assert "vision_unavailable" in response.flags
    assert "logic_unavailable" in response.flags
    assert "reduced_confidence" in response.flags


async def test_both_evidence_engines_down_rejects_request():
    h = build_harness(
        vision_script=[permanent("vision")],
        forensic_script=[permanent("forensic")],
    )

    response = await h.orchestrator.verify(make_submission())

    assert response.status == VerificationStatus.REJECTED
    assert response.reason == "evidence collection failure"
    assert [s.available for s in response.signals] == [False, False, False]
    assert response.signals[2].unavailable_reason == UnavailableReason.SKIPPED
    assert h.logic.calls == 0
    assert h.eraser.erased == [response.request_id]


async def test_logic_receives_extracted_fields_and_claims():
    h = build_harness()

    await h.orchestrator.verify(
        make_submission(context_claims={"surname": "DOE", "nationality": "NLD"})
    )

    seen = h.logic.seen[0]
    assert seen["extracted_fields"]["surname"] == "DOE"
    assert seen["context_claims"] == {"surname": "DOE", "nationality": "NLD"}
    assert seen["document_type"] == "passport"


# ---------------------------------------------------------------------------
# Hard gate
# ---------------------------------------------------------------------------


async def test_bad_device_signature_rejects_without_engine_calls():
    h = build_harness()

    response = await h.orchestrator.verify(make_submission(signature="00" * 32))

    assert response.status == VerificationStatus.REJECTED
    assert response.reason == "attestation failure"
    assert response.confidence == 0.0
    assert [s.signal for s in response.signals] == [
        SignalName.VISION,
        SignalName.FORENSIC,
        SignalName.LOGIC,
    ]
    assert {s.unavailable_reason for s in response.signals} == {
        UnavailableReason.SKIPPED
    }
    assert h.engine_calls == 0
    assert h.eraser.erased == [response.request_id]


async def test_failed_liveness_rejects_without_engine_calls():
    h = build_harness()

    response = await h.orchestrator.verify(
        make_submission(liveness={"score": 0.1})
    )

    assert response.status == VerificationStatus.REJECTED
    assert response.reason == "liveness failure"
    assert len(response.signals) == 3
    assert not any(s.available for s in response.signals)
    assert h.engine_calls == 0


async def test_liveness_warning_is_surfaced():
    h = build_harness()

    response = await h.orchestrator.verify(
        make_submission(liveness={"score": 0.9, "warnings": ["glare detected"]})
    )

    assert response.status == VerificationStatus.VERIFIED
    assert response.liveness_warning == "glare detected"


# ---------------------------------------------------------------------------
# Human review
# ---------------------------------------------------------------------------


async def test_borderline_capture_opens_audit_case():
    h = _borderline_harness()

    response = await h.orchestrator.verify(make_submission())

    assert response.status == VerificationStatus.PENDING_HITL
    assert response.case_id is not None
    assert response.proof is None
    assert h.orchestrator.retention_record(response.request_id) is None
    assert [c.case_id for c in h.orchestrator.list_open_cases()] == [
        response.case_id
    ]


async def test_approval_verifies_and_purges():
    h = _borderline_harness()
    pending = await h.orchestrator.verify(make_submission())

    resolved = await h.orchestrator.resolve_case(
        pending.case_id, ReviewDecision.APPROVE, "reviewer-1"
    )

    assert resolved.status == VerificationStatus.VERIFIED
    assert resolved.proof is not None
    assert not resolved.idempotent_replay
    assert h.orchestrator.list_open_cases() == []
    record = h.orchestrator.retention_record(pending.request_id)
    assert record.status == VerificationStatus.VERIFIED
    assert h.eraser.erased == [pending.request_id]


async def test_repeated_resolution_replays_first_outcome():
    h = _borderline_harness()
    pending = await h.orchestrator.verify(make_submission())
    first = await h.orchestrator.resolve_case(
        pending.case_id, ReviewDecision.APPROVE, "reviewer-1"
    )

    replay = await h.orchestrator.resolve_case(
        pending.case_id, ReviewDecision.REJECT, "reviewer-2"
    )

    assert replay.idempotent_replay
    assert replay.status == VerificationStatus.VERIFIED
    assert replay.proof == first.proof
    assert h.eraser.erased == [pending.request_id]


async def test_reviewer_rejection():
    h = _borderline_harness()
    pending = await h.orchestrator.verify(make_submission())

    resolved = await h.orchestrator.resolve_case(
        pending.case_id, ReviewDecision.REJECT, "reviewer-1"
    )

    assert resolved.status == VerificationStatus.REJECTED
    assert resolved.reason == "rejected by reviewer"
    assert resolved.proof is None
    record = h.orchestrator.retention_record(pending.request_id)
    assert record.reason == "rejected by reviewer"


async def test_unknown_case_raises_key_error():
    h = build_harness()

    with pytest.raises(KeyError):
        await h.orchestrator.resolve_case(
            "case-unknown", ReviewDecision.APPROVE, "reviewer-1"
        )


async def test_await_final_wakes_on_resolution():
    h = _borderline_harness()
    pending = await h.orchestrator.verify(make_submission())

    waiter = asyncio.create_task(h.orchestrator.await_final(pending.request_id))
    await asyncio.sleep(0)
    assert not waiter.done()

    await h.orchestrator.resolve_case(
        pending.case_id, ReviewDecision.APPROVE, "reviewer-1"
    )
    final = await asyncio.wait_for(waiter, timeout=1.0)

    assert final.status == VerificationStatus.VERIFIED
    assert h.orchestrator.retention_record(pending.request_id) is not None


async def test_overdue_case_expires_to_rejected():
    clock = MutableClock()
    h = _borderline_harness(
        config=make_config(CASE_EXPIRY_SECONDS=60), clock=clock
    )
    pending = await h.orchestrator.verify(make_submission())

    assert await h.orchestrator.expire_cases() == []

    clock.advance(61)
    expired = await h.orchestrator.expire_cases()

    assert [r.request_id for r in expired] == [pending.request_id]
    assert expired[0].status == VerificationStatus.REJECTED
    assert expired[0].reason == "review case expired"
    assert h.orchestrator.retention_record(pending.request_id).status == (
        VerificationStatus.REJECTED
    )


async def test_many_descriptors_escalate_to_review():
    h = build_harness(
        vision_script=[
            vision(
                0.99,
                anomalies=[
                    descriptor(field=f"F{i}", severity="low") for i in range(4)
                ],
            )
        ],
        forensic_script=[forensic(0.99)],
        logic_script=[logic(0.99)],
    )

    response = await h.orchestrator.verify(make_submission())

    assert response.status == VerificationStatus.PENDING_HITL
    assert "descriptor_escalation" in response.flags


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


async def test_verified_request_emits_lifecycle_events_in_order():
    h = build_harness()
    emitter = ListEmitter()

    await h.orchestrator.verify(make_submission(), emitter=emitter)

    types = emitter.types
    assert types[0] == "verification_started"
    assert types[-1] == "verification_completed"
    assert types.index("proof_issued") < types.index("pii_purged")
    assert types.count("pii_purged") == 1
    assert "state_changed" in types


async def test_pending_request_emits_case_opened_not_purged():
    h = _borderline_harness()
    emitter = ListEmitter()

    await h.orchestrator.verify(make_submission(), emitter=emitter)

    assert "case_opened" in emitter.types
    assert "pii_purged" not in emitter.types


async def test_failing_emitter_does_not_affect_outcome():
    class BrokenEmitter:
        async def emit(self, event) -> None:
            raise RuntimeError("stream closed")

    h = build_harness()

    response = await h.orchestrator.verify(make_submission(), emitter=BrokenEmitter())

    assert response.status == VerificationStatus.VERIFIED


# ---------------------------------------------------------------------------
# Replays and bookkeeping
# ---------------------------------------------------------------------------


class SlowEraser(RecordingEraser):
    async def erase(self, request_id: str) -> None:
        await asyncio.sleep(0.01)
        await super().erase(request_id)


async def test_replay_after_failed_approval_reports_the_rejection(monkeypatch):
    h = _borderline_harness()
    pending = await h.orchestrator.verify(make_submission())

    def _boom(*_):
        raise RuntimeError("signing backend down")

    monkeypatch.setattr(h.orchestrator.proof_issuer, "issue", _boom)
    with pytest.raises(RuntimeError):
        await h.orchestrator.resolve_case(
            pending.case_id, ReviewDecision.APPROVE, "reviewer-1"
        )
    monkeypatch.undo()

    replay = await h.orchestrator.resolve_case(
        pending.case_id, ReviewDecision.APPROVE, "reviewer-1"
    )
    final = await h.orchestrator.await_final(pending.request_id)

    for response in (replay, final):
        assert response.status == VerificationStatus.REJECTED
        assert response.reason == "internal error"
        assert response.proof is None
    assert replay.idempotent_replay
    assert h.orchestrator.proof_issuer.outstanding == 0


async def test_concurrent_resolutions_settle_once():
    h = _borderline_harness(eraser=SlowEraser())
    pending = await h.orchestrator.verify(make_submission())

    first, second = await asyncio.gather(
        h.orchestrator.resolve_case(
            pending.case_id, ReviewDecision.APPROVE, "reviewer-1"
        ),
        h.orchestrator.resolve_case(
            pending.case_id, ReviewDecision.REJECT, "reviewer-2"
        ),
    )

    assert not first.idempotent_replay
    assert second.idempotent_replay
    assert second.status == VerificationStatus.VERIFIED
    assert second.proof == first.proof
    assert h.eraser.erased == [pending.request_id]


async def test_settled_cases_are_released_from_the_router():
    h = _borderline_harness()
    first = await h.orchestrator.verify(make_submission())
    second = await h.orchestrator.verify(make_submission())
    assert len(h.orchestrator.router) == 2

    await h.orchestrator.resolve_case(
        first.case_id, ReviewDecision.APPROVE, "reviewer-1"
    )
    await h.orchestrator.resolve_case(
        second.case_id, ReviewDecision.REJECT, "reviewer-1"
    )

    assert len(h.orchestrator.router) == 0
    assert h.orchestrator.router._waiters == {}
    assert h.orchestrator._pending == {}
    assert h.orchestrator._settled == {}


async def test_replay_outlives_proof_expiry():
    clock = MutableClock()
    h = _borderline_harness(config=make_config(PROOF_TTL_SECONDS=60), clock=clock)
    pending = await h.orchestrator.verify(make_submission())
    first = await h.orchestrator.resolve_case(
        pending.case_id, ReviewDecision.APPROVE, "reviewer-1"
    )

    clock.advance(120)
    h.orchestrator.proof_issuer.issue("GRD-OTHER", VerificationStatus.VERIFIED)
    replay = await h.orchestrator.resolve_case(
        pending.case_id, ReviewDecision.APPROVE, "reviewer-1"
    )

    assert replay.status == VerificationStatus.VERIFIED
    assert replay.proof == first.proof
    assert not h.orchestrator.verify_proof(replay.proof.token).valid
