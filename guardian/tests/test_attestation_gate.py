from datetime import timedelta

import pytest

from guardian.app.coordinator.attestation_gate import (
    AttestationGate,
    DescriptorLivenessDetector,
    HmacDeviceAttestor,
)
from guardian.tests.fixtures.capture import (
    FIXED_NOW,
    fixed_clock,
    make_config,
    make_request,
)

pytestmark = pytest.mark.anyio


def _gate(**overrides) -> AttestationGate:
    return AttestationGate.from_config(make_config(**overrides), clock=fixed_clock)


async def test_valid_signature_passes_attestation():
    result = await _gate().attest(make_request())

    assert result.passed
    assert result.device_id == "capture-device-01"


async def test_unknown_device_fails_attestation():
    result = await _gate().attest(make_request(device_id="rogue-device"))

    assert not result.passed
    assert result.detail == "device not enrolled"


async def test_tampered_payload_fails_attestation():
    request = make_request(signature=None)
    tampered = request.model_copy(
        update={
            "payload": request.payload.model_copy(
                update={"content": request.payload.content + b"edited"}
            )
        }
    )

    result = await _gate().attest(tampered)

    assert not result.passed
    assert result.detail == "device signature mismatch"


async def test_stale_capture_fails_attestation():
    request = make_request(signed_at=FIXED_NOW - timedelta(minutes=30))

    result = await _gate(MAX_CAPTURE_AGE_SECONDS=300).attest(request)

    assert not result.passed
    assert "window" in result.detail


async def test_capture_from_the_future_fails_attestation():
    request = make_request(signed_at=FIXED_NOW + timedelta(minutes=5))

    result = await _gate().attest(request)

    assert not result.passed


async def test_uppercase_signature_is_accepted():
    request = make_request()
    upper = request.model_copy(
        update={
            "capture": request.capture.model_copy(
                update={"device_signature": request.capture.device_signature.upper()}
            )
        }
    )

    result = await HmacDeviceAttestor(make_config(), clock=fixed_clock).attest(upper)

    assert result.passed


async def test_liveness_passes_above_minimum_score():
    result = await _gate().check_liveness(make_request(liveness={"score": 0.9}))

    assert result.passed
    assert result.score == pytest.approx(0.9)
    assert result.warning is None


async def test_liveness_warning_is_surfaced_on_pass():
    result = await _gate().check_liveness(
        make_request(liveness={"score": 0.8, "warnings": ["glare detected"]})
    )

    assert result.passed
    assert result.warning == "glare detected"


async def test_liveness_fails_below_minimum_score():
    detector = DescriptorLivenessDetector(make_config(LIVENESS_MIN_SCORE=0.7))
    result = await detector.check(make_request(liveness={"score": 0.4}))

    assert not result.passed


@pytest.mark.parametrize(
    "stream",
    [{}, {"score": "high"}, {"score": 1.5}, {"score": None}],
)
async def test_missing_or_invalid_liveness_score_fails(stream):
    result = await _gate().check_liveness(make_request(liveness=stream))

    assert not result.passed
    assert result.warning
