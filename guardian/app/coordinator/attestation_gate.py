"""
Capture attestation and passive liveness gate.

This gate runs before any evidence engine is contacted. A capture that
fails here never costs a paid analysis call. Attestation failure is not
transient, so nothing in this module retries.

Hardware attestation and liveness are delegated to collaborators behind
small protocols. The shipped implementations are:

- HmacDeviceAttestor: verifies an HMAC-SHA256 device signature over
  "<device_id>|<signed_at ISO-8601>|<sha256(payload)>" using the device's
  enrolled key, and rejects stale captures.
- DescriptorLivenessDetector: reads the liveness stream descriptor
  emitted by the capture SDK ({"score": float, "warnings": [str]}).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from guardian.app.config import GuardianConfig
from guardian.app.schemas.evidence import AttestationResult, LivenessResult
from guardian.app.schemas.request import VerificationRequest
from guardian.app.utils.hashing import (
    compute_payload_digest,
    digests_match,
    keyed_hexdigest,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def attestation_message(device_id: str, signed_at: datetime, payload: bytes) -> bytes:
    """
    Canonical message a capture device signs.
    """
    if signed_at.tzinfo is None:
        signed_at = signed_at.replace(tzinfo=timezone.utc)
    return "|".join(
        (
            device_id,
            signed_at.astimezone(timezone.utc).isoformat(),
            compute_payload_digest(payload),
        )
    ).encode("utf-8")


# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------


class DeviceAttestor(Protocol):
    async def attest(self, request: VerificationRequest) -> AttestationResult:
        ...


class LivenessDetector(Protocol):
    async def check(self, request: VerificationRequest) -> LivenessResult:
        ...


# ---------------------------------------------------------------------------
# Shipped implementations
# ---------------------------------------------------------------------------


class HmacDeviceAttestor:
    def __init__(
        self,
        config: GuardianConfig,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config
        self._clock = clock or _utcnow

    async def attest(self, request: VerificationRequest) -> AttestationResult:
        capture = request.capture
        key = self._config.device_key(capture.device_id)

        if key is None:
            return AttestationResult(
                passed=False,
                device_id=capture.device_id,
                detail="device not enrolled",
            )

        signed_at = capture.signed_at
        if signed_at.tzinfo is None:
            signed_at = signed_at.replace(tzinfo=timezone.utc)

        age = (self._clock() - signed_at).total_seconds()
        if age > self._config.MAX_CAPTURE_AGE_SECONDS or age < -60:
            return AttestationResult(
                passed=False,
                device_id=capture.device_id,
                detail="capture timestamp outside accepted window",
            )

        expected = keyed_hexdigest(
            key,
            attestation_message(
                capture.device_id,
                signed_at,
                request.payload.content,
            ),
        )

        if not digests_match(expected, capture.device_signature.lower()):
            return AttestationResult(
                passed=False,
                device_id=capture.device_id,
                detail="device signature mismatch",
            )

        return AttestationResult(passed=True, device_id=capture.device_id)


class DescriptorLivenessDetector:
    def __init__(self, config: GuardianConfig) -> None:
        self._min_score = config.LIVENESS_MIN_SCORE

    async def check(self, request: VerificationRequest) -> LivenessResult:
        stream = request.capture.liveness_stream
        raw_score = stream.get("score")

        try:
            score = float(raw_score)
        except (TypeError, ValueError):
            return LivenessResult(passed=False, warning="liveness score missing")

        if not 0.0 <= score <= 1.0:
            return LivenessResult(passed=False, warning="liveness score out of range")

        warnings = stream.get("warnings") or []
        warning = "; ".join(str(w) for w in warnings) if warnings else None

        return LivenessResult(
            passed=score >= self._min_score,
            score=score,
            warning=warning,
        )


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class AttestationGate:
    """
    Hard gate: hardware attestation, then passive liveness.
    """

    def __init__(
        self,
        *,
        attestor: DeviceAttestor,
        liveness: LivenessDetector,
    ) -> None:
        self._attestor = attestor
        self._liveness = liveness

    @classmethod
    def from_config(
        cls,
        config: GuardianConfig,
        *,
        clock: Optional[Clock] = None,
    ) -> "AttestationGate":
        return cls(
            attestor=HmacDeviceAttestor(config, clock=clock),
            liveness=DescriptorLivenessDetector(config),
        )

    async def attest(self, request: VerificationRequest) -> AttestationResult:
        result = await self._attestor.attest(request)
        if not result.passed:
            logger.info(
                "Attestation failed for request %s: %s",
                request.request_id,
                result.detail,
            )
        return result

    async def check_liveness(self, request: VerificationRequest) -> LivenessResult:
        result = await self._liveness.check(request)
        if not result.passed:
            logger.info(
                "Liveness failed for request %s: %s",
                request.request_id,
                result.warning,
            )
        elif result.warning:
            logger.info(
                "Liveness passed with warning for request %s: %s",
                request.request_id,
                result.warning,
            )
        return result
