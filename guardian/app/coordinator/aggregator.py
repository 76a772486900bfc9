"""
Confidence aggregation and routing policy.

A pure, deterministic function of the three (possibly partial) signal
outcomes. No I/O, no clock reads, no randomness: the decision timestamp
is supplied by the caller.

Policy:
- each available signal contributes its configured weight; weights are
  renormalized over the signals actually available
- final confidence = weighted confidence - anomaly penalty, clamped to
  [0, 1]; the penalty grows with the number of HIGH severity descriptors
  and is capped
- routing: above VERIFIED_THRESHOLD -> VERIFIED, above REVIEW_THRESHOLD
  -> PENDING_HITL, otherwise REJECTED; a value on a threshold falls into
  the lower-trust band
- a would-be VERIFIED decision carrying more than HITL_MAX_DESCRIPTORS
  descriptors is escalated to PENDING_HITL
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from guardian.app.config import GuardianConfig
from guardian.app.schemas.decision import AggregatedDecision, VerificationStatus
from guardian.app.schemas.evidence import (
    Severity,
    SignalName,
    SignalOutcome,
    UnavailableReason,
)

# Rounding keeps threshold comparisons stable against float noise.
_PRECISION = 9


class DecisionFlag:
    NO_EVIDENCE = "no_evidence"
    REDUCED_CONFIDENCE = "reduced_confidence"
    MISSING_COVERAGE = "missing_coverage"
    DESCRIPTOR_ESCALATION = "descriptor_escalation"

    @staticmethod
    def unavailable(signal: SignalName) -> str:
        return f"{signal.value}_unavailable"

    @staticmethod
    def malformed(signal: SignalName) -> str:
        return f"{signal.value}_malformed"


class ConfidenceAggregator:
    def __init__(
        self,
        *,
        weights: Dict[str, float],
        penalty_per_high_severity: float,
        penalty_cap: float,
        verified_threshold: float,
        review_threshold: float,
        max_descriptors: int,
    ) -> None:
        self._weights = {SignalName(k): float(v) for k, v in weights.items()}
        self._penalty_per_high = penalty_per_high_severity
        self._penalty_cap = penalty_cap
        self._verified_threshold = verified_threshold
        self._review_threshold = review_threshold
        self._max_descriptors = max_descriptors

    @classmethod
    def from_config(cls, config: GuardianConfig) -> "ConfidenceAggregator":
        return cls(
            weights=config.signal_weights(),
            penalty_per_high_severity=config.PENALTY_PER_HIGH_SEVERITY,
            penalty_cap=config.PENALTY_CAP,
            verified_threshold=config.VERIFIED_THRESHOLD,
            review_threshold=config.REVIEW_THRESHOLD,
            max_descriptors=config.HITL_MAX_DESCRIPTORS,
        )

    # ------------------------------------------------------------------
    # Policy primitives
    # ------------------------------------------------------------------

    def penalty(self, high_severity_count: int) -> float:
        """Non-decreasing in the count, bounded by the cap."""
        return min(
            self._penalty_cap,
            self._penalty_per_high * max(0, high_severity_count),
        )

    def route(
        self,
        confidence: float,
        descriptor_count: int,
    ) -> Tuple[VerificationStatus, List[str]]:
        if confidence > self._verified_threshold:
            if descriptor_count > self._max_descriptors:
                return (
                    VerificationStatus.PENDING_HITL,
                    [DecisionFlag.DESCRIPTOR_ESCALATION],
                )
            return VerificationStatus.VERIFIED, []

        if confidence > self._review_threshold:
            return VerificationStatus.PENDING_HITL, []

        return VerificationStatus.REJECTED, []

    @staticmethod
    def _usable(outcome: SignalOutcome) -> bool:
        if not outcome.available or outcome.result is None:
            return False
        confidence = outcome.result.confidence
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            return False
        return math.isfinite(confidence) and 0.0 <= confidence <= 1.0

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def aggregate(
        self,
        *,
        request_id: str,
        vision: SignalOutcome,
        forensic: SignalOutcome,
        logic: SignalOutcome,
        decided_at: datetime,
    ) -> AggregatedDecision:
        outcomes = [
            (SignalName.VISION, vision),
            (SignalName.FORENSIC, forensic),
            (SignalName.LOGIC, logic),
        ]

        flags: List[str] = []
        contributing: List[Tuple[SignalName, SignalOutcome]] = []

        for signal, outcome in outcomes:
            if self._usable(outcome):
                contributing.append((signal, outcome))
                continue

            flags.append(DecisionFlag.unavailable(signal))
            malformed = outcome.available or (
                outcome.unavailable_reason is UnavailableReason.MALFORMED
            )
            if malformed:
                flags.append(DecisionFlag.malformed(signal))

        if len(contributing) < len(outcomes):
            flags.append(DecisionFlag.MISSING_COVERAGE)
        if not any(s is SignalName.LOGIC for s, _ in contributing):
            flags.append(DecisionFlag.REDUCED_CONFIDENCE)

        total_weight = sum(self._weights[s] for s, _ in contributing)

        descriptors = [
            d for _, outcome in contributing for d in outcome.descriptors
        ]
        high_count = sum(1 for d in descriptors if d.severity is Severity.HIGH)

        if not contributing or total_weight <= 0:
            flags.append(DecisionFlag.NO_EVIDENCE)
            return AggregatedDecision(
                request_id=request_id,
                confidence=0.0,
                status=VerificationStatus.REJECTED,
                vision=vision,
                forensic=forensic,
                logic=logic,
                weights_applied={},
                weighted_confidence=0.0,
                penalty=0.0,
                high_severity_count=high_count,
                descriptor_count=len(descriptors),
                flags=_dedupe(flags),
                decided_at=decided_at,
            )

        weights_applied = {
            s.value: self._weights[s] / total_weight for s, _ in contributing
        }
        weighted = sum(
            weights_applied[s.value] * outcome.result.confidence
            for s, outcome in contributing
        )
        weighted = _clamp(round(weighted, _PRECISION))

        penalty = self.penalty(high_count)
        confidence = _clamp(round(weighted - penalty, _PRECISION))

        status, routing_flags = self.route(confidence, len(descriptors))
        flags.extend(routing_flags)

        return AggregatedDecision(
            request_id=request_id,
            confidence=confidence,
            status=status,
            vision=vision,
            forensic=forensic,
            logic=logic,
            weights_applied=weights_applied,
            weighted_confidence=weighted,
            penalty=penalty,
            high_severity_count=high_count,
            descriptor_count=len(descriptors),
            flags=_dedupe(flags),
            decided_at=decided_at,
        )


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def _dedupe(flags: List[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for flag in flags:
        seen.setdefault(flag, None)
    return list(seen)


def empty_signal(
    signal: SignalName,
    reason: UnavailableReason,
    detail: Optional[str] = None,
) -> SignalOutcome:
    """Marker for a signal that was never attempted."""
    return SignalOutcome.unavailable(signal, reason, detail=detail)
