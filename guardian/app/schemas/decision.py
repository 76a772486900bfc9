"""
Decision schemas.

Defines the request lifecycle states and the aggregated trust decision.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, model_validator

from guardian.app.schemas.evidence import Descriptor, SignalOutcome


# ---------------------------------------------------------------------------
# Enumerations (FROZEN CONTRACTS)
# ---------------------------------------------------------------------------


class VerificationStatus(str, Enum):
    """
    Trust outcome of a request.

    PENDING_HITL is the only non-terminal status; it resolves to VERIFIED
    or REJECTED through human review or case expiry.
    """

    VERIFIED = "VERIFIED"
    PENDING_HITL = "PENDING_HITL"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self is not VerificationStatus.PENDING_HITL


class RequestState(str, Enum):
    """
    Per-request state machine states, in pipeline order.
    """

    REQUESTED = "REQUESTED"
    ATTESTED = "ATTESTED"
    LIVENESS_OK = "LIVENESS_OK"
    EVIDENCE_COLLECTED = "EVIDENCE_COLLECTED"
    LOGIC_VALIDATED = "LOGIC_VALIDATED"
    AGGREGATED = "AGGREGATED"
    PENDING_HITL = "PENDING_HITL"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in {RequestState.VERIFIED, RequestState.REJECTED}

    @classmethod
    def from_status(cls, status: VerificationStatus) -> "RequestState":
        return cls(status.value)


class RejectionReason(str, Enum):
    ATTESTATION_FAILURE = "attestation failure"
    LIVENESS_FAILURE = "liveness failure"
    EVIDENCE_COLLECTION_FAILURE = "evidence collection failure"
    LOW_CONFIDENCE = "confidence below review threshold"
    REVIEWER_REJECTED = "rejected by reviewer"
    CASE_EXPIRED = "review case expired"
    CANCELLED = "request cancelled"
    REQUEST_TIMEOUT = "request timeout"
    INTERNAL_ERROR = "internal error"


# ---------------------------------------------------------------------------
# Aggregated decision
# ---------------------------------------------------------------------------


class AggregatedDecision(BaseModel):
    """
    Single trust decision computed once per request.

    Immutable after computation. A human override does not modify it;
    the override is recorded on the AuditCase and in the response.
    """

    request_id: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    status: VerificationStatus

    vision: SignalOutcome
    forensic: SignalOutcome
    logic: SignalOutcome

    weights_applied: Dict[str, float] = Field(
        default_factory=dict,
        description="Renormalized weights of the signals that contributed",
    )
    weighted_confidence: float = Field(
        0.0,
        ge=0.0,
        le=1.0,
        description="Weighted confidence before the anomaly penalty",
    )
    penalty: float = Field(0.0, ge=0.0, le=1.0)
    high_severity_count: int = Field(0, ge=0)
    descriptor_count: int = Field(0, ge=0)
    flags: List[str] = Field(default_factory=list)

    decided_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    model_config = ConfigDict(frozen=True, extra="forbid")

    @model_validator(mode="after")
    def enforce_weights(self):
        if self.weights_applied:
            total = sum(self.weights_applied.values())
            if abs(total - 1.0) > 1e-6:
                raise ValueError(
                    "Applied weights must sum to 1 over available signals"
                )
        return self

    @property
    def signals(self) -> List[SignalOutcome]:
        return [self.vision, self.forensic, self.logic]

    def descriptors(self) -> List[Descriptor]:
        out: List[Descriptor] = []
        for outcome in self.signals:
            out.extend(outcome.descriptors)
        return out

    def redacted(self) -> "AggregatedDecision":
        """Copy safe to retain or show to reviewers (no extracted values)."""
        return self.model_copy(update={"vision": self.vision.redacted()})

