"""
Evidence schemas.

Typed results produced by the capture gates and by the three evidence
engines (vision, forensic, logic), plus the per-signal outcome wrapper
the aggregator consumes.

Every confidence value is bounded to [0, 1] at construction time. An
engine answer that violates these bounds never becomes a result object;
it is rejected during decoding instead.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Enumerations (FROZEN CONTRACTS)
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    """
    Severity of an anomaly, editing trace, or discrepancy.

    Only HIGH contributes to the aggregation penalty.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SignalName(str, Enum):
    VISION = "vision"
    FORENSIC = "forensic"
    LOGIC = "logic"


class UnavailableReason(str, Enum):
    """
    Why a signal is missing from aggregation.
    """

    FAILED = "failed"          # retries exhausted or non-transient failure
    MALFORMED = "malformed"    # engine answered outside its contract
    SKIPPED = "skipped"        # upstream dependency unavailable
    CANCELLED = "cancelled"    # request cancelled or timed out first


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


class Descriptor(BaseModel):
    """
    A structured record describing a detected anomaly or discrepancy.
    """

    field: str = Field(..., description="Document field or region concerned")
    reason: str = Field(..., description="What was detected")
    severity: Severity = Field(Severity.LOW)

    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Capture gates
# ---------------------------------------------------------------------------


class AttestationResult(BaseModel):
    """
    Outcome of capture-device hardware signature verification.
    """

    passed: bool
    device_id: str
    algorithm: str = "hmac-sha256"
    detail: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class LivenessResult(BaseModel):
    """
    Outcome of passive liveness detection.

    A warning (e.g. "glare detected") does not fail the gate.
    """

    passed: bool
    score: Optional[float] = Field(None, ge=0.0, le=1.0)
    warning: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Engine results
# ---------------------------------------------------------------------------


class VisionResult(BaseModel):
    """
    Result of the vision-language engine.

    extracted_fields holds personal data and is erased on purge.
    """

    confidence: float = Field(..., ge=0.0, le=1.0)
    anomalies: List[Descriptor] = Field(default_factory=list)
    extracted_fields: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def descriptors(self) -> List[Descriptor]:
        return list(self.anomalies)

    def redacted(self) -> "VisionResult":
        """
        Copy with extracted field values removed; field names survive
        so reviewers can see what was read without seeing the values.
        """
        return self.model_copy(
            update={
                "extracted_fields": {
                    name: None for name in self.extracted_fields
                }
            }
        )


class ForensicResult(BaseModel):
    """Result of the forensic metadata engine."""

    confidence: float = Field(..., ge=0.0, le=1.0)
    editing_traces: List[Descriptor] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def descriptors(self) -> List[Descriptor]:
        return list(self.editing_traces)


class LogicResult(BaseModel):
    """Result of the narrative-consistency engine."""

    confidence: float = Field(..., ge=0.0, le=1.0)
    discrepancies: List[Descriptor] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def descriptors(self) -> List[Descriptor]:
        return list(self.discrepancies)


EngineResult = Union[VisionResult, ForensicResult, LogicResult]


# ---------------------------------------------------------------------------
# Per-signal outcome
# ---------------------------------------------------------------------------


class SignalOutcome(BaseModel):
    """
    Either an engine result or an explicit "unavailable" marker.

    Missing evidence is never represented by a default score.
    """

    signal: SignalName
    available: bool
    result: Optional[EngineResult] = None
    unavailable_reason: Optional[UnavailableReason] = None
    detail: Optional[str] = None
    attempts: int = Field(0, ge=0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @model_validator(mode="after")
    def enforce_availability(self):
        if self.available:
            if self.result is None:
                raise ValueError("An available signal must carry a result")
            if self.unavailable_reason is not None:
                raise ValueError(
                    "An available signal must not carry an unavailable reason"
                )
        else:
            if self.result is not None:
                raise ValueError("An unavailable signal must not carry a result")
            if self.unavailable_reason is None:
                raise ValueError(
                    "An unavailable signal must state why it is unavailable"
                )
        return self

    @classmethod
    def of(
        cls,
        signal: SignalName,
        result: EngineResult,
        *,
        attempts: int = 1,
    ) -> "SignalOutcome":
        return cls(
            signal=signal,
            available=True,
            result=result,
            attempts=attempts,
        )

    @classmethod
    def unavailable(
        cls,
        signal: SignalName,
        reason: UnavailableReason,
        *,
        detail: Optional[str] = None,
        attempts: int = 0,
    ) -> "SignalOutcome":
        return cls(
            signal=signal,
            available=False,
            unavailable_reason=reason,
            detail=detail,
            attempts=attempts,
        )

    @property
    def confidence(self) -> Optional[float]:
        return self.result.confidence if self.result is not None else None

    @property
    def descriptors(self) -> List[Descriptor]:
        if self.result is None:
            return []
        return self.result.descriptors

    def redacted(self) -> "SignalOutcome":
        if isinstance(self.result, VisionResult):
            return self.model_copy(update={"result": self.result.redacted()})
        return self
