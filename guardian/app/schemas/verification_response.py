"""
Caller-facing verification response.

Every outcome, terminal or pending, is reported with a status and a
confidence. Signal results are redacted: extracted field names are shown,
their values are not.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from guardian.app.schemas.decision import VerificationStatus
from guardian.app.schemas.evidence import SignalOutcome
from guardian.app.schemas.proof import ComplianceProofToken


class VerificationResponse(BaseModel):
    request_id: str
    status: VerificationStatus
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: Optional[str] = None

    signals: List[SignalOutcome] = Field(
        default_factory=list,
        description="Vision, forensic and logic outcomes, or unavailable markers",
    )
    flags: List[str] = Field(default_factory=list)
    liveness_warning: Optional[str] = None

    case_id: Optional[str] = None
    proof: Optional[ComplianceProofToken] = None

    decided_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    idempotent_replay: bool = Field(
        False,
        description="True when this answers a repeated one-shot operation",
    )

    model_config = ConfigDict(frozen=True, extra="forbid")

    @model_validator(mode="after")
    def enforce_outcome_consistency(self):
        """
        - a proof is present iff status is VERIFIED
        - a pending response always references its audit case
        """
        if (self.proof is not None) != (
            self.status is VerificationStatus.VERIFIED
        ):
            raise ValueError(
                "A compliance proof must accompany VERIFIED and only VERIFIED"
            )

        if self.status is VerificationStatus.PENDING_HITL and not self.case_id:
            raise ValueError("A pending response must reference its audit case")

        return self
