"""
Retention schema.

A RetentionRecord is everything the service keeps about a request once its
PII is purged. It holds enough to answer a repeated resolution or a late
await_final with the original outcome, and nothing that identifies the
document holder.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from guardian.app.schemas.decision import VerificationStatus
from guardian.app.schemas.evidence import Descriptor, SignalOutcome
from guardian.app.schemas.proof import ComplianceProofToken


class RetentionRecord(BaseModel):
    request_id: str
    status: VerificationStatus
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: Optional[str] = None
    flags: List[str] = Field(default_factory=list)
    descriptor_summary: List[Descriptor] = Field(default_factory=list)

    signals: List[SignalOutcome] = Field(
        default_factory=list,
        description="Redacted vision, forensic and logic outcomes",
    )
    liveness_warning: Optional[str] = None
    case_id: Optional[str] = None
    proof: Optional[ComplianceProofToken] = None

    decided_at: Optional[datetime] = None
    purged_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    model_config = ConfigDict(frozen=True, extra="forbid")
