"""
Human-in-the-loop audit case schemas.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from guardian.app.schemas.decision import AggregatedDecision, VerificationStatus


class ReviewOutcome(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewDecision(str, Enum):
    """A reviewer's verdict on an open case."""

    APPROVE = "approve"
    REJECT = "reject"

    @property
    def outcome(self) -> ReviewOutcome:
        if self is ReviewDecision.APPROVE:
            return ReviewOutcome.APPROVED
        return ReviewOutcome.REJECTED

    @property
    def status(self) -> VerificationStatus:
        if self is ReviewDecision.APPROVE:
            return VerificationStatus.VERIFIED
        return VerificationStatus.REJECTED


class AuditCase(BaseModel):
    """
    Review case for a PENDING_HITL decision.

    Exactly one case exists per request and it is resolved at most once.
    The router owns mutation; resolution produces a new frozen copy.
    The decision snapshot is redacted: extracted field values are absent.
    """

    case_id: str
    request_id: str
    decision: AggregatedDecision
    outcome: ReviewOutcome = ReviewOutcome.PENDING
    reviewer_id: Optional[str] = None
    opened_at: datetime
    resolved_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def is_open(self) -> bool:
        return self.outcome is ReviewOutcome.PENDING

    @property
    def final_status(self) -> VerificationStatus:
        if self.outcome is ReviewOutcome.APPROVED:
            return VerificationStatus.VERIFIED
        if self.outcome is ReviewOutcome.REJECTED:
            return VerificationStatus.REJECTED
        return VerificationStatus.PENDING_HITL


class AuditCaseView(BaseModel):
    """
    Reviewer-facing projection of an open case.
    """

    case_id: str
    request_id: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    flags: List[str] = Field(default_factory=list)
    decision: AggregatedDecision
    opened_at: datetime
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @classmethod
    def from_case(cls, case: AuditCase) -> "AuditCaseView":
        return cls(
            case_id=case.case_id,
            request_id=case.request_id,
            confidence=case.decision.confidence,
            flags=list(case.decision.flags),
            decision=case.decision,
            opened_at=case.opened_at,
            expires_at=case.expires_at,
        )
