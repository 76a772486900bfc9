"""
Compliance proof schemas.

A ComplianceProofToken asserts only a verification outcome. It never
carries extracted fields or document bytes; consumers learn the status,
the request binding, and the validity window, nothing else.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from guardian.app.schemas.decision import VerificationStatus


class ComplianceProofToken(BaseModel):
    token: str = Field(..., description="Opaque signed credential")
    request_binding: str = Field(
        ...,
        description="Keyed, non-reversible hash binding the token to its request",
    )
    status: VerificationStatus
    issued_at: datetime
    expires_at: datetime

    model_config = ConfigDict(frozen=True, extra="forbid")


class ProofVerification(BaseModel):
    """Result of checking a token presented by a proof consumer."""

    valid: bool
    status: Optional[VerificationStatus] = None
    request_binding: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")
