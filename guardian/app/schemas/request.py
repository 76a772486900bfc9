"""
Ingress request schemas.

A VerificationSubmission is what a caller hands to the orchestrator.
Once it passes validation the orchestrator mints a request id and
freezes it into a VerificationRequest, which is owned exclusively by
the orchestrator for the request's lifetime and never mutated.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DocumentPayload(BaseModel):
    """
    Captured document bytes plus their declared type.
    """

    content: bytes = Field(..., repr=False)
    document_type: str = Field(
        ...,
        min_length=1,
        description="Declared document kind, e.g. 'passport' or 'drivers_license'",
    )
    mime_type: str = Field("image/jpeg")

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("content")
    @classmethod
    def content_not_empty(cls, v: bytes) -> bytes:
        if not v:
            raise ValueError("Document payload is empty")
        return v


class CaptureMetadata(BaseModel):
    """
    Capture-device attestation material.

    device_signature is a hex HMAC over the capture; liveness_stream is
    an opaque descriptor produced by the capture SDK.
    """

    device_id: str = Field(..., min_length=1)
    device_signature: str = Field(..., min_length=1, repr=False)
    signed_at: datetime
    liveness_stream: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="forbid")


class VerificationSubmission(BaseModel):
    """
    Caller input prior to validation and id assignment.
    """

    payload: DocumentPayload
    context_claims: Dict[str, Any] = Field(default_factory=dict)
    capture: CaptureMetadata

    model_config = ConfigDict(frozen=True, extra="forbid")


class VerificationRequest(BaseModel):
    """
    Immutable, identified verification request.
    """

    request_id: str = Field(..., min_length=1)
    payload: DocumentPayload
    context_claims: Dict[str, Any] = Field(default_factory=dict)
    capture: CaptureMetadata
    received_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    model_config = ConfigDict(frozen=True, extra="forbid")

    @classmethod
    def from_submission(
        cls,
        submission: VerificationSubmission,
        *,
        request_id: str,
        received_at: datetime,
    ) -> "VerificationRequest":
        return cls(
            request_id=request_id,
            payload=submission.payload,
            context_claims=dict(submission.context_claims),
            capture=submission.capture,
            received_at=received_at,
        )
