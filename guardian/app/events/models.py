from __future__ import annotations

import json
from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime, timezone
from uuid import uuid4, UUID

from pydantic import BaseModel, Field, ConfigDict


# ----------------------------------------------------------------------
# Event Types (Finite and Versioned)
# ----------------------------------------------------------------------
class VerificationEventType(str, Enum):
    """
    Progression events emitted during a verification request.

    NOTE:
    This enum is finite and versioned.
    New entries must preserve observational semantics.
    """

    # ------------------------------------------------------------------
    # Request Lifecycle
    # ------------------------------------------------------------------
    VERIFICATION_STARTED = "verification_started"
    VERIFICATION_COMPLETED = "verification_completed"
    VERIFICATION_FAILED = "verification_failed"

    # ------------------------------------------------------------------
    # State Machine
    # ------------------------------------------------------------------
    STATE_CHANGED = "state_changed"

    # ------------------------------------------------------------------
    # Evidence Engines (Observational, Non-Authoritative)
    # ------------------------------------------------------------------
    ENGINE_CALL_STARTED = "engine_call_started"
    ENGINE_CALL_COMPLETED = "engine_call_completed"

    # ------------------------------------------------------------------
    # Human Review
    # ------------------------------------------------------------------
    CASE_OPENED = "case_opened"
    CASE_RESOLVED = "case_resolved"

    # ------------------------------------------------------------------
    # Privacy Effects
    # ------------------------------------------------------------------
    PROOF_ISSUED = "proof_issued"
    PII_PURGED = "pii_purged"


TERMINAL_EVENT_TYPES = frozenset(
    {
        VerificationEventType.VERIFICATION_COMPLETED,
        VerificationEventType.VERIFICATION_FAILED,
    }
)


# ----------------------------------------------------------------------
# Event Model
# ----------------------------------------------------------------------
class VerificationEvent(BaseModel):
    """
    An immutable observation of a stage transition within the orchestrator.

    Events are:
    - strictly observational
    - transport-agnostic
    - free of raw payload bytes and extracted field values
    """

    event_id: UUID = Field(default_factory=uuid4)
    request_id: str = Field(..., description="The verification request identifier")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    event_type: VerificationEventType

    # Optional contextual metadata (state, engine, attempt counts, etc.)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    def to_sse_payload(self) -> str:
        """
        Render the event as a single Server-Sent Events frame.
        """
        data = json.dumps(
            self.model_dump(mode="json"),
            ensure_ascii=False,
            separators=(",", ":"),
        )
        return f"event: {self.event_type.value}\ndata: {data}\n\n"
