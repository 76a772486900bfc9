"""
Error taxonomy for the Guardian verification service.

Every failure the orchestrator can observe maps onto exactly one of these
classes. The class decides the handling policy:

- ConfigurationError      fatal, surfaced immediately, never retried
- RequestValidationError  surfaced to the caller, no side effects
- UpstreamEngineError     retried while transient, then degrades evidence
- AggregationInputError   the malformed signal is excluded and flagged
- ConflictError           idempotent replay, reported as a no-op success
- PurgeError              logged and alerted, never blocks the response

Error messages MUST NOT carry raw payload bytes or extracted field values.
"""

from __future__ import annotations

from typing import Any, Optional


class GuardianError(Exception):
    """Base class for all Guardian domain errors."""


class ConfigurationError(GuardianError):
    """
    A collaborator is not reachable, not credentialed, or misconfigured.
    """


class RequestValidationError(GuardianError):
    """
    The ingress request is malformed.

    Raised before a request id is minted; nothing is acquired, so no
    purge is required.
    """

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class UpstreamEngineError(GuardianError):
    """
    An evidence engine failed to answer.

    transient=True marks failures worth retrying (timeouts, network
    errors, engine unavailable). transient=False marks failures that
    will not improve on retry (e.g. a rejected request).
    """

    def __init__(
        self,
        message: str,
        *,
        engine: Optional[str] = None,
        transient: bool = True,
    ) -> None:
        super().__init__(message)
        self.engine = engine
        self.transient = transient


class AggregationInputError(GuardianError):
    """
    An engine returned an out-of-range confidence or unparsable
    descriptors. The signal is excluded, never replaced by a score.
    """

    def __init__(self, message: str, *, engine: Optional[str] = None) -> None:
        super().__init__(message)
        self.engine = engine


class ConflictError(GuardianError):
    """
    A one-shot operation was attempted twice.

    Carries the existing result so callers can answer idempotently.
    """

    def __init__(self, message: str, *, existing: Any = None) -> None:
        super().__init__(message)
        self.existing = existing


class PurgeError(GuardianError):
    """Deletion of request-scoped personal data did not complete."""


class IllegalTransitionError(GuardianError):
    """A request state machine was asked to make a forbidden transition."""


class EvidenceCollectionFailed(GuardianError):
    """
    Neither the vision nor the forensic engine produced evidence.

    Carries both unavailable markers so the rejection can report them.
    """

    def __init__(
        self,
        message: str,
        *,
        vision: Any = None,
        forensic: Any = None,
    ) -> None:
        super().__init__(message)
        self.vision = vision
        self.forensic = forensic
