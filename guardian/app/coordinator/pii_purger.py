"""
Request-scoped context and PII purge.

The orchestrator keeps everything it learns about a request in a single
RequestContext. When the request reaches a terminal state the purger:

1. builds the RetentionRecord (outcome, redacted signals, descriptor
   summary)
2. runs registered erasers for data held outside the process
3. drops the payload, capture material and extracted field values
4. stores the retention record

Purge runs at most once per request. It never raises: a failure is
logged at ERROR and raised to the alert sink, and the caller's response
goes out regardless.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Sequence

from guardian.app.coordinator.aggregator import empty_signal
from guardian.app.coordinator.state_machine import RequestStateMachine
from guardian.app.errors import PurgeError
from guardian.app.schemas.decision import (
    AggregatedDecision,
    RejectionReason,
    VerificationStatus,
)
from guardian.app.schemas.evidence import (
    Descriptor,
    LivenessResult,
    SignalName,
    SignalOutcome,
    UnavailableReason,
    VisionResult,
)
from guardian.app.schemas.proof import ComplianceProofToken
from guardian.app.schemas.request import VerificationRequest
from guardian.app.schemas.retention import RetentionRecord
from guardian.app.utils.pii import redact_text, scan_for_pii

logger = logging.getLogger(__name__)

INTERRUPTED = frozenset(
    {RejectionReason.CANCELLED.value, RejectionReason.REQUEST_TIMEOUT.value}
)


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


@dataclass
class RequestContext:
    """
    Mutable per-request working set owned by the orchestrator.
    """

    request_id: str
    request: Optional[VerificationRequest]
    state: RequestStateMachine

    vision: Optional[SignalOutcome] = None
    forensic: Optional[SignalOutcome] = None
    logic: Optional[SignalOutcome] = None
    liveness: Optional[LivenessResult] = None
    decision: Optional[AggregatedDecision] = None

    status: Optional[VerificationStatus] = None
    reason: Optional[str] = None
    flags: List[str] = field(default_factory=list)

    case_id: Optional[str] = None
    proof: Optional[ComplianceProofToken] = None

    purged: bool = False
    retention: Optional[RetentionRecord] = None

    @property
    def confidence(self) -> float:
        return self.decision.confidence if self.decision else 0.0

    def signal_outcomes(self) -> List[SignalOutcome]:
        """
        Vision, forensic and logic outcomes, in that order. A signal the
        request never obtained is reported as cancelled when the request was
        interrupted, and as skipped otherwise.
        """
        interrupted = self.reason in INTERRUPTED
        reason = (
            UnavailableReason.CANCELLED if interrupted else UnavailableReason.SKIPPED
        )
        detail = f"not reached: {self.reason}" if self.reason else None

        outcomes = (
            (SignalName.VISION, self.vision),
            (SignalName.FORENSIC, self.forensic),
            (SignalName.LOGIC, self.logic),
        )
        return [
            outcome if outcome is not None else empty_signal(name, reason, detail)
            for name, outcome in outcomes
        ]

    @property
    def holds_pii(self) -> bool:
        if self.request is not None:
            return True
        candidates = [self.vision]
        if self.decision is not None:
            candidates.append(self.decision.vision)
        return any(_has_field_values(o) for o in candidates)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class PIIEraser(Protocol):
    """Deletes request-scoped data held by an external collaborator."""

    async def erase(self, request_id: str) -> None:
        ...


class AlertSink(Protocol):
    def alert(self, message: str, *, request_id: str) -> None:
        ...


class LoggingAlertSink:
    """Default alert sink: a dedicated logger that operators route to paging."""

    def __init__(self, logger_name: str = "guardian.alerts") -> None:
        self._logger = logging.getLogger(logger_name)

    def alert(self, message: str, *, request_id: str) -> None:
        self._logger.critical("%s (request %s)", message, request_id)


class RetentionStore:
    """
    In-memory store of post-purge retention records.
    """

    def __init__(self) -> None:
        self._records: Dict[str, RetentionRecord] = {}
        self._request_by_case: Dict[str, str] = {}

    def put(self, record: RetentionRecord) -> None:
        self._records[record.request_id] = record
        if record.case_id is not None:
            self._request_by_case[record.case_id] = record.request_id

    def get(self, request_id: str) -> Optional[RetentionRecord]:
        return self._records.get(request_id)

    def for_case(self, case_id: str) -> Optional[RetentionRecord]:
        request_id = self._request_by_case.get(case_id)
        return self._records.get(request_id) if request_id else None

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._records


# ---------------------------------------------------------------------------
# Purger
# ---------------------------------------------------------------------------


class PIIPurger:
    def __init__(
        self,
        *,
        retention_store: Optional[RetentionStore] = None,
        alert_sink: Optional[AlertSink] = None,
        erasers: Sequence[PIIEraser] = (),
    ) -> None:
        self.retention_store = retention_store or RetentionStore()
        self._alerts = alert_sink or LoggingAlertSink()
        self._erasers = list(erasers)

    async def purge(self, context: RequestContext) -> Optional[RetentionRecord]:
        """
        Purge request-scoped PII. Idempotent; never raises.
        """
        if context.purged:
            return context.retention

        context.purged = True

        try:
            record = build_retention_record(context)
        except Exception as exc:
            record = None
            self._report(context.request_id, PurgeError(f"retention record: {exc}"))

        for eraser in self._erasers:
            try:
                await eraser.erase(context.request_id)
            except Exception as exc:
                self._report(
                    context.request_id,
                    PurgeError(f"{type(eraser).__name__} failed: {exc}"),
                )

        _drop_local_pii(context)
        if context.holds_pii:
            self._report(
                context.request_id,
                PurgeError("extracted field values survived local purge"),
            )

        if record is not None:
            self.retention_store.put(record)
            context.retention = record

        logger.info("Purged request-scoped PII for request %s", context.request_id)
        return record

    def _report(self, request_id: str, error: PurgeError) -> None:
        message = redact_text(str(error))
        logger.error("PII purge incomplete for request %s: %s", request_id, message)
        try:
            self._alerts.alert(f"PII purge incomplete: {message}", request_id=request_id)
        except Exception:
            logger.exception("Alert sink failed for request %s", request_id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def build_retention_record(context: RequestContext) -> RetentionRecord:
    descriptors: List[Descriptor] = (
        context.decision.descriptors() if context.decision else []
    )
    labels = scan_for_pii([d.reason for d in descriptors])
    if labels:
        logger.info(
            "Redacting %s from retained descriptors of request %s",
            ", ".join(labels),
            context.request_id,
        )

    summary = [
        Descriptor(
            field=d.field,
            reason=redact_text(d.reason),
            severity=d.severity,
        )
        for d in descriptors
    ]

    return RetentionRecord(
        request_id=context.request_id,
        status=context.status or VerificationStatus.REJECTED,
        confidence=context.confidence,
        reason=context.reason,
        flags=list(context.flags),
        descriptor_summary=summary,
        signals=[outcome.redacted() for outcome in context.signal_outcomes()],
        liveness_warning=context.liveness.warning if context.liveness else None,
        case_id=context.case_id,
        proof=context.proof,
        decided_at=context.decision.decided_at if context.decision else None,
        purged_at=datetime.now(timezone.utc),
    )


def _drop_local_pii(context: RequestContext) -> None:
    context.request = None

    if context.vision is not None:
        context.vision = context.vision.redacted()
    if context.forensic is not None:
        context.forensic = context.forensic.redacted()
    if context.logic is not None:
        context.logic = context.logic.redacted()
    if context.decision is not None:
        context.decision = context.decision.redacted()


def _has_field_values(outcome: Optional[SignalOutcome]) -> bool:
    if outcome is None or not isinstance(outcome.result, VisionResult):
        return False
    return any(v is not None for v in outcome.result.extracted_fields.values())
