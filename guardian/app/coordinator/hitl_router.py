"""
Human-in-the-loop router.

Owns AuditCases for borderline decisions. Guarantees:

- at most one case per request (open_case is idempotent)
- a case is resolved at most once; a second attempt raises ConflictError
  carrying the already-resolved case
- open cases may expire; expiry resolves them to REJECTED
- a resolved case is kept until the orchestrator settles and discards it

The router only records review outcomes. Downstream effects (proof
issuance, purge) belong to the orchestrator.

All mutation happens synchronously between awaits, so a single event
loop cannot interleave two resolutions of the same case.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from guardian.app.errors import ConflictError
from guardian.app.schemas.audit_case import (
    AuditCase,
    AuditCaseView,
    ReviewDecision,
    ReviewOutcome,
)
from guardian.app.schemas.decision import AggregatedDecision, VerificationStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

EXPIRY_REVIEWER_ID = "system:expiry"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HITLRouter:
    def __init__(
        self,
        *,
        case_expiry_seconds: Optional[float] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._expiry = (
            timedelta(seconds=case_expiry_seconds)
            if case_expiry_seconds
            else None
        )
        self._clock = clock or _utcnow

        self._cases: Dict[str, AuditCase] = {}
        self._case_by_request: Dict[str, str] = {}
        self._waiters: Dict[str, "asyncio.Future[AuditCase]"] = {}

    # ------------------------------------------------------------------
    # Case lifecycle
    # ------------------------------------------------------------------

    def open_case(self, decision: AggregatedDecision) -> AuditCase:
        """
        Open (or return the existing) case for the decision's request.
        """
        if decision.status is not VerificationStatus.PENDING_HITL:
            raise ValueError(
                f"Only PENDING_HITL decisions are routed to review, "
                f"got {decision.status.value}"
            )

        existing_id = self._case_by_request.get(decision.request_id)
        if existing_id is not None:
            return self._cases[existing_id]

        opened_at = self._clock()
        case = AuditCase(
            case_id=f"case-{secrets.token_hex(8)}",
            request_id=decision.request_id,
            decision=decision.redacted(),
            opened_at=opened_at,
            expires_at=(opened_at + self._expiry) if self._expiry else None,
        )

        self._cases[case.case_id] = case
        self._case_by_request[decision.request_id] = case.case_id

        logger.info(
            "Opened audit case %s for request %s (confidence=%.3f)",
            case.case_id,
            case.request_id,
            decision.confidence,
        )
        return case

    def resolve_case(
        self,
        case_id: str,
        decision: ReviewDecision,
        reviewer_id: str,
    ) -> AuditCase:
        """
        Record a reviewer's verdict.

        Raises:
            KeyError: unknown case id
            ConflictError: the case was already resolved (carries it)
        """
        if not reviewer_id:
            raise ValueError("reviewer_id is required to resolve a case")

        case = self._cases.get(case_id)
        if case is None:
            raise KeyError(case_id)

        if not case.is_open:
            raise ConflictError(
                f"Audit case {case_id} is already resolved",
                existing=case,
            )

        resolved = case.model_copy(
            update={
                "outcome": decision.outcome,
                "reviewer_id": reviewer_id,
                "resolved_at": self._clock(),
            }
        )
        self._cases[case_id] = resolved

        waiter = self._waiters.pop(case_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(resolved)

        logger.info(
            "Audit case %s resolved as %s by %s",
            case_id,
            resolved.outcome.value,
            reviewer_id,
        )
        return resolved

    def expire_overdue(self, now: Optional[datetime] = None) -> List[AuditCase]:
        """
        Resolve every open case past its expiry to REJECTED.
        """
        now = now or self._clock()
        expired: List[AuditCase] = []

        for case in list(self._cases.values()):
            if not case.is_open or case.expires_at is None:
                continue
            if case.expires_at > now:
                continue

            expired.append(
                self.resolve_case(
                    case.case_id,
                    ReviewDecision.REJECT,
                    EXPIRY_REVIEWER_ID,
                )
            )

        if expired:
            logger.info("Expired %d audit case(s)", len(expired))
        return expired

    async def wait_for_resolution(self, case_id: str) -> AuditCase:
        """
        Suspend until the case is resolved.
        """
        case = self._cases.get(case_id)
        if case is None:
            raise KeyError(case_id)
        if not case.is_open:
            return case

        waiter = self._waiters.get(case_id)
        if waiter is None:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters[case_id] = waiter
        # Shielded so one cancelled waiter does not cancel the others.
        return await asyncio.shield(waiter)

    # ------------------------------------------------------------------
    # Reviewer interface
    # ------------------------------------------------------------------

    def get_case(self, case_id: str) -> Optional[AuditCase]:
        return self._cases.get(case_id)

    def discard_case(self, case_id: str) -> None:
        """Forget a resolved case once its request is settled."""
        case = self._cases.get(case_id)
        if case is None:
            return
        if case.is_open:
            raise ValueError(f"Audit case {case_id} is still open")

        del self._cases[case_id]
        self._case_by_request.pop(case.request_id, None)
        self._waiters.pop(case_id, None)

    def __len__(self) -> int:
        return len(self._cases)

    def case_for_request(self, request_id: str) -> Optional[AuditCase]:
        case_id = self._case_by_request.get(request_id)
        return self._cases.get(case_id) if case_id else None

    def list_open_cases(self) -> List[AuditCaseView]:
        open_cases = [
            c for c in self._cases.values() if c.outcome is ReviewOutcome.PENDING
        ]
        open_cases.sort(key=lambda c: c.opened_at)
        return [AuditCaseView.from_case(c) for c in open_cases]
