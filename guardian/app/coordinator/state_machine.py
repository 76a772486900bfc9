"""
Per-request lifecycle state machine.

    REQUESTED -> ATTESTED -> LIVENESS_OK -> EVIDENCE_COLLECTED
              -> LOGIC_VALIDATED -> AGGREGATED -> {VERIFIED, PENDING_HITL, REJECTED}
    PENDING_HITL -> {VERIFIED, REJECTED}

Any non-terminal state may move directly to REJECTED (gate failure,
evidence collection failure, cancellation, timeout). VERIFIED and
REJECTED are terminal; nothing leaves them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional, Tuple

from guardian.app.errors import IllegalTransitionError
from guardian.app.events import (
    NullEventEmitter,
    VerificationEvent,
    VerificationEventEmitter,
    VerificationEventType,
    safe_emit,
)
from guardian.app.schemas.decision import RequestState

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[RequestState, FrozenSet[RequestState]] = {
    RequestState.REQUESTED: frozenset({RequestState.ATTESTED}),
    RequestState.ATTESTED: frozenset({RequestState.LIVENESS_OK}),
    RequestState.LIVENESS_OK: frozenset({RequestState.EVIDENCE_COLLECTED}),
    RequestState.EVIDENCE_COLLECTED: frozenset({RequestState.LOGIC_VALIDATED}),
    RequestState.LOGIC_VALIDATED: frozenset({RequestState.AGGREGATED}),
    RequestState.AGGREGATED: frozenset(
        {
            RequestState.VERIFIED,
            RequestState.PENDING_HITL,
            RequestState.REJECTED,
        }
    ),
    RequestState.PENDING_HITL: frozenset(
        {RequestState.VERIFIED, RequestState.REJECTED}
    ),
    RequestState.VERIFIED: frozenset(),
    RequestState.REJECTED: frozenset(),
}


def can_transition(current: RequestState, target: RequestState) -> bool:
    if current.is_terminal:
        return False
    if target is RequestState.REJECTED:
        return True
    return target in ALLOWED_TRANSITIONS[current]


class RequestStateMachine:
    def __init__(
        self,
        request_id: str,
        *,
        emitter: Optional[VerificationEventEmitter] = None,
    ) -> None:
        self.request_id = request_id
        self._emitter = emitter or NullEventEmitter()
        self._state = RequestState.REQUESTED
        self._history: List[Tuple[RequestState, datetime]] = [
            (RequestState.REQUESTED, datetime.now(timezone.utc))
        ]

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    @property
    def history(self) -> List[RequestState]:
        return [state for state, _ in self._history]

    async def advance(self, target: RequestState) -> None:
        if not can_transition(self._state, target):
            raise IllegalTransitionError(
                f"Request {self.request_id}: illegal transition "
                f"{self._state.value} -> {target.value}"
            )

        previous = self._state
        self._state = target
        self._history.append((target, datetime.now(timezone.utc)))

        logger.debug(
            "Request %s: %s -> %s",
            self.request_id,
            previous.value,
            target.value,
        )

        await safe_emit(
            self._emitter,
            VerificationEvent(
                request_id=self.request_id,
                event_type=VerificationEventType.STATE_CHANGED,
                details={"from": previous.value, "to": target.value},
            ),
        )
