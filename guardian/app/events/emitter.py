from __future__ import annotations

import logging
from typing import Protocol

from guardian.app.events.models import VerificationEvent

logger = logging.getLogger(__name__)


class VerificationEventEmitter(Protocol):
    """
    Interface for broadcasting verification observations.

    Implementations must be:
    - non-blocking (or minimally blocking)
    - fail-safe (emission failures must not crash the request)
    - observational only
    """

    async def emit(self, event: VerificationEvent) -> None:
        ...


class NullEventEmitter:
    """
    A safe no-op emitter.

    Used when:
    - streaming is disabled
    - background jobs (case expiry sweeps)
    - tests that do not care about events
    """

    async def emit(self, event: VerificationEvent) -> None:
        return


async def safe_emit(
    emitter: VerificationEventEmitter,
    event: VerificationEvent,
) -> None:
    """
    Emit an event, swallowing emitter failures.

    Events are observational; a broken observer must never alter the
    outcome of a verification request.
    """
    try:
        await emitter.emit(event)
    except Exception:
        logger.warning(
            "Event emitter failed for %s on request %s",
            event.event_type.value,
            event.request_id,
            exc_info=True,
        )
