"""
Bounded, retrying call path toward one evidence engine.

Each engine type gets its own EnginePool so a slow collaborator cannot
starve the others. A pool enforces:

- a concurrency bound (asyncio.Semaphore, sized per engine type)
- a per-attempt deadline
- a retry budget for transient failures, with bounded exponential backoff
  (tenacity)

The pool never raises for engine failures. It converts every outcome into
a SignalOutcome: a result, or an explicit unavailable marker. Anything
else propagates unchanged, including ConfigurationError (fatal, never
retried) and cancellation of the calling task.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Type

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from guardian.app.config import GuardianConfig
from guardian.app.errors import AggregationInputError, UpstreamEngineError
from guardian.app.events import (
    NullEventEmitter,
    VerificationEvent,
    VerificationEventEmitter,
    VerificationEventType,
    safe_emit,
)
from guardian.app.schemas.evidence import (
    EngineResult,
    SignalName,
    SignalOutcome,
    UnavailableReason,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def is_transient(exc: BaseException) -> bool:
    """Attempt timeouts and transient upstream errors are retried."""
    if isinstance(exc, asyncio.TimeoutError):
        return True
    return isinstance(exc, UpstreamEngineError) and exc.transient


class EnginePool:
    def __init__(
        self,
        *,
        signal: SignalName,
        size: int,
        timeout_seconds: float,
        retry_budget: int,
        backoff_base_seconds: float,
        backoff_max_seconds: float,
        sleep: Optional[Sleep] = None,
    ) -> None:
        if size < 1:
            raise ValueError("EnginePool size must be at least 1")

        self.signal = signal
        self.size = size
        self._semaphore = asyncio.Semaphore(size)
        self._timeout = timeout_seconds
        self._retry_budget = retry_budget
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_config(
        cls,
        config: GuardianConfig,
        signal: SignalName,
        *,
        sleep: Optional[Sleep] = None,
    ) -> "EnginePool":
        sizes = {
            SignalName.VISION: config.VISION_POOL_SIZE,
            SignalName.FORENSIC: config.FORENSIC_POOL_SIZE,
            SignalName.LOGIC: config.LOGIC_POOL_SIZE,
        }
        return cls(
            signal=signal,
            size=sizes[signal],
            timeout_seconds=config.ENGINE_TIMEOUT_SECONDS,
            retry_budget=config.ENGINE_RETRY_BUDGET,
            backoff_base_seconds=config.BACKOFF_BASE_SECONDS,
            backoff_max_seconds=config.BACKOFF_MAX_SECONDS,
            sleep=sleep,
        )

    @property
    def max_attempts(self) -> int:
        return self._retry_budget + 1

    def _retrying(self, request_id: str) -> AsyncRetrying:
        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "%s engine attempt %d/%d failed for request %s: %s",
                self.signal.value,
                retry_state.attempt_number,
                self.max_attempts,
                request_id,
                self._describe(retry_state.outcome.exception()),
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self._backoff_base,
                max=self._backoff_max,
            ),
            retry=retry_if_exception(is_transient),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    def _describe(self, exc: BaseException) -> str:
        if isinstance(exc, asyncio.TimeoutError):
            return f"timed out after {self._timeout}s"
        return str(exc)

    async def call(
        self,
        fn: Callable[[], Awaitable[EngineResult]],
        *,
        expected: Type[EngineResult],
        request_id: str,
        emitter: Optional[VerificationEventEmitter] = None,
    ) -> SignalOutcome:
        """
        Invoke fn under the pool's bound, deadline and retry policy.
        """
        emitter = emitter or NullEventEmitter()
        attempts = 0

        try:
            async for attempt in self._retrying(request_id):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await safe_emit(
                        emitter,
                        VerificationEvent(
                            request_id=request_id,
                            event_type=VerificationEventType.ENGINE_CALL_STARTED,
                            details={
                                "engine": self.signal.value,
                                "attempt": attempts,
                            },
                        ),
                    )
                    async with self._semaphore:
                        result = await asyncio.wait_for(
                            fn(), timeout=self._timeout
                        )

        except (asyncio.TimeoutError, UpstreamEngineError) as exc:
            detail = self._describe(exc)
            if is_transient(exc):
                detail = f"retry budget exhausted: {detail}"
            return await self._unavailable(
                UnavailableReason.FAILED,
                detail=detail,
                attempts=attempts,
                request_id=request_id,
                emitter=emitter,
            )

        except AggregationInputError as exc:
            return await self._unavailable(
                UnavailableReason.MALFORMED,
                detail=str(exc),
                attempts=attempts,
                request_id=request_id,
                emitter=emitter,
            )

        if not isinstance(result, expected):
            return await self._unavailable(
                UnavailableReason.MALFORMED,
                detail=(
                    f"{self.signal.value} engine returned "
                    f"{type(result).__name__}, expected {expected.__name__}"
                ),
                attempts=attempts,
                request_id=request_id,
                emitter=emitter,
            )

        await safe_emit(
            emitter,
            VerificationEvent(
                request_id=request_id,
                event_type=VerificationEventType.ENGINE_CALL_COMPLETED,
                details={
                    "engine": self.signal.value,
                    "attempt": attempts,
                    "success": True,
                    "confidence": result.confidence,
                },
            ),
        )
        return SignalOutcome.of(self.signal, result, attempts=attempts)

    async def _unavailable(
        self,
        reason: UnavailableReason,
        *,
        detail: str,
        attempts: int,
        request_id: str,
        emitter: VerificationEventEmitter,
    ) -> SignalOutcome:
        logger.warning(
            "%s signal unavailable for request %s (%s): %s",
            self.signal.value,
            request_id,
            reason.value,
            detail,
        )

        await safe_emit(
            emitter,
            VerificationEvent(
                request_id=request_id,
                event_type=VerificationEventType.ENGINE_CALL_COMPLETED,
                details={
                    "engine": self.signal.value,
                    "attempt": attempts,
                    "success": False,
                    "reason": reason.value,
                },
            ),
        )

        return SignalOutcome.unavailable(
            self.signal,
            reason,
            detail=detail,
            attempts=attempts,
        )
