"""
Logic validation stage.

Strictly sequential after evidence collection: the logic engine needs
the fields the vision engine extracted. When vision is unavailable the
stage is skipped; when the logic engine fails irrecoverably its signal
is excluded from aggregation, never defaulted.
"""

from __future__ import annotations

from typing import Optional

from guardian.app.coordinator.engine_pool import EnginePool
from guardian.app.engines.client import LogicEngine
from guardian.app.events import VerificationEventEmitter
from guardian.app.schemas.evidence import (
    LogicResult,
    SignalName,
    SignalOutcome,
    UnavailableReason,
    VisionResult,
)
from guardian.app.schemas.request import VerificationRequest


class LogicValidatorStage:
    def __init__(self, *, logic_engine: LogicEngine, pool: EnginePool) -> None:
        self._engine = logic_engine
        self._pool = pool

    async def run(
        self,
        request: VerificationRequest,
        vision: SignalOutcome,
        *,
        emitter: Optional[VerificationEventEmitter] = None,
    ) -> SignalOutcome:
        if not vision.available or not isinstance(vision.result, VisionResult):
            return SignalOutcome.unavailable(
                SignalName.LOGIC,
                UnavailableReason.SKIPPED,
                detail="vision evidence unavailable; no extracted fields",
            )

        extracted_fields = dict(vision.result.extracted_fields)

        return await self._pool.call(
            lambda: self._engine.validate(
                extracted_fields=extracted_fields,
                context_claims=dict(request.context_claims),
                document_type=request.payload.document_type,
            ),
            expected=LogicResult,
            request_id=request.request_id,
            emitter=emitter,
        )
