"""
Concurrent vision + forensic evidence collection.

Both engine calls are dispatched at the same instant against the same
payload and joined before any downstream stage starts. Each call carries
its own deadline and retry budget through its EnginePool.

Join semantics:
- both available      -> both outcomes
- one unavailable     -> the remaining outcome plus an explicit marker
- both unavailable    -> EvidenceCollectionFailed

If the calling task is cancelled, or a fatal error escapes one call,
the sibling call is cancelled as well and partial results are discarded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict

from guardian.app.coordinator.engine_pool import EnginePool
from guardian.app.engines.client import ForensicEngine, VisionEngine
from guardian.app.errors import EvidenceCollectionFailed
from guardian.app.events import VerificationEventEmitter
from guardian.app.schemas.evidence import ForensicResult, SignalOutcome, VisionResult
from guardian.app.schemas.request import VerificationRequest

logger = logging.getLogger(__name__)


class EvidenceCollection(BaseModel):
    vision: SignalOutcome
    forensic: SignalOutcome

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def any_available(self) -> bool:
        return self.vision.available or self.forensic.available


class EvidenceCollector:
    def __init__(
        self,
        *,
        vision_engine: VisionEngine,
        forensic_engine: ForensicEngine,
        vision_pool: EnginePool,
        forensic_pool: EnginePool,
    ) -> None:
        self._vision = vision_engine
        self._forensic = forensic_engine
        self._vision_pool = vision_pool
        self._forensic_pool = forensic_pool

    async def collect(
        self,
        request: VerificationRequest,
        *,
        emitter: Optional[VerificationEventEmitter] = None,
    ) -> EvidenceCollection:
        payload = request.payload

        tasks = [
            asyncio.create_task(
                self._vision_pool.call(
                    lambda: self._vision.analyze(payload),
                    expected=VisionResult,
                    request_id=request.request_id,
                    emitter=emitter,
                ),
                name=f"vision:{request.request_id}",
            ),
            asyncio.create_task(
                self._forensic_pool.call(
                    lambda: self._forensic.scan(payload),
                    expected=ForensicResult,
                    request_id=request.request_id,
                    emitter=emitter,
                ),
                name=f"forensic:{request.request_id}",
            ),
        ]

        try:
            vision, forensic = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        collection = EvidenceCollection(vision=vision, forensic=forensic)

        if not collection.any_available:
            logger.warning(
                "No evidence collected for request %s", request.request_id
            )
            raise EvidenceCollectionFailed(
                "Neither vision nor forensic evidence is available",
                vision=vision,
                forensic=forensic,
            )

        return collection
