"""
Verification Orchestrator.

This module defines the ONLY authority that turns collaborator signals
into a trust outcome for a verification request.

Responsibilities:
- Validate ingress and mint the request id
- Drive the request state machine through the pipeline:
    attestation gate -> liveness -> concurrent evidence collection
    -> logic validation -> confidence aggregation -> routing
- Issue a compliance proof for VERIFIED, open an audit case for
  PENDING_HITL, and purge request-scoped PII on every terminal outcome
- Apply human review verdicts and case expiry

Guarantees, on every path (success, rejection, engine failure, timeout,
cancellation, unexpected error):
- the request ends VERIFIED, REJECTED, or PENDING_HITL with an open case
- a proof exists iff the final status is VERIFIED
- PII is purged exactly once, after the status becomes terminal

The orchestrator does NOT score evidence itself and does NOT retry at
request level; engine retries live in the per-engine pools.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from guardian.app.config import GuardianConfig
from guardian.app.coordinator.aggregator import ConfidenceAggregator
from guardian.app.coordinator.attestation_gate import AttestationGate
from guardian.app.coordinator.engine_pool import EnginePool, Sleep
from guardian.app.coordinator.evidence_collector import EvidenceCollector
from guardian.app.coordinator.hitl_router import EXPIRY_REVIEWER_ID, HITLRouter
from guardian.app.coordinator.logic_stage import LogicValidatorStage
from guardian.app.coordinator.pii_purger import (
    AlertSink,
    PIIEraser,
    PIIPurger,
    RequestContext,
    RetentionStore,
)
from guardian.app.coordinator.proof_issuer import ComplianceProofIssuer
from guardian.app.coordinator.request_ids import (
    RandomRequestIdGenerator,
    RequestIdGenerator,
)
from guardian.app.coordinator.state_machine import RequestStateMachine
from guardian.app.engines.client import ForensicEngine, LogicEngine, VisionEngine
from guardian.app.errors import (
    ConflictError,
    EvidenceCollectionFailed,
    RequestValidationError,
)
from guardian.app.events import (
    NullEventEmitter,
    VerificationEvent,
    VerificationEventEmitter,
    VerificationEventType,
    safe_emit,
)
from guardian.app.schemas.audit_case import AuditCase, AuditCaseView, ReviewDecision
from guardian.app.schemas.decision import (
    RejectionReason,
    RequestState,
    VerificationStatus,
)
from guardian.app.schemas.evidence import SignalName
from guardian.app.schemas.proof import ProofVerification
from guardian.app.schemas.request import VerificationRequest, VerificationSubmission
from guardian.app.schemas.retention import RetentionRecord
from guardian.app.schemas.verification_response import VerificationResponse
from guardian.app.utils.pii import redact_text

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationOrchestrator:
    """
    Central authority for verification requests.

    Design principles:
    - Collaborators are injected; nothing is looked up globally
    - One asyncio task per request; shared state is touched only
      between awaits on a single event loop
    - Events are observational and never influence control flow
    """

    def __init__(
        self,
        *,
        config: GuardianConfig,
        gate: AttestationGate,
        collector: EvidenceCollector,
        logic_stage: LogicValidatorStage,
        aggregator: ConfidenceAggregator,
        router: HITLRouter,
        proof_issuer: ComplianceProofIssuer,
        purger: PIIPurger,
        id_generator: Optional[RequestIdGenerator] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config
        self._gate = gate
        self._collector = collector
        self._logic_stage = logic_stage
        self._aggregator = aggregator
        self.router = router
        self.proof_issuer = proof_issuer
        self.purger = purger
        self._ids = id_generator or RandomRequestIdGenerator()
        self._clock = clock or _utcnow

        # Contexts of requests awaiting human review, by request id.
        self._pending: Dict[str, RequestContext] = {}
        self._settled: Dict[str, asyncio.Event] = {}

    @classmethod
    def from_config(
        cls,
        config: GuardianConfig,
        *,
        vision_engine: VisionEngine,
        forensic_engine: ForensicEngine,
        logic_engine: LogicEngine,
        id_generator: Optional[RequestIdGenerator] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
        erasers: Sequence[PIIEraser] = (),
        alert_sink: Optional[AlertSink] = None,
        retention_store: Optional[RetentionStore] = None,
    ) -> "VerificationOrchestrator":
        """
        Wire the default component graph from configuration.

        Raises ConfigurationError when a required secret is missing.
        """
        return cls(
            config=config,
            gate=AttestationGate.from_config(config, clock=clock),
            collector=EvidenceCollector(
                vision_engine=vision_engine,
                forensic_engine=forensic_engine,
                vision_pool=EnginePool.from_config(
                    config, SignalName.VISION, sleep=sleep
                ),
                forensic_pool=EnginePool.from_config(
                    config, SignalName.FORENSIC, sleep=sleep
                ),
            ),
            logic_stage=LogicValidatorStage(
                logic_engine=logic_engine,
                pool=EnginePool.from_config(config, SignalName.LOGIC, sleep=sleep),
            ),
            aggregator=ConfidenceAggregator.from_config(config),
            router=HITLRouter(
                case_expiry_seconds=config.CASE_EXPIRY_SECONDS,
                clock=clock,
            ),
            proof_issuer=ComplianceProofIssuer.from_config(config, clock=clock),
            purger=PIIPurger(
                retention_store=retention_store,
                alert_sink=alert_sink,
                erasers=erasers,
            ),
            id_generator=id_generator,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Ingress
    # ------------------------------------------------------------------

    def validate_submission(self, submission: VerificationSubmission) -> None:
        """
        Reject malformed ingress. Nothing is acquired, so nothing is purged.
        """
        payload = submission.payload
        max_bytes = self.config.MAX_PAYLOAD_SIZE_MB * 1024 * 1024

        if not payload.content:
            raise RequestValidationError("Document payload is empty", field="document")

        if len(payload.content) > max_bytes:
            raise RequestValidationError(
                f"Document exceeds maximum allowed size of "
                f"{self.config.MAX_PAYLOAD_SIZE_MB} MB",
                field="document",
            )

        if payload.mime_type not in self.config.ALLOWED_MIME_TYPES:
            raise RequestValidationError(
                f"Unsupported document type {payload.mime_type!r}",
                field="document",
            )

        if not payload.document_type.strip():
            raise RequestValidationError(
                "document_type is required", field="document_type"
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def verify(
        self,
        submission: VerificationSubmission,
        *,
        emitter: Optional[VerificationEventEmitter] = None,
    ) -> VerificationResponse:
        """
        Run one verification request to a status.

        Returns VERIFIED (with proof), PENDING_HITL (with case id), or
        REJECTED (with reason). Cancellation of the calling task and
        unexpected errors are re-raised after the request is finalized.
        """
        self.validate_submission(submission)

        emitter = emitter or NullEventEmitter()
        request = VerificationRequest.from_submission(
            submission,
            request_id=self._ids.next_id(),
            received_at=self._clock(),
        )
        context = RequestContext(
            request_id=request.request_id,
            request=request,
            state=RequestStateMachine(request.request_id, emitter=emitter),
        )

        await safe_emit(
            emitter,
            VerificationEvent(
                request_id=context.request_id,
                event_type=VerificationEventType.VERIFICATION_STARTED,
                details={"document_type": request.payload.document_type},
            ),
        )
        logger.info("Verification started for request %s", context.request_id)

        try:
            timeout = self.config.REQUEST_TIMEOUT_SECONDS
            if timeout:
                await asyncio.wait_for(
                    self._run_pipeline(context, emitter), timeout=timeout
                )
            else:
                await self._run_pipeline(context, emitter)

        except asyncio.TimeoutError:
            logger.warning(
                "Request %s exceeded its %ss deadline", context.request_id, timeout
            )
            await self._reject(context, RejectionReason.REQUEST_TIMEOUT)

        except EvidenceCollectionFailed as exc:
            context.vision = exc.vision
            context.forensic = exc.forensic
            await self._reject(context, RejectionReason.EVIDENCE_COLLECTION_FAILURE)

        except asyncio.CancelledError:
            logger.warning("Request %s cancelled", context.request_id)
            await self._reject(context, RejectionReason.CANCELLED)
            await self._finalize(context, emitter)
            raise

        except Exception as exc:
            logger.error(
                "Verification failed for request %s: %s: %s",
                context.request_id,
                type(exc).__name__,
                redact_text(str(exc)),
            )
            await self._reject(context, RejectionReason.INTERNAL_ERROR)
            await self._finalize(context, emitter)
            await safe_emit(
                emitter,
                VerificationEvent(
                    request_id=context.request_id,
                    event_type=VerificationEventType.VERIFICATION_FAILED,
                    details={
                        "error": redact_text(str(exc)),
                        "exception_type": type(exc).__name__,
                    },
                ),
            )
            raise

        response = await self._finalize(context, emitter)

        await safe_emit(
            emitter,
            VerificationEvent(
                request_id=context.request_id,
                event_type=VerificationEventType.VERIFICATION_COMPLETED,
                details={
                    "status": response.status.value,
                    "confidence": response.confidence,
                    "response": response.model_dump(mode="json"),
                },
            ),
        )
        return response

    async def resolve_case(
        self,
        case_id: str,
        decision: ReviewDecision,
        reviewer_id: str,
        *,
        emitter: Optional[VerificationEventEmitter] = None,
    ) -> VerificationResponse:
        """
        Apply a reviewer's verdict to a pending request.

        A repeated resolution is answered with the request's recorded
        outcome and idempotent_replay=True. Unknown case ids raise KeyError.
        """
        if self.router.get_case(case_id) is None:
            record = self.purger.retention_store.for_case(case_id)
            if record is None:
                raise KeyError(case_id)
            logger.info("Audit case %s already settled; replaying outcome", case_id)
            return self._record_response(record, idempotent_replay=True)

        try:
            case = self.router.resolve_case(case_id, decision, reviewer_id)
        except ConflictError as exc:
            logger.info("Audit case %s already resolved; replaying outcome", case_id)
            return await self._settled_response(
                exc.existing.request_id, idempotent_replay=True
            )

        return await self._settle_case(case, emitter or NullEventEmitter())

    async def await_final(self, request_id: str) -> VerificationResponse:
        """
        Suspend until a pending request reaches a terminal status.
        """
        record = self.retention_record(request_id)
        if record is not None:
            return self._record_response(record)

        case = self.router.case_for_request(request_id)
        if case is None:
            raise KeyError(request_id)

        await self.router.wait_for_resolution(case.case_id)
        return await self._settled_response(request_id)

    async def expire_cases(
        self,
        now: Optional[datetime] = None,
    ) -> List[VerificationResponse]:
        responses = []
        for case in self.router.expire_overdue(now):
            responses.append(await self._settle_case(case, NullEventEmitter()))
        return responses

    async def run_expiry_sweeper(self, interval_seconds: float) -> None:
        """
        Background loop resolving overdue cases. Runs until cancelled.
        """
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.expire_cases()
            except Exception:
                logger.exception("Audit case expiry sweep failed")

    def list_open_cases(self) -> List[AuditCaseView]:
        return self.router.list_open_cases()

    def verify_proof(self, token: str) -> ProofVerification:
        return self.proof_issuer.verify(token)

    def retention_record(self, request_id: str) -> Optional[RetentionRecord]:
        return self.purger.retention_store.get(request_id)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run_pipeline(
        self,
        context: RequestContext,
        emitter: VerificationEventEmitter,
    ) -> None:
        request = context.request
        state = context.state

        # 1. Hard gate: attestation, then liveness
        attestation = await self._gate.attest(request)
        if not attestation.passed:
            await self._reject(context, RejectionReason.ATTESTATION_FAILURE)
            return
        await state.advance(RequestState.ATTESTED)

        liveness = await self._gate.check_liveness(request)
        context.liveness = liveness
        if not liveness.passed:
            await self._reject(context, RejectionReason.LIVENESS_FAILURE)
            return
        await state.advance(RequestState.LIVENESS_OK)

        # 2. Concurrent evidence (raises EvidenceCollectionFailed)
        collection = await self._collector.collect(request, emitter=emitter)
        context.vision = collection.vision
        context.forensic = collection.forensic
        await state.advance(RequestState.EVIDENCE_COLLECTED)

        # 3. Logic validation, strictly after vision
        context.logic = await self._logic_stage.run(
            request, collection.vision, emitter=emitter
        )
        await state.advance(RequestState.LOGIC_VALIDATED)

        # 4. Aggregation and routing
        decision = self._aggregator.aggregate(
            request_id=context.request_id,
            vision=context.vision,
            forensic=context.forensic,
            logic=context.logic,
            decided_at=self._clock(),
        )
        context.decision = decision
        context.flags = list(decision.flags)
        await state.advance(RequestState.AGGREGATED)

        if decision.status is VerificationStatus.REJECTED:
            await self._reject(context, RejectionReason.LOW_CONFIDENCE)
            return

        context.status = decision.status
        if decision.status is VerificationStatus.VERIFIED:
            context.proof = self.proof_issuer.issue(context.request_id, decision.status)
        await state.advance(RequestState.from_status(decision.status))

        logger.info(
            "Request %s aggregated: status=%s confidence=%.3f flags=%s",
            context.request_id,
            decision.status.value,
            decision.confidence,
            ",".join(decision.flags) or "-",
        )

    async def _reject(self, context: RequestContext, reason: RejectionReason) -> None:
        if context.state.is_terminal:
            return
        context.status = VerificationStatus.REJECTED
        context.reason = reason.value
        context.proof = None
        await context.state.advance(RequestState.REJECTED)
        logger.info("Request %s rejected: %s", context.request_id, reason.value)

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finalize(
        self,
        context: RequestContext,
        emitter: VerificationEventEmitter,
    ) -> VerificationResponse:
        """
        Apply the side effects owed to the request's status.

        - VERIFIED      -> announce proof, purge
        - PENDING_HITL  -> open case, keep context until resolution
        - REJECTED      -> purge
        """
        status = context.status

        if status is None:
            # Pipeline ended without a status; only reachable on a defect.
            await self._reject(context, RejectionReason.INTERNAL_ERROR)
            status = context.status

        if status is VerificationStatus.PENDING_HITL:
            case = self.router.open_case(context.decision)
            context.case_id = case.case_id
            self._pending[context.request_id] = context
            self._settled.setdefault(context.request_id, asyncio.Event())

            await safe_emit(
                emitter,
                VerificationEvent(
                    request_id=context.request_id,
                    event_type=VerificationEventType.CASE_OPENED,
                    details={"case_id": case.case_id},
                ),
            )
            return self._context_response(context)

        if context.proof is not None:
            await safe_emit(
                emitter,
                VerificationEvent(
                    request_id=context.request_id,
                    event_type=VerificationEventType.PROOF_ISSUED,
                    details={"expires_at": context.proof.expires_at.isoformat()},
                ),
            )
        await self._purge(context, emitter)

        return self._context_response(context)

    async def _purge(
        self,
        context: RequestContext,
        emitter: VerificationEventEmitter,
    ) -> None:
        already = context.purged
        await self.purger.purge(context)
        if already:
            return

        self._pending.pop(context.request_id, None)
        settled = self._settled.pop(context.request_id, None)
        if settled is not None:
            settled.set()

        if context.case_id is not None:
            case = self.router.get_case(context.case_id)
            if case is not None and not case.is_open:
                self.router.discard_case(case.case_id)

        await safe_emit(
            emitter,
            VerificationEvent(
                request_id=context.request_id,
                event_type=VerificationEventType.PII_PURGED,
                details={"status": context.status.value},
            ),
        )

    async def _settle_case(
        self,
        case: AuditCase,
        emitter: VerificationEventEmitter,
    ) -> VerificationResponse:
        final = case.final_status
        context = self._pending.get(case.request_id)

        if context is None or context.state.is_terminal:
            response = await self._settled_response(case.request_id)
            self.router.discard_case(case.case_id)
            return response

        if final is VerificationStatus.VERIFIED:
            try:
                context.proof = self.proof_issuer.issue(case.request_id, final)
            except Exception:
                await self._reject(context, RejectionReason.INTERNAL_ERROR)
                await self._finalize(context, emitter)
                raise
            context.status = final
            await context.state.advance(RequestState.VERIFIED)
        else:
            reason = (
                RejectionReason.CASE_EXPIRED
                if case.reviewer_id == EXPIRY_REVIEWER_ID
                else RejectionReason.REVIEWER_REJECTED
            )
            await self._reject(context, reason)

        await safe_emit(
            emitter,
            VerificationEvent(
                request_id=case.request_id,
                event_type=VerificationEventType.CASE_RESOLVED,
                details={
                    "case_id": case.case_id,
                    "outcome": case.outcome.value,
                    "reviewer_id": case.reviewer_id,
                },
            ),
        )
        return await self._finalize(context, emitter)

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def _context_response(self, context: RequestContext) -> VerificationResponse:
        return VerificationResponse(
            request_id=context.request_id,
            status=context.status,
            confidence=context.confidence,
            reason=context.reason,
            signals=[outcome.redacted() for outcome in context.signal_outcomes()],
            flags=list(context.flags),
            liveness_warning=(
                context.liveness.warning if context.liveness else None
            ),
            case_id=context.case_id,
            proof=context.proof,
            decided_at=(
                context.decision.decided_at if context.decision else self._clock()
            ),
        )

    async def _settled_response(
        self,
        request_id: str,
        *,
        idempotent_replay: bool = False,
    ) -> VerificationResponse:
        """
        Outcome of a request whose case is resolved, once settlement
        (which may still be in flight) has purged it.
        """
        settled = self._settled.get(request_id)
        if settled is not None:
            await settled.wait()

        record = self.retention_record(request_id)
        if record is None:
            raise KeyError(request_id)
        return self._record_response(record, idempotent_replay=idempotent_replay)

    def _record_response(
        self,
        record: RetentionRecord,
        *,
        idempotent_replay: bool = False,
    ) -> VerificationResponse:
        return VerificationResponse(
            request_id=record.request_id,
            status=record.status,
            confidence=record.confidence,
            reason=record.reason,
            signals=record.signals,
            flags=list(record.flags),
            liveness_warning=record.liveness_warning,
            case_id=record.case_id,
            proof=record.proof,
            decided_at=record.decided_at or record.purged_at,
            idempotent_replay=idempotent_replay,
        )
