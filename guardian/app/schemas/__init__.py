from .evidence import (
    AttestationResult,
    Descriptor,
    ForensicResult,
    LivenessResult,
    LogicResult,
    Severity,
    SignalName,
    SignalOutcome,
    UnavailableReason,
    VisionResult,
)
from .request import (
    CaptureMetadata,
    DocumentPayload,
    VerificationRequest,
    VerificationSubmission,
)
from .decision import (
    AggregatedDecision,
    RejectionReason,
    RequestState,
    VerificationStatus,
)
from .audit_case import AuditCase, AuditCaseView, ReviewDecision, ReviewOutcome
from .proof import ComplianceProofToken, ProofVerification
from .retention import RetentionRecord
from .verification_response import VerificationResponse

__all__ = [
    "AttestationResult",
    "Descriptor",
    "ForensicResult",
    "LivenessResult",
    "LogicResult",
    "Severity",
    "SignalName",
    "SignalOutcome",
    "UnavailableReason",
    "VisionResult",
    "CaptureMetadata",
    "DocumentPayload",
    "VerificationRequest",
    "VerificationSubmission",
    "AggregatedDecision",
    "RejectionReason",
    "RequestState",
    "RetentionRecord",
    "VerificationStatus",
    "AuditCase",
    "AuditCaseView",
    "ReviewDecision",
    "ReviewOutcome",
    "ComplianceProofToken",
    "ProofVerification",
    "VerificationResponse",
]
