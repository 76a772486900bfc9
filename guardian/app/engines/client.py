"""
Evidence engine client contracts.

The orchestrator consumes three external analysis collaborators through
these protocols. Implementations:

- return a typed result whose confidence lies in [0, 1]
- raise UpstreamEngineError for timeouts and unavailability
  (transient=True) or for requests the engine refused (transient=False)
- raise AggregationInputError when the engine answered outside its
  contract (see guardian.app.engines.decoding)
- raise ConfigurationError when credentials or endpoints are missing

They never return a default score in place of a failure.
"""

from __future__ import annotations

from typing import Any, Dict, Protocol

from guardian.app.errors import ConfigurationError
from guardian.app.schemas.evidence import ForensicResult, LogicResult, VisionResult
from guardian.app.schemas.request import DocumentPayload


class VisionEngine(Protocol):
    """Vision-language analysis of the captured document."""

    async def analyze(self, payload: DocumentPayload) -> VisionResult:
        ...


class ForensicEngine(Protocol):
    """Forensic metadata and editing-trace analysis."""

    async def scan(self, payload: DocumentPayload) -> ForensicResult:
        ...


class LogicEngine(Protocol):
    """Narrative-consistency validation of extracted fields against claims."""

    async def validate(
        self,
        *,
        extracted_fields: Dict[str, Any],
        context_claims: Dict[str, Any],
        document_type: str,
    ) -> LogicResult:
        ...


class UnconfiguredEngine:
    """
    Stand-in wired when no provider is configured for an engine.

    Every call raises ConfigurationError, which the orchestrator surfaces
    immediately instead of degrading evidence.
    """

    def __init__(self, engine_name: str) -> None:
        self.engine_name = engine_name

    def _fail(self):
        raise ConfigurationError(
            f"No {self.engine_name} engine is configured "
            f"(set GUARDIAN_ENGINE_PROVIDER / GUARDIAN_FORENSIC_ENGINE_URL)"
        )

    async def analyze(self, payload: DocumentPayload) -> VisionResult:
        self._fail()

    async def scan(self, payload: DocumentPayload) -> ForensicResult:
        self._fail()

    async def validate(self, **kwargs: Any) -> LogicResult:
        self._fail()
