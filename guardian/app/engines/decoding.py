"""
Schema-validated decoding of evidence engine responses.

Engines answer with JSON. This module is the only place where that JSON
becomes a typed result. Anything that does not match the contract (a
confidence outside [0, 1], a descriptor without a reason, a non-object
body) raises AggregationInputError. There is no fallback to an empty
object and no default score.

Error messages carry field locations and messages only, never the
offending input values, since those may contain personal data.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Type, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from guardian.app.errors import AggregationInputError
from guardian.app.schemas.evidence import (
    Descriptor,
    EngineResult,
    ForensicResult,
    LogicResult,
    Severity,
    VisionResult,
)
from guardian.app.utils.validation import describe_validation_error


# ---------------------------------------------------------------------------
# Wire models (tolerant of key spelling, strict on values)
# ---------------------------------------------------------------------------

# Strict: a JSON true or "0.9" is a malformed answer, not a score.
Confidence = Annotated[float, Field(strict=True, ge=0.0, le=1.0)]


class _WireDescriptor(BaseModel):
    field: str = Field(
        ...,
        validation_alias=AliasChoices("field", "location", "region"),
    )
    reason: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("reason", "description", "detail"),
    )
    severity: Severity = Severity.LOW

    model_config = ConfigDict(extra="ignore")

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    def to_descriptor(self) -> Descriptor:
        return Descriptor(
            field=self.field,
            reason=self.reason,
            severity=self.severity,
        )


class _WireExtractedField(BaseModel):
    name: str
    value: Any = None

    model_config = ConfigDict(extra="ignore")


class VisionWireResponse(BaseModel):
    confidence: Confidence
    anomalies: List[_WireDescriptor] = Field(default_factory=list)
    extracted_fields: Union[Dict[str, Any], List[_WireExtractedField]] = Field(
        default_factory=dict,
        validation_alias=AliasChoices(
            "extracted_fields",
            "extractedFields",
            "extractedData",
        ),
    )

    model_config = ConfigDict(extra="ignore")

    def to_result(self) -> VisionResult:
        if isinstance(self.extracted_fields, list):
            fields = {f.name: f.value for f in self.extracted_fields}
        else:
            fields = dict(self.extracted_fields)

        return VisionResult(
            confidence=self.confidence,
            anomalies=[d.to_descriptor() for d in self.anomalies],
            extracted_fields=fields,
        )


class ForensicWireResponse(BaseModel):
    confidence: Confidence
    editing_traces: List[_WireDescriptor] = Field(
        default_factory=list,
        validation_alias=AliasChoices(
            "editing_traces",
            "editingTraces",
            "traces",
        ),
    )

    model_config = ConfigDict(extra="ignore")

    def to_result(self) -> ForensicResult:
        return ForensicResult(
            confidence=self.confidence,
            editing_traces=[d.to_descriptor() for d in self.editing_traces],
        )


class LogicWireResponse(BaseModel):
    confidence: Confidence = Field(
        ...,
        validation_alias=AliasChoices("confidence", "logic_score", "logicScore"),
    )
    discrepancies: List[_WireDescriptor] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    def to_result(self) -> LogicResult:
        return LogicResult(
            confidence=self.confidence,
            discrepancies=[d.to_descriptor() for d in self.discrepancies],
        )


_WIRE_MODELS: Dict[type, Type[BaseModel]] = {
    VisionResult: VisionWireResponse,
    ForensicResult: ForensicWireResponse,
    LogicResult: LogicWireResponse,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def decode_engine_response(
    raw: Union[str, bytes, Dict[str, Any], None],
    result_type: Type[EngineResult],
    *,
    engine: str,
) -> EngineResult:
    """
    Decode a raw engine answer into a typed result.

    Raises:
        AggregationInputError: the answer is empty, not JSON, or violates
        the result contract.
    """
    wire_model = _WIRE_MODELS.get(result_type)
    if wire_model is None:
        raise TypeError(f"No wire contract for {result_type.__name__}")

    if raw is None or raw == "" or raw == b"":
        raise AggregationInputError(
            f"{engine} engine returned an empty response",
            engine=engine,
        )

    try:
        if isinstance(raw, (str, bytes)):
            wire = wire_model.model_validate_json(raw)
        else:
            wire = wire_model.model_validate(raw)
    except ValidationError as exc:
        raise AggregationInputError(
            f"{engine} engine response violates its contract: "
            f"{describe_validation_error(exc)}",
            engine=engine,
        ) from None

    return wire.to_result()
