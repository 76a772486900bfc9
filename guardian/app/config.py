"""
Runtime configuration for the Guardian verification service.

This module centralizes environment-driven configuration: collaborator
endpoints, retry and timeout policy, aggregation weights and thresholds,
and the keys used for capture attestation and compliance proofs.

Configuration is parsed once, validated, and passed explicitly into the
orchestrator. Nothing in the pipeline performs ambient lookups.
"""

from __future__ import annotations

import os
from typing import Dict, FrozenSet, Optional

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from guardian.app.errors import ConfigurationError
from guardian.app.utils.validation import describe_validation_error


_WEIGHT_TOLERANCE = 1e-6


class GuardianConfig(BaseModel):
    """
    Immutable runtime configuration for the verification orchestrator.
    """

    # ------------------------------------------------------------------
    # Evidence engine call policy
    # ------------------------------------------------------------------

    ENGINE_TIMEOUT_SECONDS: float = Field(
        5.0,
        gt=0,
        description="Per-attempt deadline for a single evidence engine call",
    )

    ENGINE_RETRY_BUDGET: int = Field(
        2,
        ge=0,
        description="Retries allowed after the first attempt for transient failures",
    )

    BACKOFF_BASE_SECONDS: float = Field(
        0.2,
        ge=0,
        description="Base delay of the exponential backoff between attempts",
    )

    BACKOFF_MAX_SECONDS: float = Field(
        2.0,
        ge=0,
        description="Upper bound on any single backoff delay",
    )

    VISION_POOL_SIZE: int = Field(8, ge=1)
    FORENSIC_POOL_SIZE: int = Field(8, ge=1)
    LOGIC_POOL_SIZE: int = Field(8, ge=1)

    REQUEST_TIMEOUT_SECONDS: Optional[float] = Field(
        None,
        gt=0,
        description="Overall deadline for one request; None disables it",
    )

    # ------------------------------------------------------------------
    # Aggregation policy
    # ------------------------------------------------------------------

    WEIGHT_VISION: float = Field(0.4, ge=0, le=1)
    WEIGHT_FORENSIC: float = Field(0.3, ge=0, le=1)
    WEIGHT_LOGIC: float = Field(0.3, ge=0, le=1)

    PENALTY_PER_HIGH_SEVERITY: float = Field(
        0.05,
        ge=0,
        le=1,
        description="Confidence deducted per high-severity descriptor",
    )

    PENALTY_CAP: float = Field(
        0.5,
        ge=0,
        le=1,
        description="Maximum total anomaly penalty",
    )

    VERIFIED_THRESHOLD: float = Field(0.85, ge=0, le=1)
    REVIEW_THRESHOLD: float = Field(0.60, ge=0, le=1)

    HITL_MAX_DESCRIPTORS: int = Field(
        3,
        ge=0,
        description=(
            "A decision carrying more descriptors than this is never "
            "auto-verified; it is routed to human review instead"
        ),
    )

    # ------------------------------------------------------------------
    # Human review
    # ------------------------------------------------------------------

    CASE_EXPIRY_SECONDS: Optional[float] = Field(
        None,
        gt=0,
        description="Open audit cases older than this auto-resolve to REJECTED",
    )

    # ------------------------------------------------------------------
    # Capture attestation and liveness
    # ------------------------------------------------------------------

    DEVICE_KEYS: Dict[str, SecretStr] = Field(
        default_factory=dict,
        description="Hex-encoded HMAC keys of enrolled capture devices, by device id",
    )

    MAX_CAPTURE_AGE_SECONDS: float = Field(
        300.0,
        gt=0,
        description="Captures signed longer ago than this fail attestation",
    )

    LIVENESS_MIN_SCORE: float = Field(0.5, ge=0, le=1)

    # ------------------------------------------------------------------
    # Compliance proofs
    # ------------------------------------------------------------------

    PROOF_SIGNING_KEY: Optional[SecretStr] = Field(
        None,
        description="Secret used to sign compliance proof tokens",
    )

    PROOF_TTL_SECONDS: int = Field(900, gt=0)

    # ------------------------------------------------------------------
    # Ingress limits
    # ------------------------------------------------------------------

    MAX_PAYLOAD_SIZE_MB: int = Field(20, gt=0)

    ALLOWED_MIME_TYPES: FrozenSet[str] = Field(
        frozenset({"image/jpeg", "image/png", "application/pdf"}),
    )

    # ------------------------------------------------------------------
    # External collaborators
    # ------------------------------------------------------------------

    ENGINE_PROVIDER: str = Field(
        "disabled",
        description="Vision/logic engine provider identifier",
    )

    AZURE_OPENAI_ENDPOINT: str = ""
    AZURE_OPENAI_DEPLOYMENT: str = ""
    AZURE_OPENAI_API_VERSION: str = ""

    FORENSIC_ENGINE_URL: str = ""

    LOG_LEVEL: str = "INFO"

    # ------------------------------------------------------------------
    # Validators (Pydantic v2)
    # ------------------------------------------------------------------

    @field_validator("ENGINE_PROVIDER")
    @classmethod
    def validate_engine_provider(cls, v: str) -> str:
        allowed = {"disabled", "azure_openai"}
        if v not in allowed:
            raise ValueError(
                f"Unsupported ENGINE_PROVIDER '{v}'. "
                f"Allowed values: {sorted(allowed)}"
            )
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(
                f"Unsupported LOG_LEVEL '{v}'. Allowed values: {sorted(allowed)}"
            )
        return v.upper()

    @field_validator("DEVICE_KEYS")
    @classmethod
    def device_keys_are_hex(
        cls, v: Dict[str, SecretStr]
    ) -> Dict[str, SecretStr]:
        for device_id, key in v.items():
            try:
                raw = bytes.fromhex(key.get_secret_value())
            except ValueError as exc:
                raise ValueError(
                    f"Device key for '{device_id}' is not valid hex"
                ) from exc
            if len(raw) < 16:
                raise ValueError(
                    f"Device key for '{device_id}' is shorter than 16 bytes"
                )
        return v

    @model_validator(mode="after")
    def enforce_policy_consistency(self):
        """
        Enforce aggregation policy invariants:

        - signal weights sum to 1
        - 0 <= REVIEW_THRESHOLD < VERIFIED_THRESHOLD <= 1
        - the backoff cap is not below the backoff base
        - the azure_openai provider has an endpoint and a deployment
        """
        total = self.WEIGHT_VISION + self.WEIGHT_FORENSIC + self.WEIGHT_LOGIC
        if abs(total - 1.0) > _WEIGHT_TOLERANCE:
            raise ValueError(
                f"Signal weights must sum to 1.0, got {total:.6f}"
            )

        if not self.REVIEW_THRESHOLD < self.VERIFIED_THRESHOLD:
            raise ValueError(
                "REVIEW_THRESHOLD must be strictly below VERIFIED_THRESHOLD"
            )

        if self.BACKOFF_MAX_SECONDS < self.BACKOFF_BASE_SECONDS:
            raise ValueError(
                "BACKOFF_MAX_SECONDS must not be below BACKOFF_BASE_SECONDS"
            )

        if self.ENGINE_PROVIDER == "azure_openai" and not (
            self.AZURE_OPENAI_ENDPOINT and self.AZURE_OPENAI_DEPLOYMENT
        ):
            raise ValueError(
                "ENGINE_PROVIDER is azure_openai but AZURE_OPENAI_ENDPOINT "
                "or AZURE_OPENAI_DEPLOYMENT is not configured."
            )

        return self

    # ------------------------------------------------------------------
    # Derived accessors
    # ------------------------------------------------------------------

    def signal_weights(self) -> Dict[str, float]:
        return {
            "vision": self.WEIGHT_VISION,
            "forensic": self.WEIGHT_FORENSIC,
            "logic": self.WEIGHT_LOGIC,
        }

    def device_key(self, device_id: str) -> Optional[bytes]:
        secret = self.DEVICE_KEYS.get(device_id)
        if secret is None:
            return None
        return bytes.fromhex(secret.get_secret_value())

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(cls, **values) -> "GuardianConfig":
        """
        Construct a config, reporting invalid values as ConfigurationError.
        """
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(
                "Invalid Guardian configuration: "
                f"{describe_validation_error(exc)}"
            ) from None

    @classmethod
    def from_env(cls) -> "GuardianConfig":
        """
        Load configuration from environment variables.

        All values are parsed once at startup and must remain immutable.
        """

        def env_float(name: str, default: Optional[float]) -> Optional[float]:
            raw = os.getenv(name)
            if raw is None or raw == "":
                return default
            try:
                return float(raw)
            except ValueError as exc:
                raise ConfigurationError(
                    f"{name} must be a number, got '{raw}'"
                ) from exc

        def env_int(name: str, default: int) -> int:
            raw = os.getenv(name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError as exc:
                raise ConfigurationError(
                    f"{name} must be an integer, got '{raw}'"
                ) from exc

        def env_device_keys(name: str) -> Dict[str, str]:
            # "device-a:00ff...,device-b:11ee..."
            raw = os.getenv(name, "")
            keys: Dict[str, str] = {}
            for entry in filter(None, (e.strip() for e in raw.split(","))):
                device_id, sep, key = entry.partition(":")
                if not sep or not device_id or not key:
                    raise ConfigurationError(
                        f"{name} entries must look like '<device_id>:<hex key>'"
                    )
                keys[device_id.strip()] = key.strip()
            return keys

        proof_key = os.getenv("GUARDIAN_PROOF_SIGNING_KEY")

        return cls.build(
            ENGINE_TIMEOUT_SECONDS=env_float(
                "GUARDIAN_ENGINE_TIMEOUT_SECONDS", 5.0
            ),
            ENGINE_RETRY_BUDGET=env_int("GUARDIAN_ENGINE_RETRY_BUDGET", 2),
            BACKOFF_BASE_SECONDS=env_float(
                "GUARDIAN_BACKOFF_BASE_SECONDS", 0.2
            ),
            BACKOFF_MAX_SECONDS=env_float(
                "GUARDIAN_BACKOFF_MAX_SECONDS", 2.0
            ),
            VISION_POOL_SIZE=env_int("GUARDIAN_VISION_POOL_SIZE", 8),
            FORENSIC_POOL_SIZE=env_int("GUARDIAN_FORENSIC_POOL_SIZE", 8),
            LOGIC_POOL_SIZE=env_int("GUARDIAN_LOGIC_POOL_SIZE", 8),
            REQUEST_TIMEOUT_SECONDS=env_float(
                "GUARDIAN_REQUEST_TIMEOUT_SECONDS", None
            ),
            WEIGHT_VISION=env_float("GUARDIAN_WEIGHT_VISION", 0.4),
            WEIGHT_FORENSIC=env_float("GUARDIAN_WEIGHT_FORENSIC", 0.3),
            WEIGHT_LOGIC=env_float("GUARDIAN_WEIGHT_LOGIC", 0.3),
            PENALTY_PER_HIGH_SEVERITY=env_float(
                "GUARDIAN_PENALTY_PER_HIGH_SEVERITY", 0.05
            ),
            PENALTY_CAP=env_float("GUARDIAN_PENALTY_CAP", 0.5),
            VERIFIED_THRESHOLD=env_float("GUARDIAN_VERIFIED_THRESHOLD", 0.85),
            REVIEW_THRESHOLD=env_float("GUARDIAN_REVIEW_THRESHOLD", 0.60),
            HITL_MAX_DESCRIPTORS=env_int("GUARDIAN_HITL_MAX_DESCRIPTORS", 3),
            CASE_EXPIRY_SECONDS=env_float("GUARDIAN_CASE_EXPIRY_SECONDS", None),
            DEVICE_KEYS=env_device_keys("GUARDIAN_DEVICE_KEYS"),
            MAX_CAPTURE_AGE_SECONDS=env_float(
                "GUARDIAN_MAX_CAPTURE_AGE_SECONDS", 300.0
            ),
            LIVENESS_MIN_SCORE=env_float("GUARDIAN_LIVENESS_MIN_SCORE", 0.5),
            PROOF_SIGNING_KEY=proof_key if proof_key else None,
            PROOF_TTL_SECONDS=env_int("GUARDIAN_PROOF_TTL_SECONDS", 900),
            MAX_PAYLOAD_SIZE_MB=env_int("GUARDIAN_MAX_PAYLOAD_SIZE_MB", 20),
            ENGINE_PROVIDER=os.getenv("GUARDIAN_ENGINE_PROVIDER", "disabled"),
            AZURE_OPENAI_ENDPOINT=os.getenv("AZURE_OPENAI_ENDPOINT", ""),
            AZURE_OPENAI_DEPLOYMENT=os.getenv("AZURE_OPENAI_DEPLOYMENT", ""),
            AZURE_OPENAI_API_VERSION=os.getenv("AZURE_OPENAI_API_VERSION", ""),
            FORENSIC_ENGINE_URL=os.getenv("GUARDIAN_FORENSIC_ENGINE_URL", ""),
            LOG_LEVEL=os.getenv("GUARDIAN_LOG_LEVEL", "INFO"),
        )

    model_config = {
        "frozen": True,
    }
