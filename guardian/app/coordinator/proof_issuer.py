"""
Compliance proof issuance and verification.

A proof token is an HS256 JWT (PyJWT) signed with PROOF_SIGNING_KEY.
Its claims carry only:
- status           always VERIFIED
- request_binding  HMAC of the request id under the signing key
- jti              random nonce
- iat / exp        issue and expiry

No extracted field, image byte, or raw request id ever enters a token.
A consumer holding the token learns the outcome and its validity window.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt

from guardian.app.config import GuardianConfig
from guardian.app.errors import ConfigurationError
from guardian.app.schemas.decision import VerificationStatus
from guardian.app.schemas.proof import ComplianceProofToken, ProofVerification
from guardian.app.utils.hashing import digests_match, keyed_hexdigest

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

JWT_ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["status", "request_binding", "jti", "iat", "exp"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ComplianceProofIssuer:
    def __init__(
        self,
        *,
        signing_key: bytes,
        ttl_seconds: int,
        clock: Optional[Clock] = None,
    ) -> None:
        if not signing_key:
            raise ConfigurationError("Compliance proof signing key is not configured")

        self._key = signing_key
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or _utcnow

        # Unexpired proofs by request id; issue() is idempotent within a TTL.
        self._issued: Dict[str, ComplianceProofToken] = {}

    @classmethod
    def from_config(
        cls,
        config: GuardianConfig,
        *,
        clock: Optional[Clock] = None,
    ) -> "ComplianceProofIssuer":
        if config.PROOF_SIGNING_KEY is None:
            raise ConfigurationError(
                "GUARDIAN_PROOF_SIGNING_KEY must be set to issue compliance proofs"
            )
        return cls(
            signing_key=config.PROOF_SIGNING_KEY.get_secret_value().encode("utf-8"),
            ttl_seconds=config.PROOF_TTL_SECONDS,
            clock=clock,
        )

    def request_binding(self, request_id: str) -> str:
        return keyed_hexdigest(self._key, f"request:{request_id}".encode("utf-8"))

    @property
    def outstanding(self) -> int:
        """Number of issued proofs still held for idempotent re-issue."""
        return len(self._issued)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue(
        self,
        request_id: str,
        status: VerificationStatus,
    ) -> ComplianceProofToken:
        """
        Issue the proof for a VERIFIED request.

        Repeated calls for the same request return the same token while
        it is unexpired.
        """
        if status is not VerificationStatus.VERIFIED:
            raise ValueError(
                f"Compliance proofs are issued only for VERIFIED, got {status.value}"
            )

        now = self._clock()
        self._evict_expired(now)

        existing = self._issued.get(request_id)
        if existing is not None:
            return existing

        issued_at = now.replace(microsecond=0)
        expires_at = issued_at + self._ttl
        binding = self.request_binding(request_id)

        token = jwt.encode(
            {
                "status": status.value,
                "request_binding": binding,
                "jti": secrets.token_hex(16),
                "iat": issued_at,
                "exp": expires_at,
            },
            self._key,
            algorithm=JWT_ALGORITHM,
        )

        proof = ComplianceProofToken(
            token=token,
            request_binding=binding,
            status=status,
            issued_at=issued_at,
            expires_at=expires_at,
        )
        self._issued[request_id] = proof

        logger.info(
            "Issued compliance proof for request %s (expires %s)",
            request_id,
            expires_at.isoformat(),
        )
        return proof

    def _evict_expired(self, now: datetime) -> None:
        expired = [
            request_id
            for request_id, proof in self._issued.items()
            if proof.expires_at <= now
        ]
        for request_id in expired:
            del self._issued[request_id]
        if expired:
            logger.debug("Evicted %d expired compliance proof(s)", len(expired))

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _decode(self, token: str) -> Dict[str, Any]:
        # PyJWT checks exp against the wall clock; the leeway moves that
        # check onto the issuer's clock.
        skew = (_utcnow() - self._clock()).total_seconds()
        return jwt.decode(
            token,
            self._key,
            algorithms=[JWT_ALGORITHM],
            leeway=skew,
            options={"require": REQUIRED_CLAIMS, "verify_iat": False},
        )

    def verify(self, token: str) -> ProofVerification:
        """
        Check a presented token: signature, claims, then expiry.
        """
        try:
            claims = self._decode(token)
        except jwt.ExpiredSignatureError:
            return ProofVerification(valid=False, reason="token expired")
        except jwt.InvalidSignatureError:
            return ProofVerification(valid=False, reason="signature mismatch")
        except jwt.DecodeError:
            return ProofVerification(valid=False, reason="malformed token")
        except jwt.InvalidTokenError:
            return ProofVerification(valid=False, reason="malformed claims")

        try:
            status = VerificationStatus(claims["status"])
            binding = str(claims["request_binding"])
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        except (ValueError, TypeError):
            return ProofVerification(valid=False, reason="malformed claims")

        if status is not VerificationStatus.VERIFIED:
            return ProofVerification(
                valid=False,
                status=status,
                request_binding=binding,
                expires_at=expires_at,
                reason="token does not assert VERIFIED",
            )

        return ProofVerification(
            valid=True,
            status=status,
            request_binding=binding,
            expires_at=expires_at,
        )

    def binds(self, token: str, request_id: str) -> bool:
        """True if the token is valid and bound to request_id."""
        result = self.verify(token)
        return result.valid and digests_match(
            result.request_binding or "",
            self.request_binding(request_id),
        )
