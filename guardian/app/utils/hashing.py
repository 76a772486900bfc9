"""
Cryptographic primitives for capture attestation and proof binding.

Current scope:
- Deterministic digests of document payload bytes
- Keyed digests (HMAC-SHA256) binding values to a secret

IMPORTANT DESIGN RULE:
- This module hashes bytes, and bytes only.
- Callers own canonicalization of anything structured.
"""

import hashlib
import hmac
from typing import Union


def compute_payload_digest(payload: Union[bytes, bytearray]) -> str:
    """
    Compute the SHA-256 hex digest of raw payload bytes.

    The digest is what a capture device signs; it lets the attestation
    gate bind a signature to the exact bytes under verification.
    """
    if not isinstance(payload, (bytes, bytearray)):
        raise TypeError(
            "compute_payload_digest expects bytes, "
            f"got {type(payload).__name__}"
        )

    return hashlib.sha256(payload).hexdigest()


def keyed_hexdigest(key: bytes, message: bytes) -> str:
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def digests_match(expected: Union[str, bytes], presented: Union[str, bytes]) -> bool:
    """Constant-time comparison of two digests."""
    return hmac.compare_digest(expected, presented)
