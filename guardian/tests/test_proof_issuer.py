import jwt
import pytest

from guardian.app.coordinator.proof_issuer import ComplianceProofIssuer
from guardian.app.errors import ConfigurationError
from guardian.app.schemas.decision import VerificationStatus
from guardian.tests.fixtures.capture import PROOF_KEY, MutableClock, make_config


def _issuer(clock=None, **overrides) -> ComplianceProofIssuer:
    return ComplianceProofIssuer.from_config(
        make_config(**overrides), clock=clock or MutableClock()
    )


def _claims(token: str) -> dict:
    return jwt.decode(token, options={"verify_signature": False})


def test_issued_token_verifies():
    issuer = _issuer()
    proof = issuer.issue("GRD-P1", VerificationStatus.VERIFIED)

    result = issuer.verify(proof.token)

    assert result.valid
    assert result.status == VerificationStatus.VERIFIED
    assert result.request_binding == proof.request_binding
    assert result.expires_at == proof.expires_at
    assert issuer.binds(proof.token, "GRD-P1")
    assert not issuer.binds(proof.token, "GRD-OTHER")


def test_token_is_an_hs256_jwt():
    proof = _issuer().issue("GRD-P1", VerificationStatus.VERIFIED)

    assert jwt.get_unverified_header(proof.token)["alg"] == "HS256"


def test_token_claims_carry_no_request_data():
    proof = _issuer().issue("GRD-P2", VerificationStatus.VERIFIED)
    claims = _claims(proof.token)

    assert set(claims) == {"status", "request_binding", "jti", "iat", "exp"}
    assert claims["status"] == "VERIFIED"
    assert "GRD-P2" not in proof.token
    assert "GRD-P2" not in str(claims)


@pytest.mark.parametrize(
    "status", [VerificationStatus.REJECTED, VerificationStatus.PENDING_HITL]
)
def test_proofs_are_only_issued_for_verified(status):
    with pytest.raises(ValueError):
        _issuer().issue("GRD-P3", status)


def test_issue_is_idempotent_per_request():
    issuer = _issuer()

    first = issuer.issue("GRD-P4", VerificationStatus.VERIFIED)
    second = issuer.issue("GRD-P4", VerificationStatus.VERIFIED)

    assert first == second
    assert issuer.outstanding == 1


def test_expired_token_is_rejected():
    clock = MutableClock()
    issuer = _issuer(clock=clock, PROOF_TTL_SECONDS=60)
    proof = issuer.issue("GRD-P5", VerificationStatus.VERIFIED)

    clock.advance(59)
    assert issuer.verify(proof.token).valid

    clock.advance(2)
    result = issuer.verify(proof.token)

    assert not result.valid
    assert result.reason == "token expired"


def test_expired_proofs_are_evicted_on_next_issue():
    clock = MutableClock()
    issuer = _issuer(clock=clock, PROOF_TTL_SECONDS=60)
    issuer.issue("GRD-P5", VerificationStatus.VERIFIED)
    issuer.issue("GRD-P6", VerificationStatus.VERIFIED)
    assert issuer.outstanding == 2

    clock.advance(61)
    issuer.issue("GRD-P7", VerificationStatus.VERIFIED)

    assert issuer.outstanding == 1


def test_tampered_claims_fail_signature_check():
    issuer = _issuer()
    proof = issuer.issue("GRD-P6", VerificationStatus.VERIFIED)
    header, _, signature = proof.token.split(".")
    claims = _claims(proof.token)
    claims["exp"] += 3600
    forged_body = jwt.encode(claims, "attacker-chosen-key-of-32-bytes-xx").split(".")[1]

    result = issuer.verify(f"{header}.{forged_body}.{signature}")

    assert not result.valid
    assert result.reason == "signature mismatch"


def test_token_signed_with_other_key_is_rejected():
    proof = _issuer(PROOF_SIGNING_KEY="another-signing-key-of-32-plus-bytes").issue(
        "GRD-P7", VerificationStatus.VERIFIED
    )

    result = _issuer().verify(proof.token)

    assert not result.valid
    assert result.reason == "signature mismatch"


def test_token_missing_required_claims_is_rejected():
    token = jwt.encode({"status": "VERIFIED"}, PROOF_KEY, algorithm="HS256")

    result = _issuer().verify(token)

    assert not result.valid
    assert result.reason == "malformed claims"


@pytest.mark.parametrize("token", ["", "no-dot", "a.b.c", "bad token.###"])
def test_malformed_tokens_are_rejected(token):
    result = _issuer().verify(token)

    assert not result.valid


def test_missing_signing_key_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        _issuer(PROOF_SIGNING_KEY=None)
