import pytest

from rgcd.constants import R_INVALID_CREDENTIAL
from rgcd.credentials import CredentialIssuer
from rgcd.errors import ExpiredCredentialError, InvalidCredentialError, MalformedCredentialError


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_issue_then_verify_returns_identity() -> None:
    clock = FakeClock()
    issuer = CredentialIssuer("s3cret", ttl_s=60, clock=clock)

    cred = issuer.verify(issuer.issue("alice", True))

    assert cred.username == "alice"
    assert cred.is_admin is True
    assert cred.expires_at - cred.issued_at == 60


def test_token_expires_after_ttl() -> None:
    clock = FakeClock()
    issuer = CredentialIssuer("s3cret", ttl_s=60, clock=clock)
    token = issuer.issue("alice", False)

    clock.now += 59
    assert issuer.verify(token).username == "alice"

    clock.now += 1
    with pytest.raises(ExpiredCredentialError):
        issuer.verify(token)


def test_tampered_and_foreign_tokens_are_rejected() -> None:
    issuer = CredentialIssuer("s3cret")
    other = CredentialIssuer("another-secret")
    header, _, signature = issuer.issue("alice", False).split(".")
    _, forged_claims, _ = issuer.issue("mallory", True).split(".")

    with pytest.raises(MalformedCredentialError):
        issuer.verify(f"{header}.{forged_claims}.{signature}")
    with pytest.raises(MalformedCredentialError):
        issuer.verify(other.issue("alice", True))
    with pytest.raises(MalformedCredentialError):
        issuer.verify("garbage")
    with pytest.raises(MalformedCredentialError):
        issuer.verify(None)


def test_expired_and_malformed_look_the_same_to_clients() -> None:
    expired = ExpiredCredentialError("token expired")
    malformed = MalformedCredentialError("bad signature")

    for err in (expired, malformed):
        assert isinstance(err, InvalidCredentialError)
        assert err.reason == R_INVALID_CREDENTIAL
    assert expired.message == malformed.message


def test_empty_secret_is_refused() -> None:
    with pytest.raises(ValueError):
        CredentialIssuer("")
