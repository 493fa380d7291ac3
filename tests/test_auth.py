"""Tests for session token verification."""

import pytest

from visionboard.auth import SessionVerifier, bearer_token
from visionboard.errors import AuthorizationError


class TestSessionVerifier:
    """RS256 session tokens checked against the JWKS key."""

    def test_valid_token_returns_subject(self, sessions, session_token):
        """The user id is the token subject."""
        assert sessions.verify(session_token("user_42")) == "user_42"

    def test_expired_token(self, sessions, session_token):
        """Expired tokens are rejected."""
        with pytest.raises(AuthorizationError, match="Invalid session"):
            sessions.verify(session_token("user_42", expires_in=-600))

    def test_token_signed_by_unknown_key(self, sessions, session_token, foreign_key):
        """A signature from another key does not verify."""
        with pytest.raises(AuthorizationError):
            sessions.verify(session_token("user_42", key=foreign_key))

    def test_garbage_token(self, sessions):
        """Malformed tokens are rejected."""
        with pytest.raises(AuthorizationError):
            sessions.verify("not-a-jwt")

    def test_authorized_parties(self, jwks_client, session_token):
        """Tokens minted for other origins are rejected when parties are configured."""
        sessions = SessionVerifier(
            jwks_client=jwks_client,
            issuer="https://clerk.visionboard.test",
            authorized_parties=["https://app.example"],
        )

        assert sessions.verify(session_token("user_42", azp="https://app.example")) == "user_42"
        with pytest.raises(AuthorizationError):
            sessions.verify(session_token("user_42", azp="https://evil.example"))

    def test_unconfigured_verifier_rejects_tokens(self, session_token):
        """Without a JWKS source no token is trusted."""
        sessions = SessionVerifier()

        assert sessions.configured is False
        with pytest.raises(AuthorizationError, match="not configured"):
            sessions.verify(session_token("user_42"))


class TestBearerToken:
    """Authorization header parsing."""

    def test_missing_header(self):
        """No header means no token."""
        assert bearer_token(None) is None

    def test_bearer(self):
        """The scheme is case-insensitive."""
        assert bearer_token("bearer abc.def.ghi") == "abc.def.ghi"

    def test_other_scheme(self):
        """Non-bearer schemes are rejected."""
        with pytest.raises(AuthorizationError):
            bearer_token("Basic dXNlcjpwdw==")
