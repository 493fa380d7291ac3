"""
Session verification for signed-in users.

Signed-in requests carry a Clerk session token (RS256 JWT), either as
`Authorization: Bearer <token>` or in the `__session` cookie. The user id
is the token's `sub` claim; nothing the client sends is trusted without a
valid signature.
"""

from typing import Iterable, Optional
import logging

import jwt
from jwt import PyJWKClient

from visionboard.errors import AuthorizationError

logger = logging.getLogger(__name__)

SESSION_ALGORITHMS = ["RS256"]


class SessionVerifier:
    """
    Verifies session JWTs against the identity provider's JWKS.

    Example:
        ```python
        sessions = SessionVerifier(jwks_url="https://clerk.example.com/.well-known/jwks.json")
        user_id = sessions.verify(token)
        ```
    """

    def __init__(
        self,
        jwks_url: Optional[str] = None,
        issuer: Optional[str] = None,
        authorized_parties: Optional[Iterable[str]] = None,
        jwks_client: Optional[PyJWKClient] = None,
        leeway_s: float = 5,
    ):
        if jwks_client is None and jwks_url:
            jwks_client = PyJWKClient(jwks_url, cache_keys=True)
        self.jwks_client = jwks_client
        self.issuer = issuer
        self.authorized_parties = set(authorized_parties or ())
        self.leeway_s = leeway_s

    @property
    def configured(self) -> bool:
        return self.jwks_client is not None

    def verify(self, token: str) -> str:
        """
        Return the user id of a valid session token.

        Raises:
            AuthorizationError: Verification is not configured, or the token
                is malformed, expired, from another issuer or badly signed.
        """
        if not self.configured:
            raise AuthorizationError("Session verification is not configured")

        try:
            signing_key = self.jwks_client.get_signing_key_from_jwt(token)
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=SESSION_ALGORITHMS,
                issuer=self.issuer,
                leeway=self.leeway_s,
                options={"require": ["exp", "sub"], "verify_aud": False},
            )
        except jwt.PyJWTError as e:
            logger.info("Rejected session token: %s", e)
            raise AuthorizationError("Invalid session") from e

        azp = claims.get("azp")
        if self.authorized_parties and azp not in self.authorized_parties:
            raise AuthorizationError("Invalid session")
        return claims["sub"]


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an `Authorization: Bearer` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthorizationError("Invalid authorization header")
    return token.strip()
