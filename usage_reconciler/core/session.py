"""
Session identity extraction.

Splits a session token into the account user id and the JWT subject.
The subject is read WITHOUT signature verification and must only ever be
used as a cache key, never for an authorization decision.
"""

from dataclasses import dataclass

from jose import JWTError, jwt

TOKEN_SEPARATORS = ("%3A%3A", "::")


class SessionTokenError(ValueError):
    """Raised when a session token cannot be split or decoded."""


@dataclass(frozen=True)
class SessionIdentity:
    """Identity carried by a session token."""
    user_id: str
    subject_id: str

    @classmethod
    def from_token(cls, token: str) -> "SessionIdentity":
        """Parse a `<userId>%3A%3A<jwt>` session token.

        Args:
            token: Session token as stored by the host

        Returns:
            SessionIdentity with the user id and unverified JWT subject

        Raises:
            SessionTokenError: If the token is malformed or has no subject
        """
        if not token or not token.strip():
            raise SessionTokenError("session token is required and cannot be empty")

        for separator in TOKEN_SEPARATORS:
            if separator in token:
                user_id, _, encoded = token.strip().partition(separator)
                break
        else:
            raise SessionTokenError("session token is missing the user id separator")

        if not user_id or not encoded:
            raise SessionTokenError("session token has an empty user id or JWT part")

        try:
            claims = jwt.get_unverified_claims(encoded)
        except JWTError as e:
            raise SessionTokenError(f"session token JWT could not be decoded: {e}") from e

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise SessionTokenError("session token JWT has no subject claim")

        return cls(user_id=user_id, subject_id=subject)
