"""
JWT token service for authenticating API callers.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from hookrelay.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(self, subject: str, expires_minutes: int = 60, **claims) -> str:
        """
        Create a signed JWT.

        Args:
            subject: Caller identity (service or user id)
            expires_minutes: Token lifetime
            **claims: Extra claims to embed

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)

        payload = {
            **claims,
            "sub": subject,
            "exp": expires,
        }

        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Args:
            token: JWT token string

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
            return payload
        except JWTError:
            return None
