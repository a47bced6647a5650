"""Identity verification helpers for Hyumane."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt


@dataclass
class AuthError(Exception):
    """Raised when a verification token cannot be accepted."""

    message: str
    status_code: int = 401

    def __str__(self) -> str:  # pragma: no cover - dataclass convenience
        return self.message


@dataclass
class VerifiedUser:
    """The person the verification provider vouched for."""

    user_id: str
    verified_name: str = ''
    is_verified: bool = True
    verification_date: Optional[str] = None

    def to_session(self) -> Dict[str, Any]:
        return {
            'id': self.user_id,
            'verified_name': self.verified_name,
            'is_verified': self.is_verified,
            'verification_date': self.verification_date,
        }

    @classmethod
    def from_session(cls, data: Any) -> Optional['VerifiedUser']:
        """Rebuild the identity stored in the session, or ``None`` if unusable."""

        if not isinstance(data, dict):
            return None
        user_id = data.get('id')
        if not user_id or not data.get('is_verified'):
            return None
        return cls(
            user_id=str(user_id),
            verified_name=data.get('verified_name') or '',
            is_verified=True,
            verification_date=data.get('verification_date'),
        )


def decode_verification_token(token: str, secret: str) -> VerifiedUser:
    """Validate the signed proof returned by the verification provider.

    Parameters
    ----------
    token:
        HS256 JWT posted back to ``/verify``. ``sub`` carries the stable
        verified user id; ``name`` and ``verified_at`` are optional.
    secret:
        Shared signing secret from ``VERIFICATION_JWT_SECRET``.

    Raises
    ------
    AuthError
        If the secret is not configured, or the token is missing, invalid,
        expired, or explicitly marks the person as unverified.
    """

    if not secret:
        raise AuthError('Identity verification is not configured on this server.', 503)

    if not token:
        raise AuthError('Verification token missing.')

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=['HS256'],
            options={'require': ['exp', 'sub']},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthError('Verification token has expired.') from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError('Verification token is invalid.') from exc

    if payload.get('is_verified') is False:
        raise AuthError('This identity has not been verified.', 403)

    verified_at = payload.get('verified_at')
    if isinstance(verified_at, (int, float)):
        verified_at = datetime.fromtimestamp(verified_at, tz=timezone.utc).isoformat()
    elif not verified_at:
        verified_at = datetime.now(timezone.utc).isoformat()

    return VerifiedUser(
        user_id=str(payload['sub']),
        verified_name=str(payload.get('name') or ''),
        is_verified=True,
        verification_date=str(verified_at),
    )
