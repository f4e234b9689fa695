from __future__ import annotations

import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .errors import AuthenticationError

ADMIN_KIND = "admin"
STUDENT_KIND = "student"


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Not a bcrypt hash.
        return False


class TokenSigner:
    """Signed, expiring session tokens carrying a small payload."""

    def __init__(self, secret: str, max_age_seconds: int):
        self.serializer = URLSafeTimedSerializer(secret, salt="faculty-feedback")
        self.max_age_seconds = max_age_seconds

    def issue(self, kind: str, **claims) -> str:
        return self.serializer.dumps({"kind": kind, **claims})

    def read(self, token: str, kind: str) -> dict:
        try:
            payload = self.serializer.loads(token, max_age=self.max_age_seconds)
        except SignatureExpired as exc:
            raise AuthenticationError("Session expired", code="token_expired") from exc
        except BadSignature as exc:
            raise AuthenticationError("Invalid token", code="invalid_token") from exc
        if not isinstance(payload, dict) or payload.get("kind") != kind:
            raise AuthenticationError("Invalid token", code="invalid_token")
        return payload
