"""Password hashing, JWT issue/verify, and the signup/login/refresh flows."""
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
from uuid import uuid4

from jose import ExpiredSignatureError, JWTError, jwt

from errors import ConflictError, ForbiddenError, UnauthorizedError, UpstreamServiceError, ValidationFailed

logger = logging.getLogger(__name__)

_PBKDF2_ITERATIONS = 150_000
_PBKDF2_DIGEST = "sha256"

ACCESS = "access"
REFRESH = "refresh"


def _generate_salt() -> str:
    return secrets.token_bytes(16).hex()


def _pbkdf2_hash(password: str, salt_hex: str) -> str:
    try:
        salt_bytes = bytes.fromhex(salt_hex)
    except ValueError:
        raise ValueError("Invalid salt for password hashing") from None
    return hashlib.pbkdf2_hmac(
        _PBKDF2_DIGEST,
        password.encode("utf-8"),
        salt_bytes,
        _PBKDF2_ITERATIONS,
    ).hex()


def hash_password(password: str) -> tuple[str, str]:
    salt_hex = _generate_salt()
    return _pbkdf2_hash(password, salt_hex), salt_hex


def verify_password(password: str, stored_hash: str, stored_salt: Optional[str]) -> bool:
    if not stored_salt:
        return False
    try:
        derived = _pbkdf2_hash(password, stored_salt)
    except ValueError:
        return False
    return hmac.compare_digest(stored_hash or "", derived)


def extract_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() in {"bearer", "token"}:
            candidate = token.strip()
        else:
            candidate = token.strip() or prefix.strip()
    return candidate or None


def public_user(user: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user.get("username"),
        "isActive": bool(user.get("is_active", True)),
        "role": user.get("role") or "user",
        "avatarUrl": user.get("avatar_url"),
        "points": int(user.get("points") or 0),
        "streakCount": int(user.get("streak_count") or 0),
        "createdAt": user.get("created_at"),
    }


class TokenService:
    """Signs and verifies HS256 access/refresh tokens."""

    def __init__(self, secret: str, algorithm: str = "HS256", access_ttl: int = 15 * 60, refresh_ttl: int = 7 * 24 * 60 * 60):
        self.secret = secret
        self.algorithm = algorithm
        self.ttl = {ACCESS: int(access_ttl), REFRESH: int(refresh_ttl)}

    def issue(self, user: Mapping[str, Any], token_type: str) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "userId": user["id"],
            "email": user["email"],
            "role": user.get("role") or "user",
            "type": token_type,
            "jti": uuid4().hex,
            "iat": now,
            "exp": now + timedelta(seconds=self.ttl[token_type]),
        }
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def issue_pair(self, user: Mapping[str, Any]) -> Dict[str, str]:
        return {
            "accessToken": self.issue(user, ACCESS),
            "refreshToken": self.issue(user, REFRESH),
        }

    def verify(self, token: Optional[str], expected_type: str) -> Dict[str, Any]:
        """Decode ``token`` and insist its ``type`` claim equals ``expected_type``."""
        if not token:
            raise UnauthorizedError("Missing authentication token")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise UnauthorizedError("Token has expired") from None
        except JWTError:
            raise UnauthorizedError("Invalid token") from None
        if payload.get("type") != expected_type:
            raise UnauthorizedError("Invalid token type")
        if not payload.get("userId"):
            raise UnauthorizedError("Invalid token payload")
        return payload


class AuthService:
    def __init__(self, database, tokens: TokenService, *, gamification=None, mailer=None, admin_secret: Optional[str] = None):
        self.db = database
        self.tokens = tokens
        self.gamification = gamification
        self.mailer = mailer
        self.admin_secret = admin_secret

    def _session_payload(self, user: Mapping[str, Any]) -> Dict[str, Any]:
        return {**self.tokens.issue_pair(user), "user": public_user(user)}

    def signup(self, email: str, password: str, username: Optional[str] = None) -> Dict[str, Any]:
        email = (email or "").strip()
        fields = {}
        if not email or "@" not in email:
            fields["email"] = "A valid email address is required"
        if not password or len(password) < 6:
            fields["password"] = "Password must be at least 6 characters"
        if fields:
            raise ValidationFailed("Invalid signup request", fields)
        if self.db.get_user_by_email(email):
            raise ConflictError("Email already exists")

        pw_hash, pw_salt = hash_password(password)
        user = self.db.create_user(email, (username or "").strip() or None, pw_hash, pw_salt)
        logger.info("Created user %s", user["id"])

        if self.mailer is not None:
            try:
                self.mailer.send_welcome_email(user["email"], user.get("username") or user["email"])
            except UpstreamServiceError as exc:
                logger.warning("Welcome email to %s not sent: %s", user["email"], exc.message)
        return self._session_payload(user)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        user = self.db.get_user_by_email((email or "").strip())
        if not user or not verify_password(password or "", user["pw_hash"], user["pw_salt"]):
            raise UnauthorizedError("Invalid credentials")
        if not user.get("is_active", True):
            raise UnauthorizedError("Account is disabled")
        if self.gamification is not None:
            self.gamification.record_activity(user["id"])
            user = self.db.get_user(user["id"])
        return self._session_payload(user)

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        payload = self.tokens.verify(refresh_token, REFRESH)
        user = self.db.get_user(payload["userId"])
        if not user or not user.get("is_active", True):
            raise UnauthorizedError("User no longer exists")
        return self._session_payload(user)

    def resolve_user(self, access_token: Optional[str]) -> Dict[str, Any]:
        payload = self.tokens.verify(access_token, ACCESS)
        user = self.db.get_user(payload["userId"])
        if not user or not user.get("is_active", True):
            raise UnauthorizedError("User not found")
        return user

    def promote_admin(self, email: str, secret: str) -> Dict[str, Any]:
        if not self.admin_secret:
            raise ForbiddenError("Admin promotion is disabled")
        if not hmac.compare_digest(self.admin_secret, secret or ""):
            raise ForbiddenError("Invalid promotion secret")
        user = self.db.get_user_by_email((email or "").strip())
        if not user:
            raise ValidationFailed("Unknown user", {"email": "No account with this email"})
        self.db.set_user_role(user["id"], "admin")
        logger.info("Promoted user %s to admin", user["id"])
        return public_user(self.db.get_user(user["id"]))
