"""
Dashboard user accounts and JWT bearer tokens.

Provides:
- Password hashing and verification (passlib + bcrypt)
- JWT token creation and validation (python-jose, HS256)
- Registration and login against the SQLite store
"""
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from .logging_setup import logger

ALGORITHM = "HS256"


class AuthError(Exception):
    pass


class AuthValidationError(AuthError):
    """Raised for missing or malformed registration/login input."""


class UserExistsError(AuthError):
    pass


class InvalidCredentialsError(AuthError):
    pass


class AuthService:
    """Registration, login and token handling.

    Args:
        store: SQLiteStore (or compatible) with the users table
        jwt_secret: HMAC secret for tokens; a random one is generated if omitted
        expiration_hours: Token lifetime
        bcrypt_rounds: bcrypt cost factor
    """

    def __init__(
        self,
        store,
        jwt_secret: Optional[str] = None,
        expiration_hours: int = 24,
        bcrypt_rounds: int = 12,
    ):
        self.store = store
        if not jwt_secret:
            logger.warning("No JWT secret configured; tokens will not survive a restart")
            jwt_secret = secrets.token_urlsafe(32)
        self.jwt_secret = jwt_secret
        self.expiration = timedelta(hours=expiration_hours)
        self.pwd_context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=bcrypt_rounds,
        )

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        return self.pwd_context.verify(password, password_hash)

    @staticmethod
    def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": user["id"], "username": user["username"]}

    @staticmethod
    def _require(username: Optional[str], password: Optional[str]) -> str:
        """Return the stripped username; both fields must be non-blank."""
        username = (username or "").strip()
        if not username or not password:
            raise AuthValidationError("Username and password are required")
        return username

    def register(self, username: Optional[str], password: Optional[str]) -> Dict[str, Any]:
        username = self._require(username, password)
        if self.store.get_user_by_username(username):
            raise UserExistsError("Username already exists")
        try:
            user = self.store.create_user(username, self.hash_password(password))
        except sqlite3.IntegrityError:
            # registered concurrently between the lookup and the insert
            raise UserExistsError("Username already exists")
        logger.info(f"User registered | user_id={user['id']} username={username}")
        return self.public_user(user)

    def login(self, username: Optional[str], password: Optional[str]) -> Dict[str, Any]:
        """Check credentials; returns the public user on success."""
        user = self.store.get_user_by_username(self._require(username, password))
        if not user or not self.verify_password(password, user["password_hash"]):
            logger.warning(f"Login failed | username={username}")
            raise InvalidCredentialsError("Invalid credentials")
        return self.public_user(user)

    def create_token(self, user: Dict[str, Any], now: Optional[datetime] = None) -> str:
        issued = now or datetime.now(timezone.utc)
        claims = {
            "userId": user["id"],
            "username": user["username"],
            "iat": int(issued.timestamp()),
            "exp": int((issued + self.expiration).timestamp()),
        }
        return jwt.encode(claims, self.jwt_secret, algorithm=ALGORITHM)

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Return {"id", "username"} for a valid token, None otherwise."""
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[ALGORITHM])
        except JWTError:
            return None
        if "userId" not in payload:
            return None
        return {"id": payload["userId"], "username": payload.get("username")}
