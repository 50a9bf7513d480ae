"""
WADM - Authentication Module
============================
Password-based authentication for the host console.

Security model:
- Single admin password (no user accounts needed)
- Password stored as bcrypt hash in data/auth.json
- JWT tokens issued on successful login or setup
- All API routes except /api/health and /api/auth/{status,setup,login}
  require a valid bearer token
- The terminal WebSocket cannot carry an Authorization header from a
  browser, so it presents the same token as a ``token`` query parameter
  (see gate.py)

First-time setup flow:
    1. GET /api/auth/status reports setup_required=true
    2. User sets a password via POST /api/auth/setup
    3. Password is hashed and saved to data/auth.json with a fresh JWT secret
    4. JWT token returned, user enters the console

Subsequent visits:
    1. User enters password via POST /api/auth/login
    2. Password verified against stored hash
    3. JWT token returned on success
"""

import os
import json
import logging
import secrets
import bcrypt
from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials


logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = 24
MIN_PASSWORD_LENGTH = 4

# Security scheme for FastAPI dependency injection
security = HTTPBearer(auto_error=False)


class AuthManager:
    """
    Manages password authentication and JWT token lifecycle.

    Attributes:
        auth_file: Path to the JSON file storing the password hash and JWT secret.
    """

    def __init__(self, data_dir: str):
        """
        Initialize the auth manager.

        Args:
            data_dir: Absolute path to the data/ directory where auth.json is stored.
        """
        self.auth_file = os.path.join(data_dir, "auth.json")

    def is_configured(self) -> bool:
        """
        Check if a password has been set (first-time setup completed).

        Returns:
            True if auth.json exists and contains a password hash.
        """
        if not os.path.exists(self.auth_file):
            return False
        try:
            data = self._load()
            return "password_hash" in data
        except (json.JSONDecodeError, OSError):
            logger.error("Auth store %s is unreadable", self.auth_file)
            return False

    def setup_password(self, password: str, force: bool = False) -> str:
        """
        Set the admin password.

        On first-time setup, generates a new bcrypt hash and a random JWT
        secret. When force=True an existing password may be overwritten
        (password change); the JWT secret is kept so live tokens survive.

        Args:
            password: The plaintext password to set.
            force:    If True, allow overwriting existing password.

        Returns:
            A JWT token for immediate use after setup.

        Raises:
            ValueError: If password is empty or too short.
            RuntimeError: If a password is already set and force is False.
        """
        if self.is_configured() and not force:
            raise RuntimeError("Password already configured")

        _check_password(password)

        password_hash = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())

        jwt_secret = None
        if force and os.path.exists(self.auth_file):
            try:
                jwt_secret = self._load().get("jwt_secret")
            except (json.JSONDecodeError, OSError):
                jwt_secret = None

        if not jwt_secret:
            jwt_secret = secrets.token_urlsafe(48)

        data = {
            "password_hash": password_hash.decode("utf-8"),
            "jwt_secret": jwt_secret,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self._save(data)
        logger.info("Admin password %s", "changed" if force else "configured")

        return self._create_token(jwt_secret)

    def verify_password(self, password: str) -> str | None:
        """
        Verify a password and return a JWT token if correct.

        Returns:
            A JWT token string if password is correct, None otherwise.
        """
        if not self.is_configured():
            return None

        data = self._load()
        stored_hash = data["password_hash"].encode("utf-8")

        if bcrypt.checkpw(password.encode("utf-8"), stored_hash):
            return self._create_token(data["jwt_secret"])

        logger.warning("Rejected login attempt with an invalid password")
        return None

    def verify_token(self, token: str | None) -> bool:
        """
        Verify a JWT token is valid and not expired.

        A missing or empty token is never valid, and before setup no token
        is valid at all.
        """
        if not token or not self.is_configured():
            return False

        data = self._load()
        try:
            jwt.decode(
                token,
                data["jwt_secret"],
                algorithms=[JWT_ALGORITHM],
            )
            return True
        except JWTError:
            return False

    def change_password(self, old_password: str, new_password: str) -> bool:
        """
        Change the admin password.

        Returns:
            True if password was changed, False if old_password is wrong.

        Raises:
            ValueError: If new_password is empty or too short.
        """
        _check_password(new_password)

        data = self._load()
        stored_hash = data["password_hash"].encode("utf-8")

        if not bcrypt.checkpw(old_password.encode("utf-8"), stored_hash):
            return False

        new_hash = bcrypt.hashpw(new_password.encode("utf-8"), bcrypt.gensalt())
        data["password_hash"] = new_hash.decode("utf-8")
        data["updated_at"] = datetime.now(timezone.utc).isoformat()
        self._save(data)

        return True

    def issue_token(self) -> str:
        """Issue a fresh token signed with the stored secret."""
        return self._create_token(self._load()["jwt_secret"])

    # -- Internal helpers ------------------------------------------------------

    def _create_token(self, secret: str) -> str:
        """Generate a JWT token with expiration."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": "admin",
            "exp": now + timedelta(hours=JWT_EXPIRATION_HOURS),
            "iat": now,
        }
        return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)

    def _load(self) -> dict:
        """Load auth.json from disk."""
        with open(self.auth_file, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save(self, data: dict) -> None:
        """Save data to auth.json, readable by the owner only."""
        os.makedirs(os.path.dirname(self.auth_file), exist_ok=True)
        with open(self.auth_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.chmod(self.auth_file, 0o600)


def _check_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")


def require_auth(auth_manager: AuthManager):
    """
    Create a FastAPI dependency that enforces authentication.

    Usage in routes:
        @router.get("/api/config", dependencies=[Depends(require_auth(auth_mgr))])
        async def get_config(): ...

    Every failure is a 401 so clients can treat it uniformly as
    "credential no longer valid".
    """
    async def _verify(
        credentials: HTTPAuthorizationCredentials | None = Depends(security),
    ):
        if credentials is None:
            raise HTTPException(status_code=401, detail="Authentication required")

        if not auth_manager.verify_token(credentials.credentials):
            raise HTTPException(status_code=401, detail="Invalid or expired token")

        return True

    return _verify
