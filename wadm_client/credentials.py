"""
WADM - Session Credential Store
===============================
Holds the single live bearer token for this client.

Lifecycle:
    - created by a successful login or first-time setup (set_token)
    - persisted to a JSON file so it survives restarts of the client
    - destroyed by logout (clear) or by any 401 seen by the gateway
      (invalidate)

At most one credential is live. A new login simply overwrites the old one;
there is no revocation round-trip. The store is the only writer: callers
read ``token`` at send time and never cache it.

Concurrent invalidations are safe: ``invalidate(token)`` only clears the
store if ``token`` is still the current one, so a late 401 for a stale
token cannot wipe a credential issued after it.
"""

import os
import json
import logging
import threading
from dataclasses import dataclass, asdict


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionCredential:
    """The bearer token and how it was obtained."""

    token: str | None = None
    issued_via_setup: bool = False


class CredentialStore:
    """
    Process-wide holder of the current session credential.

    Attributes:
        path:           JSON file the credential is persisted to (None = memory only).
        setup_required: Last value of /api/auth/status reported by the server.
    """

    def __init__(self, path: str | None = None):
        self.path = path
        self.setup_required = False
        self._lock = threading.Lock()
        self._credential = self._load()

    @property
    def credential(self) -> SessionCredential:
        with self._lock:
            return self._credential

    @property
    def token(self) -> str | None:
        return self.credential.token

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None

    def set_token(self, token: str, issued_via_setup: bool = False) -> None:
        """Replace the credential (last writer wins) and persist it."""
        if not token:
            raise ValueError("token must be a non-empty string")
        with self._lock:
            self._credential = SessionCredential(token, issued_via_setup)
            self._save(self._credential)
        if issued_via_setup:
            self.setup_required = False

    def clear(self) -> None:
        """Drop the credential. Calling it again is a no-op."""
        with self._lock:
            self._clear_locked()

    def invalidate(self, token: str | None) -> bool:
        """
        Clear the credential if ``token`` is still the current one.

        Returns:
            True if the store was cleared by this call.
        """
        with self._lock:
            if token is None or self._credential.token != token:
                return False
            self._clear_locked()
            logger.info("Session credential invalidated by the server")
            return True

    # -- Internal helpers ------------------------------------------------------

    def _clear_locked(self) -> None:
        if self._credential.token is None:
            return
        self._credential = SessionCredential()
        if self.path and os.path.exists(self.path):
            os.remove(self.path)

    def _load(self) -> SessionCredential:
        """Load the persisted credential, if any."""
        if not self.path or not os.path.exists(self.path):
            return SessionCredential()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return SessionCredential(
                token=data.get("token") or None,
                issued_via_setup=bool(data.get("issued_via_setup", False)),
            )
        except (json.JSONDecodeError, OSError, AttributeError) as e:
            logger.warning("Ignoring unreadable credential file %s: %s", self.path, e)
            return SessionCredential()

    def _save(self, credential: SessionCredential) -> None:
        """Write the credential, readable by the owner only."""
        if not self.path:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(asdict(credential), f)
