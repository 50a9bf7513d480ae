"""
WADM - REST API Routes
======================
HTTP API endpoints used by the console and by wadm-term.

Route groups:
    /api/health            - Liveness probe
    /api/auth/*            - Authentication (status, setup, login, password change)
    /api/config            - Host configuration (developer mode, terminal settings)
    /api/terminal/sessions - Live terminal sessions

All routes except /api/health and /api/auth/{status,setup,login} require a
valid JWT bearer token; failures are always 401. The terminal WebSocket
itself is registered in main.py.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from wadm.auth import AuthManager, MIN_PASSWORD_LENGTH, require_auth
from wadm.config import ConfigManager
from wadm.terminal import TerminalManager


# =============================================================================
# Request/Response Models (Pydantic)
# =============================================================================

class SetupRequest(BaseModel):
    """First-time setup: set admin password."""
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, description="Admin password")

class LoginRequest(BaseModel):
    """Login with admin password."""
    password: str = Field(..., description="Admin password")

class PasswordChangeRequest(BaseModel):
    """Change the admin password."""
    current_password: str = Field(..., description="Current admin password")
    new_password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, description="New admin password")

class TokenResponse(BaseModel):
    """JWT token returned after successful auth."""
    token: str
    message: str = "success"

class StatusResponse(BaseModel):
    """Authentication/setup status check."""
    setup_required: bool = Field(description="Whether first-time setup is still pending")

class ConfigUpdateRequest(BaseModel):
    """
    Partial configuration update.
    ``developer_mode`` is a shorthand for ``system.developer_mode``.
    """
    developer_mode: bool | None = None
    web: dict | None = None
    terminal: dict | None = None


# =============================================================================
# Router Factory
# =============================================================================

def create_router(
    auth_manager: AuthManager,
    config_manager: ConfigManager,
    terminal_manager: TerminalManager,
) -> APIRouter:
    """
    Create and configure the API router with all endpoints.

    Args:
        auth_manager:     Handles password verification and JWT tokens.
        config_manager:   Reads/writes config.yaml.
        terminal_manager: Live terminal sessions.

    Returns:
        Configured APIRouter with all endpoints registered.
    """
    router = APIRouter(prefix="/api")

    auth = Depends(require_auth(auth_manager))

    @router.get("/health")
    async def health():
        return {"status": "ok"}

    # =========================================================================
    # AUTH ROUTES - No authentication required (except password change)
    # =========================================================================

    @router.get("/auth/status", response_model=StatusResponse)
    async def auth_status():
        """
        Report whether first-time setup is still required.
        Used by clients to decide between the setup and login flows.
        """
        return StatusResponse(setup_required=not auth_manager.is_configured())

    @router.post("/auth/setup", response_model=TokenResponse)
    async def setup(req: SetupRequest):
        """
        First-time setup: set admin password.
        Returns a JWT token for immediate access.
        """
        if auth_manager.is_configured():
            raise HTTPException(status_code=400, detail="Setup already complete")

        try:
            token = auth_manager.setup_password(req.password)
        except (ValueError, RuntimeError) as e:
            raise HTTPException(status_code=400, detail=str(e))

        return TokenResponse(token=token, message="Setup complete")

    @router.post("/auth/login", response_model=TokenResponse)
    async def login(req: LoginRequest):
        """Login with admin password. Returns a JWT token on success."""
        if not auth_manager.is_configured():
            raise HTTPException(status_code=400, detail="Setup required")

        token = auth_manager.verify_password(req.password)
        if not token:
            raise HTTPException(status_code=401, detail="Invalid credentials")
        return TokenResponse(token=token)

    @router.post("/auth/password", dependencies=[auth])
    async def change_password(req: PasswordChangeRequest):
        """
        Change the admin password. Requires the current password.
        Returns a fresh JWT token.
        """
        try:
            changed = auth_manager.change_password(req.current_password, req.new_password)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        if not changed:
            # 400 rather than 401: the bearer is fine, only the old password is wrong.
            raise HTTPException(status_code=400, detail="Current password is incorrect")

        return {"message": "Password changed successfully", "token": auth_manager.issue_token()}

    # =========================================================================
    # CONFIG ROUTES - Requires authentication
    # =========================================================================

    @router.get("/config", dependencies=[auth])
    async def get_config():
        """Get the current host configuration."""
        return config_manager.load()

    @router.put("/config", dependencies=[auth])
    async def update_config(req: ConfigUpdateRequest):
        """
        Update configuration settings. Accepts partial updates.
        Developer mode changes apply to the next terminal handshake;
        sessions that are already open are not affected.
        """
        updates: dict[str, Any] = {}
        if req.developer_mode is not None:
            updates["system"] = {"developer_mode": req.developer_mode}
        if req.web is not None:
            updates["web"] = req.web
        if req.terminal is not None:
            updates["terminal"] = req.terminal

        if not updates:
            raise HTTPException(status_code=400, detail="No updates provided")

        return config_manager.update(updates)

    # =========================================================================
    # TERMINAL ROUTES - Requires authentication
    # =========================================================================

    @router.get("/terminal/sessions", dependencies=[auth])
    async def terminal_sessions():
        """List live terminal sessions (id, state, size, shell pid)."""
        return terminal_manager.status

    return router
