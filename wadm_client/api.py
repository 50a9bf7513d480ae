"""
WADM - Dashboard API
====================
REST calls of the console: authentication, configuration and the list
of live terminal sessions. Everything goes through the OutboundGateway,
so the bearer token is attached and 401s log the client out.
"""

from typing import Any

from wadm_client.gateway import OutboundGateway


class DashboardClient:
    """Thin, typed wrapper over the REST routes."""

    def __init__(self, gateway: OutboundGateway):
        self.gateway = gateway

    @property
    def store(self):
        return self.gateway.store

    async def health(self) -> bool:
        data = await self.gateway.get_json("/api/health")
        return data.get("status") == "ok"

    async def auth_status(self) -> bool:
        """Ask whether first-time setup is still required; remembers the answer."""
        data = await self.gateway.get_json("/api/auth/status")
        self.store.setup_required = bool(data["setup_required"])
        return self.store.setup_required

    async def setup(self, password: str) -> str:
        """First-time setup. The returned token becomes the live credential."""
        data = await self.gateway.send_json("POST", "/api/auth/setup", {"password": password})
        self.store.set_token(data["token"], issued_via_setup=True)
        return data["token"]

    async def login(self, password: str) -> str:
        """Log in; replaces any previous credential."""
        data = await self.gateway.send_json("POST", "/api/auth/login", {"password": password})
        self.store.set_token(data["token"])
        return data["token"]

    def logout(self) -> None:
        """Forget the credential locally. Tokens are not revoked server-side."""
        self.store.clear()

    async def change_password(self, current_password: str, new_password: str) -> str:
        data = await self.gateway.send_json(
            "POST",
            "/api/auth/password",
            {"current_password": current_password, "new_password": new_password},
        )
        self.store.set_token(data["token"])
        return data["token"]

    async def get_config(self) -> dict[str, Any]:
        return await self.gateway.get_json("/api/config")

    async def set_developer_mode(self, enabled: bool) -> dict[str, Any]:
        return await self.gateway.send_json("PUT", "/api/config", {"developer_mode": enabled})

    async def terminal_sessions(self) -> dict[str, Any]:
        return await self.gateway.get_json("/api/terminal/sessions")
