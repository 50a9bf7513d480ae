"""
WADM - Client Package
=====================
Client side of the WADM console: session credentials, the outbound call
gateway, and the interactive terminal.

This package contains:
    - credentials.py : Session credential store (one live bearer token)
    - gateway.py     : Outbound call gateway (REST + terminal handshake)
    - api.py         : Dashboard REST calls (auth, config, sessions)
    - channel.py     : Client side of the terminal session protocol
    - controller.py  : Session controller (open / resize / close lifecycle)
    - surface.py     : Local terminal rendering surface (raw tty + SIGWINCH)
    - cli.py         : ``wadm-term`` command line

Usage:
    store = CredentialStore(path)
    async with OutboundGateway("http://host:8080", store) as gateway:
        controller = SessionController(gateway, LocalTerminalSurface())
        await controller.open()
        await controller.wait_closed()
"""

from wadm_client.credentials import CredentialStore, SessionCredential
from wadm_client.errors import AccessForbidden, AuthorizationError, GatewayError
from wadm_client.gateway import OutboundGateway
from wadm_client.channel import TerminalChannel
from wadm_client.controller import SessionController
from wadm_client.surface import LocalTerminalSurface
from wadm_client.api import DashboardClient

__all__ = [
    "AccessForbidden",
    "AuthorizationError",
    "CredentialStore",
    "DashboardClient",
    "GatewayError",
    "LocalTerminalSurface",
    "OutboundGateway",
    "SessionController",
    "SessionCredential",
    "TerminalChannel",
]
