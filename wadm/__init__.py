"""
WADM - Server Package
=====================
The host side of the WADM administration console.

This package provides:
- FastAPI web application exposing the REST API and the terminal endpoint
- Password authentication with JWT bearer tokens
- The "developer mode" flag that gates interactive shell access
- The terminal session protocol: one PTY-backed shell per WebSocket

Architecture:
    main.py     -> FastAPI app creation, middleware, WebSocket route
    auth.py     -> Password hashing, JWT tokens, route protection
    config.py   -> Read/write config.yaml (developer mode, terminal settings)
    routes.py   -> REST API endpoint handlers
    protocol.py -> Terminal wire format: RESIZE control frames, close codes
    gate.py     -> Authorization gate evaluated on every terminal handshake
    shell.py    -> Shell process attached to a pseudo-terminal
    terminal.py -> Terminal session manager (handshake, pumps, teardown)
    log.py      -> Logging setup and token redaction
"""

__version__ = "1.0.0"
