"""
WADM - Authorization Gate
=========================
Decides whether a terminal handshake may attach to a shell.

The gate is a pure function of two inputs read at the moment of the
connection attempt:

    developer mode (config.yaml)   token validity (auth.json)   result
    ---------------------------   --------------------------   ------------
    disabled                       any                          FORBIDDEN
    enabled                        invalid / missing            UNAUTHORIZED
    enabled                        valid                        admitted

Nothing is cached: a grant for one connection says nothing about the next.
"""

from wadm.auth import AuthManager
from wadm.config import ConfigManager
from wadm.protocol import Rejection


def evaluate(
    token: str | None,
    auth_manager: AuthManager,
    config_manager: ConfigManager,
) -> Rejection | None:
    """
    Evaluate the gate for one connection attempt.

    Returns:
        None when the session is admitted, otherwise the Rejection to
        report to the client.
    """
    if not config_manager.is_developer_mode():
        return Rejection.FORBIDDEN
    if not auth_manager.verify_token(token):
        return Rejection.UNAUTHORIZED
    return None
