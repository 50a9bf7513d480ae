"""
WADM - Terminal Client CLI
==========================
Command-line client for a WADM host console.

Usage:
    wadm-term status                 # setup state, login state, developer mode
    wadm-term setup                  # first-time password setup
    wadm-term login / logout
    wadm-term devmode on|off         # toggle Developer Mode
    wadm-term sessions               # live terminal sessions on the host
    wadm-term shell                  # interactive remote shell

Exit codes:
    0  success / session closed normally
    1  connection or request failure
    2  not logged in, or the server rejected the credential
    3  terminal refused: Developer Mode is disabled
"""

import os
import sys
import asyncio
import getpass
import argparse

import httpx

from wadm.protocol import Rejection, SessionState
from wadm_client.api import DashboardClient
from wadm_client.controller import SessionController
from wadm_client.credentials import CredentialStore
from wadm_client.errors import AuthorizationError, GatewayError
from wadm_client.gateway import OutboundGateway
from wadm_client.surface import LocalTerminalSurface


DEFAULT_SERVER = "http://127.0.0.1:8080"
DEFAULT_CREDENTIALS = os.path.join("~", ".config", "wadm", "credentials.json")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_UNAUTHORIZED = 2
EXIT_FORBIDDEN = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wadm-term",
        description="WADM - Host console client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--server", default=os.environ.get("WADM_SERVER", DEFAULT_SERVER),
        help=f"Console URL (default: $WADM_SERVER or {DEFAULT_SERVER})",
    )
    parser.add_argument(
        "--credentials", default=DEFAULT_CREDENTIALS,
        help="File the session token is kept in",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show setup, login and Developer Mode state")
    sub.add_parser("setup", help="Set the admin password (first run only)")
    sub.add_parser("login", help="Log in with the admin password")
    sub.add_parser("logout", help="Forget the stored session token")
    devmode = sub.add_parser("devmode", help="Show or toggle Developer Mode")
    devmode.add_argument("value", nargs="?", choices=["on", "off"])
    sub.add_parser("sessions", help="List live terminal sessions")
    sub.add_parser("shell", help="Open an interactive remote shell")
    return parser


# -- Commands ------------------------------------------------------------------

async def cmd_status(client: DashboardClient, args) -> int:
    setup_required = await client.auth_status()
    print(f"Server         : {client.gateway.base_url}")
    print(f"Setup required : {'yes' if setup_required else 'no'}")
    print(f"Logged in      : {'yes' if client.store.is_authenticated else 'no'}")
    if client.store.is_authenticated:
        config = await client.get_config()
        enabled = config.get("system", {}).get("developer_mode") is True
        print(f"Developer mode : {'enabled' if enabled else 'disabled'}")
    return EXIT_OK


async def cmd_setup(client: DashboardClient, args) -> int:
    if not await client.auth_status():
        print("Setup already completed; use 'login'.")
        return EXIT_FAILURE
    password = getpass.getpass("New admin password: ")
    if password != getpass.getpass("Repeat password: "):
        print("Passwords do not match.")
        return EXIT_FAILURE
    await client.setup(password)
    print("Password set. Logged in.")
    return EXIT_OK


async def cmd_login(client: DashboardClient, args) -> int:
    await client.login(getpass.getpass("Admin password: "))
    print("Logged in.")
    return EXIT_OK


async def cmd_logout(client: DashboardClient, args) -> int:
    client.logout()
    print("Logged out.")
    return EXIT_OK


async def cmd_devmode(client: DashboardClient, args) -> int:
    if args.value is None:
        config = await client.get_config()
    else:
        config = await client.set_developer_mode(args.value == "on")
    enabled = config.get("system", {}).get("developer_mode") is True
    print(f"Developer mode {'enabled' if enabled else 'disabled'}")
    return EXIT_OK


async def cmd_sessions(client: DashboardClient, args) -> int:
    data = await client.terminal_sessions()
    if not data["sessions"]:
        print("No live terminal sessions.")
        return EXIT_OK
    for s in data["sessions"]:
        print(f"{s['id']}  pid={s['pid']}  {s['cols']}x{s['rows']}  {s['state']}  since {s['opened_at']}")
    return EXIT_OK


async def cmd_shell(client: DashboardClient, args) -> int:
    if not client.store.is_authenticated:
        print("Not logged in; run 'wadm-term login' first.")
        return EXIT_UNAUTHORIZED

    controller = SessionController(client.gateway, LocalTerminalSurface())
    opened = await controller.open()
    if opened is SessionState.CONNECTED:
        try:
            await controller.wait_closed()
        finally:
            await controller.close()
    return _shell_exit_code(opened, controller)


def _shell_exit_code(opened: SessionState, controller: SessionController) -> int:
    if controller.state is SessionState.FORBIDDEN:
        if controller.channel.rejection is Rejection.UNAUTHORIZED:
            return EXIT_UNAUTHORIZED
        return EXIT_FORBIDDEN
    if opened is not SessionState.CONNECTED:
        return EXIT_FAILURE
    return EXIT_OK


COMMANDS = {
    "status": cmd_status,
    "setup": cmd_setup,
    "login": cmd_login,
    "logout": cmd_logout,
    "devmode": cmd_devmode,
    "sessions": cmd_sessions,
    "shell": cmd_shell,
}


async def run(args) -> int:
    store = CredentialStore(os.path.expanduser(args.credentials))
    async with OutboundGateway(args.server, store) as gateway:
        client = DashboardClient(gateway)
        try:
            return await COMMANDS[args.command](client, args)
        except AuthorizationError as e:
            print(f"Not authorized ({e}); run 'wadm-term login'.", file=sys.stderr)
            return EXIT_UNAUTHORIZED
        except httpx.HTTPStatusError as e:
            print(f"Request failed: HTTP {e.response.status_code} {_detail(e.response)}", file=sys.stderr)
            return EXIT_FAILURE
        except (GatewayError, httpx.TransportError) as e:
            print(f"Could not reach {args.server}: {e}", file=sys.stderr)
            return EXIT_FAILURE


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", ""))
    except (ValueError, AttributeError):
        return response.text


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
