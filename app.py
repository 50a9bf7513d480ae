#!/usr/bin/env python3
"""
WADM - Entry Point
==================
One-command startup for the WADM host console.

Usage:
    python app.py              # Start with default settings
    python app.py --port 9000  # Start on custom port
    wadm-server --home /opt/wadm

This script:
    1. Loads environment variables from .env
    2. Creates config.yaml from config.yaml.example if missing
    3. Loads configuration (host, port, message size limit)
    4. Starts the uvicorn server with the application factory
"""

import os
import shutil
import argparse
import uvicorn
from dotenv import load_dotenv


def main():
    """Parse arguments, load config, and start the web server."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="WADM - Host administration console",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port number for the console (overrides config.yaml)",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host binding address (overrides config.yaml)",
    )
    parser.add_argument(
        "--home", type=str, default=None,
        help="Directory holding config.yaml and data/ (default: $WADM_HOME or this directory)",
    )
    parser.add_argument(
        "--log-level", type=str, default="info",
        choices=["critical", "error", "warning", "info", "debug"],
        help="Log level for the server",
    )
    args = parser.parse_args()

    # -- Resolve project directory ---------------------------------------------
    project_dir = os.path.abspath(
        args.home or os.environ.get("WADM_HOME") or os.path.dirname(os.path.abspath(__file__))
    )
    os.environ["WADM_HOME"] = project_dir

    # -- Load environment variables from .env ----------------------------------
    env_path = os.path.join(project_dir, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path)

    # -- Ensure configuration file exists --------------------------------------
    config_path = os.path.join(project_dir, "config.yaml")
    config_example = os.path.join(project_dir, "config.yaml.example")
    if not os.path.exists(config_path) and os.path.exists(config_example):
        shutil.copy2(config_example, config_path)
        print("[INIT] Created config.yaml from template")

    from wadm.config import ConfigManager
    from wadm.log import setup_logging

    setup_logging(args.log_level)
    config = ConfigManager(project_dir).load()
    if "_config_error" in config:
        print(f"[WARN] config.yaml could not be parsed, using defaults: {config['_config_error']}")

    host = args.host or config["web"]["host"]
    port = args.port or config["web"]["port"]
    developer_mode = config["system"].get("developer_mode") is True

    # -- Print startup banner --------------------------------------------------
    print()
    print("  WADM - host administration console")
    print()
    print(f"  Console        : http://{host}:{port}")
    print(f"  Home           : {project_dir}")
    print(f"  Developer mode : {'enabled' if developer_mode else 'disabled'}")
    print()

    # -- Start the web server --------------------------------------------------
    uvicorn.run(
        "wadm.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_level=args.log_level,
        ws_max_size=config["terminal"]["max_message_size"],
    )


if __name__ == "__main__":
    main()
