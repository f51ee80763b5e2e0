#!/usr/bin/env python3
"""
Production startup script.

1. Runs migrations + seed (release.py)
2. Starts the embedded HTTP/HTTPS server

Ports and client certificate authentication come from the site properties
(HTTP_PORT, HTTPS_PORT, CLIENT_CERTIFICATE_REQUEST, CLIENT_CERTIFICATE_REQUIRE).
A port of 0 disables that connector.

Usage:
    python scripts/start.py
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _port(category: str, key: str) -> int:
    from app.ilves.config import get_int_property

    port = get_int_property(category, key)
    if port < 0 or port > 65535:
        raise ValueError(f"Invalid {key} value '{port}'. Must be integer 0-65535.")
    return port


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    from app.ilves.config import DEFAULT_CATEGORY, get_bool_property

    try:
        http_port = _port(DEFAULT_CATEGORY, "http-port")
        https_port = _port(DEFAULT_CATEGORY, "https-port")
    except ValueError as e:
        print(f"ERROR: {e}", flush=True)
        sys.exit(1)

    print("=== Running release phase ===", flush=True)
    from scripts.release import run_release
    try:
        run_release()
    except Exception as e:
        print(f"Release failed: {e}", flush=True)
        sys.exit(1)

    print("=== Starting server ===", flush=True)
    from app.ilves import create_app
    from app.ilves.server import new_server

    app = create_app(DEFAULT_CATEGORY)
    server = new_server(
        http_port,
        https_port,
        get_bool_property(DEFAULT_CATEGORY, "client-certificate-request"),
        get_bool_property(DEFAULT_CATEGORY, "client-certificate-require"),
        app,
    )
    print("Health check endpoint ready at /healthz", flush=True)
    server.serve_forever()


if __name__ == "__main__":
    main()
