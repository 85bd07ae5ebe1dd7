"""Entry point for the Split Balancer HTTP service.

Serves the FastAPI application with uvicorn using the ``api`` settings.
"""
import socket
import sys
from typing import Optional

import uvicorn

from balancer import coordinator_settings as cs
from balancer.api import create_app
from balancer.log import error, info


def is_port_in_use(host: str, port: int) -> bool:
    """Check if a port is already in use."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
            return False
        except OSError:
            return True


def start_api_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    config = cs.SETTINGS.get("api", {})
    host = host or config.get("host", "127.0.0.1")
    port = int(port or config.get("port", 8000))
    debug = bool(config.get("debug", False))

    if is_port_in_use(host, port):
        error(f"Port {port} is already in use on {host}. Server will not start.")
        sys.exit(1)

    info(f"Starting FastAPI server on {host}:{port}")
    uvicorn.run(create_app(), host=host, port=port, log_level=("debug" if debug else "error"))


def main():
    info("Starting Split Balancer API")
    start_api_server()


if __name__ == "__main__":
    main()
