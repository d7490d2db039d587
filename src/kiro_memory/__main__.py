"""Entry point for running the kiro-memory worker as a module.

Usage:
    python -m kiro_memory --host 127.0.0.1 --port 3001
"""

import argparse
import sys


def main():
    from .config import load_config

    config = load_config()
    parser = argparse.ArgumentParser(description="kiro-memory worker")
    parser.add_argument("--host", default=config.server.host, help="Host to bind to")
    parser.add_argument("--port", type=int, default=config.server.port, help="Port to listen on")
    args = parser.parse_args()

    from .logging_config import setup_logging
    from .server import start_server

    setup_logging(config.logging)
    print(f"Starting kiro-memory worker at http://{args.host}:{args.port}")
    start_server(host=args.host, port=args.port)


if __name__ == "__main__":
    sys.exit(main() or 0)
