"""Command-line entrypoint for serving the anonymous token vending machine."""

from __future__ import annotations

import argparse

import uvicorn

from .app import create_app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the anonymous token vending machine")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8080, help="Port to listen on")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    # Access lines would carry the /gettoken query string; record_request logs the path only.
    uvicorn.run(create_app(), host=args.host, port=args.port, log_config=None, access_log=False)


if __name__ == "__main__":
    main()
