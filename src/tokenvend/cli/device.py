"""Command-line device for exercising a token vending machine."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from ..anonymous.packaging import PackagingError
from ..client import DeviceClient, TokenRequestError, generate_device_key


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Register a device and fetch credentials from a token vending machine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("generate-key", help="Print a fresh random device key")

    for name, help_text in (("register", "Register the device"), ("token", "Request credentials")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--base-url", required=True, help="Token vending machine base URL")
        sub.add_argument("--uid", required=True, help="Device identifier")
        sub.add_argument("--key", required=True, help="Device secret key")
        if name == "token":
            sub.add_argument("--json", action="store_true", help="Output raw JSON")

    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    if args.command == "generate-key":
        print(generate_device_key())
        return 0

    async with DeviceClient(args.base_url, args.uid, args.key) as client:
        try:
            if args.command == "register":
                outcome = await client.register()
                print(f"Registration: {outcome.value}")
                return 0
            credentials = await client.get_token()
        except TokenRequestError as exc:
            print(f"Request failed: {exc}", file=sys.stderr)
            return 1
        except PackagingError as exc:
            print(f"Could not open credentials: {exc}", file=sys.stderr)
            return 1

    if args.json:
        print(json.dumps(credentials.model_dump(mode="json"), indent=2))
    else:
        print(f"Access key id: {credentials.access_key_id}")
        print(f"Expires:       {credentials.expiration.isoformat()}")
    return 0


def main() -> None:
    sys.exit(asyncio.run(run(parse_args())))


if __name__ == "__main__":
    main()
