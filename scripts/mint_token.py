from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone

from veoflow.client import VeoClient
from veoflow.core.config import get_settings
from veoflow.core.errors import AuthenticationFailedError, InvalidCredentialsError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Validate a service account key by minting a bearer token."
    )
    parser.add_argument("--credentials", required=True, help="Path to a service account JSON key")
    parser.add_argument(
        "--show-token", action="store_true", help="Print the access token to stdout"
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with VeoClient() as client:
        client.load_service_account_file(args.credentials)
        token = await client.get_access_token()
        cached = client.tokens.cached_token
        expires = (
            datetime.fromtimestamp(cached.expires_at, tz=timezone.utc).isoformat()
            if cached is not None
            else "unknown"
        )
        print(f"project={client.get_tenant_id()} expires_at={expires}", file=sys.stderr)
        if args.show_token:
            print(token)
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    logging.basicConfig(level=get_settings().log_level)
    try:
        return asyncio.run(_run(args))
    except InvalidCredentialsError as exc:
        print(f"CREDENTIALS_INVALID: {exc}", file=sys.stderr)
        return 2
    except AuthenticationFailedError as exc:
        print(f"AUTHENTICATION_FAILED: {exc}", file=sys.stderr)
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
