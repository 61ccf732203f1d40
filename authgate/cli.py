"""CLI entrypoints for operational tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
import secrets
from collections.abc import Sequence

from authgate.config import configure_structlog, get_settings
from authgate.core.errors import UpstreamProviderError
from authgate.core.oidc import get_metadata_loader


async def _run_check_provider() -> int:
    """Run provider discovery once and print the resolved endpoints."""
    settings = get_settings()
    configure_structlog(settings)
    try:
        metadata = await get_metadata_loader().get()
    except UpstreamProviderError as exc:
        print(json.dumps({"ok": False, "detail": exc.detail, "code": exc.code}))
        return 1

    print(
        json.dumps(
            {
                "ok": True,
                "issuer": metadata.issuer,
                "authorization_endpoint": metadata.authorization_endpoint,
                "token_endpoint": metadata.token_endpoint,
                "jwks_uri": metadata.jwks_uri,
            }
        )
    )
    return 0


def _run_generate_state_key(num_bytes: int) -> int:
    """Print fresh secret material for STATE__ENCRYPTION_KEY."""
    print(secrets.token_urlsafe(num_bytes))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    """Build command-line parser for supported operational commands."""
    parser = argparse.ArgumentParser(prog="python -m authgate.cli")
    subcommands = parser.add_subparsers(dest="command", required=True)

    subcommands.add_parser("check-provider")
    key_parser = subcommands.add_parser("generate-state-key")
    key_parser.add_argument(
        "--bytes",
        type=int,
        default=32,
        help="Random bytes of secret material to generate.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run CLI command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "check-provider":
        return asyncio.run(_run_check_provider())
    if args.command == "generate-state-key":
        return _run_generate_state_key(num_bytes=args.bytes)
    parser.error("Unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
