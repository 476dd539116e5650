#!/usr/bin/env python3
"""Sign a request for the gateway, or inspect an existing signature token.

Usage:
    # Sign a JSON body (from a file, or stdin with "-") and print it with
    # the signature field added:
    AES_SECRET_KEY=... python scripts/sign_request.py --body request.json

    # Sign query parameters for a GET request and print the query string:
    python scripts/sign_request.py --secret ... --query limit=10

    # Print only the token, e.g. for the X-Signature header:
    python scripts/sign_request.py --body request.json --token-only

    # Decrypt a token and show its timestamp, nonce and payload:
    python scripts/sign_request.py --decode <token>

Environment Variables:
    AES_SECRET_KEY: Shared signing secret (overridden by --secret)
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from urllib.parse import urlencode

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _load_body(source: str) -> dict:
    raw = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    body = json.loads(raw)
    if not isinstance(body, dict):
        raise ValueError("request body must be a JSON object")
    return body


def _parse_query(pairs: list[str]) -> dict:
    query: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"query parameter must look like key=value: {pair!r}")
        query[key] = value
    return query


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Sign requests for the llmgate gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--secret",
        default=os.environ.get("AES_SECRET_KEY"),
        help="Signing secret (or set AES_SECRET_KEY env var)",
    )
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--body", help="Path to a JSON request body, or - for stdin")
    group.add_argument(
        "--query",
        nargs="*",
        metavar="KEY=VALUE",
        help="Query parameters of a GET/DELETE request",
    )
    group.add_argument("--decode", metavar="TOKEN", help="Decrypt and print a token")
    parser.add_argument("--nonce", help="Use this nonce instead of a random one")
    parser.add_argument(
        "--timestamp", type=int, help="Use this ms timestamp instead of the current time"
    )
    parser.add_argument(
        "--token-only", action="store_true", help="Print only the signature token"
    )

    args = parser.parse_args()

    if not args.secret:
        print("Error: --secret or AES_SECRET_KEY environment variable required")
        sys.exit(1)

    # Import here to avoid loading config before env vars are set
    from llmgate.service.credentials import CredentialStore
    from llmgate.service.signature import (
        SIGNATURE_FIELD,
        SignatureEngine,
        SignatureError,
        canonical_payload,
    )

    engine = SignatureEngine(CredentialStore(args.secret))

    try:
        if args.decode:
            envelope = engine.open(args.decode)
            print(json.dumps(
                {
                    "timestamp": envelope.timestamp,
                    "nonce": envelope.nonce,
                    "payload": envelope.payload,
                },
                indent=2,
                ensure_ascii=False,
            ))
            return

        data = _load_body(args.body) if args.body else _parse_query(args.query or [])
        token = engine.sign(
            canonical_payload(data), timestamp=args.timestamp, nonce=args.nonce
        )
    except SignatureError as e:
        print(f"Error: token rejected ({e.reason})")
        sys.exit(1)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.token_only:
        print(token)
    elif args.body:
        signed = {k: v for k, v in data.items() if k != SIGNATURE_FIELD}
        signed[SIGNATURE_FIELD] = token
        print(json.dumps(signed, ensure_ascii=False))
    else:
        print(urlencode({**data, SIGNATURE_FIELD: token}))


if __name__ == "__main__":
    main()
