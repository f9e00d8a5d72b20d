#!/usr/bin/env python3
"""Mint a signed bearer token for a subject (development and testing).

Usage:
    # Using environment variables:
    TOKEN_SECRET=... python scripts/issue_token.py --subject admin-0000001

    # Longer-lived token with a custom issuer/audience:
    python scripts/issue_token.py --subject admin-0000001 --ttl-minutes 240 \
        --issuer adminguard --audience adminguard-clients

The token is only accepted when the gateway runs with IDENTITY_PROVIDER=signed
and the same TOKEN_SECRET, and when the subject exists in the store (see
SEED_ADMIN_SUBJECTS / SEED_USER_SUBJECTS).

Environment Variables:
    TOKEN_SECRET: HS256 signing secret, at least 32 characters
    TOKEN_ISSUER: Issuer claim (default: adminguard)
    TOKEN_AUDIENCE: Audience claim (default: adminguard-clients)
    TOKEN_TTL_MINUTES: Token lifetime (default: 60)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_SECRET_LENGTH = 32


def issue_token(subject: str, secret: str, *, issuer: str, audience: str, ttl_minutes: int) -> str:
    # Import here to avoid loading config before env vars are set
    from adminguard.service.auth import SignedTokenProvider

    provider = SignedTokenProvider(secret, issuer=issuer, audience=audience)
    return provider.issue_token(subject, ttl_minutes=ttl_minutes)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Issue a signed adminguard bearer token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--subject", required=True, help="Subject id the token vouches for")
    parser.add_argument(
        "--secret",
        default=os.environ.get("TOKEN_SECRET"),
        help="Signing secret (or set TOKEN_SECRET env var)",
    )
    parser.add_argument(
        "--issuer",
        default=os.environ.get("TOKEN_ISSUER", "adminguard"),
        help="Issuer claim (or set TOKEN_ISSUER env var)",
    )
    parser.add_argument(
        "--audience",
        default=os.environ.get("TOKEN_AUDIENCE", "adminguard-clients"),
        help="Audience claim (or set TOKEN_AUDIENCE env var)",
    )
    parser.add_argument(
        "--ttl-minutes",
        type=int,
        default=int(os.environ.get("TOKEN_TTL_MINUTES", "60")),
        help="Token lifetime in minutes",
    )

    args = parser.parse_args(argv)

    if not args.secret:
        print("Error: --secret or TOKEN_SECRET environment variable required", file=sys.stderr)
        return 1
    if len(args.secret) < MIN_SECRET_LENGTH:
        print(f"Error: secret must be at least {MIN_SECRET_LENGTH} characters", file=sys.stderr)
        return 1
    if args.ttl_minutes <= 0:
        print("Error: --ttl-minutes must be positive", file=sys.stderr)
        return 1

    token = issue_token(
        args.subject,
        args.secret,
        issuer=args.issuer,
        audience=args.audience,
        ttl_minutes=args.ttl_minutes,
    )
    print(token)
    return 0


if __name__ == "__main__":
    sys.exit(main())
