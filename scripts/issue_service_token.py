#!/usr/bin/env python3
"""CLI script to issue a service bearer token for the host CRM.

Usage:
    uv run python scripts/issue_service_token.py --tenant 6f1c... --minutes 43200

Signs with JWT_SECRET_KEY from the environment or .env file.
"""

from __future__ import annotations

import argparse
import os
import sys
import uuid
from datetime import timedelta

# Ensure project root is on sys.path so we can import src.crm_sync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue a service token for one tenant")
    parser.add_argument("--tenant", required=True, help="Tenant id (UUID)")
    parser.add_argument("--subject", default="host-crm", help="Token subject")
    parser.add_argument("--minutes", type=int, default=None, help="Lifetime in minutes")
    args = parser.parse_args()

    try:
        tenant_id = str(uuid.UUID(args.tenant))
    except ValueError:
        parser.error("--tenant must be a UUID")

    from src.crm_sync.core.security import create_service_token

    expires = timedelta(minutes=args.minutes) if args.minutes else None
    print(create_service_token(tenant_id, subject=args.subject, expires_delta=expires))


if __name__ == "__main__":
    main()
