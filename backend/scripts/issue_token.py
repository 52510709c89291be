#!/usr/bin/env python3
"""
Print a tenant JWT for local testing of the API (signed with SECRET_KEY).
Run from backend/: python -m scripts.issue_token <tenant-uuid> [--minutes 60]
"""
import argparse
import sys
import uuid
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def main():
    from gsc_core.auth import create_access_token
    from gsc_core.config import get_settings

    parser = argparse.ArgumentParser(description="Issue a tenant access token")
    parser.add_argument("tenant_id", nargs="?", help="Tenant UUID (random when omitted)")
    parser.add_argument("--minutes", type=int, default=60)
    args = parser.parse_args()

    if get_settings().is_production:
        print("Error: refusing to issue tokens with the production SECRET_KEY")
        sys.exit(1)

    tenant_id = uuid.UUID(args.tenant_id) if args.tenant_id else uuid.uuid4()
    print(f"tenant: {tenant_id}")
    print(create_access_token(tenant_id, expires_minutes=args.minutes))


if __name__ == "__main__":
    main()
