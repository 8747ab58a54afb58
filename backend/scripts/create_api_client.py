#!/usr/bin/env python3
"""
Issues an API credential for the cart recovery API.

Only the bcrypt hash of the secret is stored in `api_clients`; the full
token is printed once and cannot be recovered afterwards.

Usage:
    python scripts/create_api_client.py "CRM integration" --scope sessions:read --scope attempts:write
    python scripts/create_api_client.py "Ops" --all-scopes
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add parent directory to path to import mya_recovery modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from mya_recovery.services.db_service import db_service
from mya_recovery.services.security_service import SecurityService
from mya_recovery.utils.dependencies import API_SCOPES

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Create a cart recovery API client")
    parser.add_argument("name", help="Human readable name of the integration")
    parser.add_argument("--scope", action="append", default=[], choices=API_SCOPES, help="Scope to grant (repeatable)")
    parser.add_argument("--all-scopes", action="store_true", help="Grant every scope")
    args = parser.parse_args(argv)
    if not args.scope and not args.all_scopes:
        parser.error("at least one --scope or --all-scopes is required")
    return args


async def create_api_client(name: str, scopes: list) -> str:
    client_id, secret, token = SecurityService.generate_api_credentials()
    await db_service.create_indexes()
    await db_service.insert_api_client({
        "client_id": client_id,
        "name": name,
        "key_hash": SecurityService.hash_secret(secret),
        "scopes": sorted(set(scopes)),
        "is_active": True,
        "created_at": datetime.now(timezone.utc),
        "last_used_at": None,
    })
    logger.info(f"Created API client {client_id} ({name}) with scopes {sorted(set(scopes))}")
    return token


def main(argv=None):
    args = parse_args(argv)
    scopes = list(API_SCOPES) if args.all_scopes else args.scope
    try:
        token = asyncio.run(create_api_client(args.name, scopes))
    except Exception as error:
        logger.error(f"Failed to create API client: {error}")
        sys.exit(1)

    print("\n✅ API client created!\n")
    print("Store this token now; it will not be shown again:")
    print("----------------------------------------------------------------------")
    print(token)
    print("----------------------------------------------------------------------")


if __name__ == "__main__":
    main()
