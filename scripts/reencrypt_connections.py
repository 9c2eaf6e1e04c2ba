"""
Script to re-encrypt legacy-format connection passwords with the current format
"""
import asyncio
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core import database
from app.core.config import settings
from app.core.encryption import get_vault
from app.core.logging_config import configure_structlog
from app.core.store import MongoDocumentStore
from app.services.connection_pool_manager import PoolRegistry
from app.services.connection_service import ConnectionService


async def reencrypt_connections() -> int:
    """Migrate every stored password; returns the number that failed"""
    vault = get_vault()
    if not vault.verify():
        print("Encryption self-test failed, check ENCRYPTION_KEY and ENCRYPTION_SALT")
        return 1

    client = database.create_mongodb_client()
    try:
        store = MongoDocumentStore(client, client[settings.MONGODB_DATABASE])
        service = ConnectionService(store, vault, PoolRegistry())
        counts = await service.migrate_legacy_passwords()
    finally:
        client.close()

    print(f"\n{'='*60}")
    print(f"Migrated:        {counts['migrated']}")
    print(f"Already current: {counts['current']}")
    print(f"Failed:          {counts['failed']}")
    print(f"{'='*60}\n")
    return counts["failed"]


async def main() -> int:
    """Main function"""
    configure_structlog()
    return await reencrypt_connections()


if __name__ == "__main__":
    sys.exit(1 if asyncio.run(main()) else 0)
