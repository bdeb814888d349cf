from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import copy

import structlog
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import BulkWriteError, DuplicateKeyError

from config import Settings, get_settings
from exceptions import DuplicateAccount
from storage import MemoryStore

logger = structlog.get_logger()

DUPLICATE_KEY_CODE = 11000


class AccountRepository(ABC):
    backend_name: str = "abstract"

    @abstractmethod
    async def start_session(self):
        """Open a session that can carry one transaction at a time."""
        pass

    @abstractmethod
    async def increment_field(self, name: str, field: str, delta, session=None) -> Optional[Dict[str, Any]]:
        """Atomically add delta to a field. Returns the document after the update, or None if no account matched."""
        pass

    @abstractmethod
    async def get_account(self, name: str, session=None) -> Optional[Dict[str, Any]]:
        """Get account document. Returns None if account doesn't exist."""
        pass

    @abstractmethod
    async def list_accounts(self) -> List[Dict[str, Any]]:
        """Get all account documents in insertion order."""
        pass

    @abstractmethod
    async def insert_accounts(self, documents: List[Dict[str, Any]]) -> int:
        """Bulk insert accounts. Raises DuplicateAccount on a name clash."""
        pass

    @abstractmethod
    async def get_accounts_count(self) -> int:
        """Get total number of accounts."""
        pass

    @abstractmethod
    async def drop(self) -> None:
        """Drop all accounts."""
        pass

    async def ensure_indexes(self) -> None:
        pass

    async def close(self) -> None:
        pass


class MongoAccountRepository(AccountRepository):
    backend_name = "mongo"

    def __init__(self, client: AsyncIOMotorClient, database: str, collection: str):
        self.client = client
        self.collection = client[database][collection]

    @classmethod
    def from_settings(cls, settings: Settings) -> "MongoAccountRepository":
        client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=settings.server_selection_timeout_ms,
        )
        return cls(client, settings.mongo_database, settings.accounts_collection)

    async def start_session(self):
        return await self.client.start_session()

    async def increment_field(self, name: str, field: str, delta, session=None) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one_and_update(
            {"name": name},
            {"$inc": {field: delta}},
            session=session,
            return_document=ReturnDocument.AFTER,
        )

    async def get_account(self, name: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"name": name}, session=session)

    async def list_accounts(self) -> List[Dict[str, Any]]:
        return await self.collection.find({}).sort("_id", ASCENDING).to_list(length=None)

    async def insert_accounts(self, documents: List[Dict[str, Any]]) -> int:
        # insert_many adds _id to the dicts it is given
        documents = copy.deepcopy(documents)
        try:
            result = await self.collection.insert_many(documents)
        except DuplicateKeyError as e:
            raise DuplicateAccount((e.details or {}).get("keyValue", {}).get("name")) from e
        except BulkWriteError as e:
            for error in e.details.get("writeErrors", []):
                if error.get("code") == DUPLICATE_KEY_CODE:
                    raise DuplicateAccount(error.get("keyValue", {}).get("name")) from e
            raise
        return len(result.inserted_ids)

    async def get_accounts_count(self) -> int:
        return await self.collection.count_documents({})

    async def drop(self) -> None:
        await self.collection.drop()
        # Dropping the collection also drops its indexes
        await self.ensure_indexes()

    async def ensure_indexes(self) -> None:
        await self.collection.create_index("name", unique=True)

    async def close(self) -> None:
        self.client.close()


class InMemoryAccountRepository(AccountRepository):
    backend_name = "memory"

    def __init__(self, store: Optional[MemoryStore] = None, collection: str = "Account"):
        self.store = store or MemoryStore()
        self.collection = collection

    async def start_session(self):
        return self.store.start_session()

    async def increment_field(self, name: str, field: str, delta, session=None) -> Optional[Dict[str, Any]]:
        return self.store.find_one_and_increment(self.collection, {"name": name}, field, delta, session=session)

    async def get_account(self, name: str, session=None) -> Optional[Dict[str, Any]]:
        return self.store.find_one(self.collection, {"name": name}, session=session)

    async def list_accounts(self) -> List[Dict[str, Any]]:
        return self.store.find(self.collection)

    async def insert_accounts(self, documents: List[Dict[str, Any]]) -> int:
        return len(self.store.insert_many(self.collection, documents, unique_field="name"))

    async def get_accounts_count(self) -> int:
        return self.store.count(self.collection)

    async def drop(self) -> None:
        self.store.drop(self.collection)


def build_account_repository(settings: Settings) -> AccountRepository:
    if settings.store_backend == "memory":
        return InMemoryAccountRepository(collection=settings.accounts_collection)
    return MongoAccountRepository.from_settings(settings)


# Singleton instance, created on first use
_account_repo: Optional[AccountRepository] = None


def get_account_repository() -> AccountRepository:
    global _account_repo
    if _account_repo is None:
        settings = get_settings()
        _account_repo = build_account_repository(settings)
        logger.info("Account repository created", backend=_account_repo.backend_name)
    return _account_repo


def set_account_repository(repository: Optional[AccountRepository]) -> None:
    global _account_repo
    _account_repo = repository


# For tests
def reset_repositories() -> InMemoryAccountRepository:
    """Replace the repository with a fresh in-memory one (for testing only)."""
    repository = InMemoryAccountRepository()
    set_account_repository(repository)
    return repository
