import pytest

from repositories import InMemoryAccountRepository


@pytest.fixture
def repo():
    return InMemoryAccountRepository()


@pytest.fixture
def seed(repo):
    """Insert account fixtures into the in-memory repository."""
    async def _seed(*accounts):
        await repo.insert_accounts(list(accounts))
        return repo
    return _seed


@pytest.fixture
def balances(repo):
    """Committed value of one field for every account, by name."""
    async def _balances(field="balance"):
        return {doc["name"]: doc.get(field) for doc in await repo.list_accounts()}
    return _balances
