"""Transfers against a real MongoDB replica set.

Set MONGO_URI (e.g. mongodb://localhost:27017,localhost:27018,localhost:27019/?replicaSet=rs)
to run these. MongoDB may report the conflict on the second write instead of
on commit, so each scenario accepts either.
"""
import os

import pytest
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from exceptions import DuplicateAccount, InsufficientFunds, is_write_conflict
from repositories import MongoAccountRepository
from services import transfer

MONGO_URI = os.getenv("MONGO_URI")
DATABASE = os.getenv("MONGO_TEST_DATABASE", "txn_test")

pytestmark = pytest.mark.skipif(not MONGO_URI, reason="MONGO_URI is not set")


def make_repository():
    return MongoAccountRepository(AsyncIOMotorClient(MONGO_URI), DATABASE, "Account")


@pytest.fixture
async def repo():
    repository = make_repository()
    await repository.client.drop_database(DATABASE)
    await repository.ensure_indexes()
    yield repository
    await repository.client.drop_database(DATABASE)
    await repository.close()


async def begin(repository):
    session = await repository.start_session()
    session.start_transaction()
    return session


async def balances(repository, field="balance"):
    return {doc["name"]: doc.get(field) for doc in await repository.list_accounts()}


async def assert_write_conflict(first, second, run):
    try:
        with pytest.raises(PyMongoError) as exc_info:
            await run()
            await first.commit_transaction()
            await second.commit_transaction()
        assert is_write_conflict(exc_info.value)
    finally:
        await first.end_session()
        await second.end_session()


class TestMongoTransfers:

    @pytest.mark.asyncio
    async def test_disjoint_transfers_commit(self, repo):
        await repo.insert_accounts([
            {"name": "A", "balance": 5},
            {"name": "B", "balance": 10},
            {"name": "C", "balance": 5},
            {"name": "D", "balance": 10},
        ])

        first = await begin(repo)
        second = await begin(repo)

        await transfer(repo, first, "A", "B", 2)
        await transfer(repo, second, "C", "D", 5)

        await first.commit_transaction()
        await second.commit_transaction()
        await first.end_session()
        await second.end_session()

        assert await balances(repo) == {"A": 3, "B": 12, "C": 0, "D": 15}

    @pytest.mark.asyncio
    async def test_opposite_direction_conflicts(self, repo):
        await repo.insert_accounts([{"name": "A", "balance": 5}, {"name": "B", "balance": 10}])
        first = await begin(repo)
        second = await begin(repo)

        async def run():
            await transfer(repo, first, "B", "A", 2)
            await transfer(repo, second, "A", "B", 5)

        await assert_write_conflict(first, second, run)

    @pytest.mark.asyncio
    async def test_shared_account_conflicts(self, repo):
        await repo.insert_accounts([
            {"name": "A", "balance": 5},
            {"name": "B", "balance": 10},
            {"name": "C", "balance": 8},
        ])
        first = await begin(repo)
        second = await begin(repo)

        async def run():
            await transfer(repo, first, "A", "B", 2)
            await transfer(repo, second, "C", "A", 7)

        await assert_write_conflict(first, second, run)

    @pytest.mark.asyncio
    async def test_different_field_conflicts(self, repo):
        await repo.insert_accounts([
            {"name": "A", "balance": 5, "reserve": 10},
            {"name": "B", "balance": 10, "reserve": 5},
            {"name": "C", "balance": 8, "reserve": 9},
        ])
        first = await begin(repo)
        second = await begin(repo)

        async def run():
            await transfer(repo, first, "A", "B", 2)
            await transfer(repo, second, "C", "A", 7, "reserve")

        await assert_write_conflict(first, second, run)

    @pytest.mark.asyncio
    async def test_separate_clients_conflict(self, repo):
        await repo.insert_accounts([
            {"name": "A", "balance": 5},
            {"name": "B", "balance": 10},
            {"name": "C", "balance": 8},
        ])
        repo_first = make_repository()
        repo_second = make_repository()
        first = await begin(repo_first)
        second = await begin(repo_second)

        async def run():
            await transfer(repo_first, first, "A", "B", 2)
            await transfer(repo_second, second, "C", "A", 7)

        try:
            await assert_write_conflict(first, second, run)
        finally:
            await repo_first.close()
            await repo_second.close()

    @pytest.mark.asyncio
    async def test_insufficient_funds_rolls_back(self, repo):
        await repo.insert_accounts([{"name": "A", "balance": 1}, {"name": "B", "balance": 0}])
        session = await begin(repo)

        with pytest.raises(InsufficientFunds) as exc_info:
            await transfer(repo, session, "A", "B", 5)

        await session.abort_transaction()
        await session.end_session()

        assert exc_info.value.balance == 1
        assert await balances(repo) == {"A": 1, "B": 0}


class TestMongoAccounts:

    @pytest.mark.asyncio
    async def test_names_stay_unique_after_drop(self, repo):
        await repo.insert_accounts([{"name": "A", "balance": 5}])

        await repo.drop()
        await repo.insert_accounts([{"name": "A", "balance": 1}])

        with pytest.raises(DuplicateAccount) as exc_info:
            await repo.insert_accounts([{"name": "A", "balance": 2}])

        assert exc_info.value.account == "A"
        assert await repo.get_accounts_count() == 1
