import copy
import itertools
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import structlog
from bson import ObjectId

from exceptions import DuplicateAccount, InvalidTransactionState, WriteConflict

logger = structlog.get_logger()

# (commit timestamp, document); a None document marks a deletion
Version = Tuple[int, Optional[dict]]


class TransactionState(str, Enum):
    none = "none"
    in_progress = "in_progress"
    committed = "committed"
    aborted = "aborted"


class MemoryStore:
    """Multi-version document store with snapshot-isolated transactions.

    Every committed write gets a new timestamp from a store-wide clock. A
    transaction reads the versions visible at its start timestamp plus its
    own staged writes. On commit, any written document whose latest version
    is newer than the snapshot fails the commit with ``WriteConflict``.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[ObjectId, List[Version]]] = {}
        self._clock = 0
        self._session_ids = itertools.count(1)

    @property
    def clock(self) -> int:
        return self._clock

    def start_session(self) -> "MemorySession":
        return MemorySession(self, next(self._session_ids))

    def _tick(self) -> int:
        self._clock += 1
        return self._clock

    def _histories(self, collection: str) -> Dict[ObjectId, List[Version]]:
        return self._collections.setdefault(collection, {})

    def _read(self, collection: str, doc_id: ObjectId, at: Optional[int] = None) -> Optional[dict]:
        history = self._histories(collection).get(doc_id)
        if not history:
            return None
        if at is None:
            return history[-1][1]
        for ts, doc in reversed(history):
            if ts <= at:
                return doc
        return None

    def _latest_ts(self, collection: str, doc_id: ObjectId) -> int:
        history = self._histories(collection).get(doc_id)
        return history[-1][0] if history else 0

    def _view(self, collection: str, doc_id: ObjectId, session: Optional["MemorySession"]) -> Optional[dict]:
        if session is not None and session.in_transaction:
            key = (collection, doc_id)
            if key in session._writes:
                return session._writes[key]
            return self._read(collection, doc_id, at=session._snapshot)
        return self._read(collection, doc_id)

    def _find(self, collection: str, query: Dict[str, Any], session=None) -> Tuple[Optional[ObjectId], Optional[dict]]:
        for doc_id in list(self._histories(collection)):
            doc = self._view(collection, doc_id, session)
            if doc is not None and all(doc.get(k) == v for k, v in query.items()):
                return doc_id, doc
        return None, None

    def _write(self, collection: str, doc_id: ObjectId, doc: Optional[dict], session=None) -> None:
        if session is not None and session.in_transaction:
            session._writes[(collection, doc_id)] = doc
            return
        self._histories(collection).setdefault(doc_id, []).append((self._tick(), doc))

    def _commit(self, session: "MemorySession") -> None:
        for collection, doc_id in session._writes:
            if self._latest_ts(collection, doc_id) > session._snapshot:
                logger.debug(
                    "Write conflict detected on commit",
                    session_id=session.session_id,
                    collection=collection,
                    document_id=str(doc_id),
                )
                raise WriteConflict(collection, doc_id)
        if not session._writes:
            return
        ts = self._tick()
        for (collection, doc_id), doc in session._writes.items():
            self._histories(collection).setdefault(doc_id, []).append((ts, doc))

    def insert_many(self, collection: str, documents: List[dict], unique_field: Optional[str] = None) -> List[ObjectId]:
        """Insert documents outside any transaction, all or nothing."""
        prepared = []
        seen = set()
        for document in documents:
            doc = copy.deepcopy(document)
            doc.setdefault("_id", ObjectId())
            if unique_field is not None:
                value = doc.get(unique_field)
                existing_id, _ = self._find(collection, {unique_field: value})
                if existing_id is not None or value in seen:
                    raise DuplicateAccount(value)
                seen.add(value)
            prepared.append(doc)
        for doc in prepared:
            self._write(collection, doc["_id"], doc)
        return [doc["_id"] for doc in prepared]

    def find_one(self, collection: str, query: Dict[str, Any], session=None) -> Optional[dict]:
        _, doc = self._find(collection, query, session)
        return copy.deepcopy(doc) if doc is not None else None

    def find(self, collection: str, session=None) -> List[dict]:
        docs = []
        for doc_id in list(self._histories(collection)):
            doc = self._view(collection, doc_id, session)
            if doc is not None:
                docs.append(copy.deepcopy(doc))
        return docs

    def find_one_and_increment(
        self,
        collection: str,
        query: Dict[str, Any],
        field: str,
        delta,
        session=None,
    ) -> Optional[dict]:
        """Apply ``$inc`` to one matching document and return it after the update."""
        doc_id, doc = self._find(collection, query, session)
        if doc is None:
            return None
        current = doc.get(field, 0)
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            raise TypeError(f"Cannot apply $inc to non-numeric field '{field}'")
        updated = dict(doc)
        updated[field] = current + delta
        self._write(collection, doc_id, updated, session)
        return copy.deepcopy(updated)

    def count(self, collection: str) -> int:
        return len(self.find(collection))

    def drop(self, collection: str) -> None:
        self._collections.pop(collection, None)


class MemorySession:
    """Session handle for ``MemoryStore`` shaped like a motor client session."""

    def __init__(self, store: MemoryStore, session_id: int):
        self._store = store
        self.session_id = session_id
        self._state = TransactionState.none
        self._snapshot: Optional[int] = None
        self._writes: Dict[Tuple[str, ObjectId], Optional[dict]] = {}
        self._ended = False

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def in_transaction(self) -> bool:
        return self._state == TransactionState.in_progress

    @property
    def has_ended(self) -> bool:
        return self._ended

    def start_transaction(self) -> None:
        if self._ended:
            raise InvalidTransactionState("Cannot use an ended session")
        if self.in_transaction:
            raise InvalidTransactionState("Transaction already in progress")
        self._state = TransactionState.in_progress
        self._snapshot = self._store.clock
        self._writes = {}

    async def commit_transaction(self) -> None:
        if not self.in_transaction:
            raise InvalidTransactionState("No transaction started")
        try:
            self._store._commit(self)
        except WriteConflict:
            self._finish(TransactionState.aborted)
            raise
        self._finish(TransactionState.committed)

    async def abort_transaction(self) -> None:
        if not self.in_transaction:
            raise InvalidTransactionState("No transaction started")
        self._finish(TransactionState.aborted)

    async def end_session(self) -> None:
        if self.in_transaction:
            self._finish(TransactionState.aborted)
        self._ended = True

    def _finish(self, state: TransactionState) -> None:
        self._state = state
        self._snapshot = None
        self._writes = {}

    async def __aenter__(self) -> "MemorySession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.end_session()
