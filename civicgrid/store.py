# Issue / actor record store with atomic read-modify-write units of work

import copy
import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from . import config
from .errors import ConcurrencyConflict, StoreUnavailable
from .models import ActorProfile, ActorRole, Issue, Record

logger = logging.getLogger(__name__)

ISSUES = "issues"
ACTORS = "actors"

# pymongo is blocking; every store call from async code goes through this pool
executor = ThreadPoolExecutor(max_workers=10)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------
class UnitOfWork:
    """Consistent view of every record a transition reads, plus buffered writes.

    Each record is loaded at most once and the version seen is remembered; the
    store checks those versions when the unit commits. Writes become visible
    to later reads in the same unit but reach the store only on commit.
    """

    def __init__(self):
        self._snapshots: Dict[Tuple[str, str], Optional[dict]] = {}
        self._writes: Dict[Tuple[str, str], dict] = {}
        self._phone_reads: Dict[str, Optional[str]] = {}

    # backend hooks
    def _load(self, collection: str, record_id: str) -> Optional[dict]:
        raise NotImplementedError

    def _load_actor_by_phone(self, phone: str) -> Optional[dict]:
        raise NotImplementedError

    def _doc(self, collection: str, record_id: str) -> Optional[dict]:
        key = (collection, record_id)
        if key in self._writes:
            return self._writes[key]
        if key not in self._snapshots:
            self._snapshots[key] = self._load(collection, record_id)
        return self._snapshots[key]

    def read_version(self, collection: str, record_id: str) -> Optional[int]:
        doc = self._snapshots.get((collection, record_id))
        return doc["version"] if doc else None

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        doc = self._doc(ISSUES, issue_id)
        return Issue.from_doc(copy.deepcopy(doc)) if doc else None

    def get_actor(self, actor_id: str) -> Optional[ActorProfile]:
        doc = self._doc(ACTORS, actor_id)
        return ActorProfile.from_doc(copy.deepcopy(doc)) if doc else None

    def find_actor_by_phone(self, phone: str) -> Optional[ActorProfile]:
        for doc in self._writes.values():
            if doc.get("phone_number") == phone and "role" in doc:
                return ActorProfile.from_doc(copy.deepcopy(doc))
        if phone not in self._phone_reads:
            doc = self._load_actor_by_phone(phone)
            self._phone_reads[phone] = doc["_id"] if doc else None
            if doc:
                self._snapshots.setdefault((ACTORS, doc["_id"]), doc)
        actor_id = self._phone_reads[phone]
        return self.get_actor(actor_id) if actor_id else None

    def _put(self, collection: str, record: Record) -> None:
        key = (collection, record.id)
        if key not in self._snapshots:
            self._snapshots[key] = self._load(collection, record.id)
        base = self.read_version(collection, record.id) or 0
        record.version = base + 1
        self._writes[key] = record.to_doc()

    def put_issue(self, issue: Issue) -> None:
        self._put(ISSUES, issue)

    def put_actor(self, actor: ActorProfile) -> None:
        self._put(ACTORS, actor)

    @property
    def pending_writes(self) -> Dict[Tuple[str, str], dict]:
        return self._writes

# ---------------------------------------------------------------------------
# Store base: retry policy
# ---------------------------------------------------------------------------
class RecordStore:
    def __init__(self, max_attempts: int = None, backoff_base: float = None):
        self.max_attempts = max_attempts or config.STORE_MAX_ATTEMPTS
        self.backoff_base = config.STORE_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base

    def _attempt(self, fn: Callable[[UnitOfWork], T]) -> T:
        raise NotImplementedError

    def run_atomic(self, fn: Callable[[UnitOfWork], T]) -> T:
        """Run ``fn`` against a fresh unit of work and commit all of its writes or none.

        ``fn`` may run more than once: on a write conflict the whole unit is
        discarded and retried with exponential backoff, up to
        ``max_attempts`` times. Any other exception aborts without retry.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._attempt(fn)
            except ConcurrencyConflict as e:
                if attempt == self.max_attempts:
                    logger.error("Atomic unit gave up after %d attempts: %s", attempt, e)
                    raise
                delay = self.backoff_base * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)
                logger.warning("Write conflict (attempt %d/%d), retrying in %.3fs: %s",
                               attempt, self.max_attempts, delay, e)
                time.sleep(delay)
        raise ConcurrencyConflict("no attempts made")

# ---------------------------------------------------------------------------
# MongoDB backend
# ---------------------------------------------------------------------------
class MongoUnitOfWork(UnitOfWork):
    def __init__(self, db, session):
        super().__init__()
        self.db = db
        self.session = session

    def _load(self, collection, record_id):
        return self.db[collection].find_one({"_id": record_id}, session=self.session)

    def _load_actor_by_phone(self, phone):
        return self.db[ACTORS].find_one({"phone_number": phone}, session=self.session)

    def flush(self) -> None:
        for (collection, record_id), doc in self._writes.items():
            expected = self.read_version(collection, record_id)
            try:
                if expected is None:
                    self.db[collection].insert_one(doc, session=self.session)
                    continue
                result = self.db[collection].replace_one(
                    {"_id": record_id, "version": expected}, doc, session=self.session)
            except DuplicateKeyError as e:
                raise ConcurrencyConflict(f"{collection}/{record_id} created concurrently") from e
            if result.matched_count == 0:
                raise ConcurrencyConflict(f"{collection}/{record_id} changed since read")


class MongoRecordStore(RecordStore):
    """Multi-document transactions; needs a replica set or sharded cluster."""

    def __init__(self, client: MongoClient, database: str = None, **kwargs):
        super().__init__(**kwargs)
        self.client = client
        self.db = client[database or config.MONGODB_DATABASE]

    @classmethod
    def from_url(cls, url: str = None, database: str = None, **kwargs) -> "MongoRecordStore":
        return cls(MongoClient(url or config.MONGODB_URL, tz_aware=True), database, **kwargs)

    def ensure_indexes(self) -> None:
        self.db[ISSUES].create_index("status")
        self.db[ISSUES].create_index("creator_id")
        self.db[ISSUES].create_index("supporters")
        self.db[ISSUES].create_index("postal_code")
        self.db[ISSUES].create_index("assigned_staff_id")
        self.db[ISSUES].create_index([("submitted_at", DESCENDING)])
        self.db[ACTORS].create_index([("username", ASCENDING)], unique=True,
                                     partialFilterExpression={"username": {"$type": "string"}})
        self.db[ACTORS].create_index([("phone_number", ASCENDING)], unique=True,
                                     partialFilterExpression={"phone_number": {"$type": "string"}})
        self.db[ACTORS].create_index([("role", ASCENDING), ("utility_points", DESCENDING)])
        logger.info("Database indexes ensured on %s", self.db.name)

    def close(self) -> None:
        self.client.close()

    def _commit_retry(self, session, retries: int = 3) -> None:
        for attempt in range(retries):
            try:
                session.commit_transaction()
                return
            except PyMongoError as e:
                if not e.has_error_label("UnknownTransactionCommitResult") or attempt == retries - 1:
                    raise ConcurrencyConflict(f"commit outcome unknown: {e}") from e
                logger.warning("Commit retry %d: %s", attempt + 1, e)

    def _attempt(self, fn):
        try:
            with self.client.start_session() as session:
                try:
                    with session.start_transaction(read_concern=ReadConcern("snapshot"),
                                                   write_concern=WriteConcern("majority")):
                        uow = MongoUnitOfWork(self.db, session)
                        result = fn(uow)
                        uow.flush()
                except PyMongoError as e:
                    if e.has_error_label("UnknownTransactionCommitResult"):
                        self._commit_retry(session)
                        return result
                    raise
                return result
        except PyMongoError as e:
            if e.has_error_label("TransientTransactionError"):
                raise ConcurrencyConflict(str(e)) from e
            logger.error("Record store unavailable: %s", e)
            raise StoreUnavailable(f"Record store unavailable: {e}") from e

    # -- plain reads and inserts outside any unit of work --
    def create_if_absent(self, collection: str, record: Record) -> bool:
        doc = record.to_doc()
        try:
            result = self.db[collection].update_one(
                {"_id": doc["_id"]}, {"$setOnInsert": doc}, upsert=True)
        except DuplicateKeyError:
            return False
        return result.upserted_id is not None

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        doc = self.db[ISSUES].find_one({"_id": issue_id})
        return Issue.from_doc(doc) if doc else None

    def get_actor(self, actor_id: str) -> Optional[ActorProfile]:
        doc = self.db[ACTORS].find_one({"_id": actor_id})
        return ActorProfile.from_doc(doc) if doc else None

    def find_actor_by_username(self, username: str) -> Optional[ActorProfile]:
        doc = self.db[ACTORS].find_one({"username": username})
        return ActorProfile.from_doc(doc) if doc else None

    def find_actors(self, role: Optional[str] = None, department: Optional[str] = None) -> List[ActorProfile]:
        fq = {}
        if role: fq["role"] = role
        if department: fq["department"] = department
        return [ActorProfile.from_doc(d) for d in self.db[ACTORS].find(fq).sort("created_at", DESCENDING)]

    def top_citizens(self, limit: int = 10) -> List[ActorProfile]:
        cursor = self.db[ACTORS].find({"role": ActorRole.CITIZEN.value}).sort(
            "utility_points", DESCENDING).limit(limit)
        return [ActorProfile.from_doc(d) for d in cursor]

    def find_issues(self, status: Optional[str] = None, creator_id: Optional[str] = None,
                    supporter_id: Optional[str] = None, postal_code: Optional[str] = None,
                    assigned_staff_id: Optional[str] = None,
                    limit: int = 50, skip: int = 0) -> List[Issue]:
        fq = {}
        if status: fq["status"] = status
        if creator_id: fq["creator_id"] = creator_id
        if supporter_id: fq["supporters"] = supporter_id
        if postal_code: fq["postal_code"] = postal_code
        if assigned_staff_id: fq["assigned_staff_id"] = assigned_staff_id
        cursor = self.db[ISSUES].find(fq).sort("submitted_at", DESCENDING).skip(skip).limit(limit)
        return [Issue.from_doc(d) for d in cursor]

    def count_issues(self, statuses) -> int:
        return self.db[ISSUES].count_documents({"status": {"$in": list(statuses)}})

# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------
class MemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: "InMemoryRecordStore"):
        super().__init__()
        self.store = store

    def _load(self, collection, record_id):
        with self.store._lock:
            doc = self.store._data[collection].get(record_id)
            return copy.deepcopy(doc) if doc else None

    def _load_actor_by_phone(self, phone):
        with self.store._lock:
            actor_id = self.store._phones.get(phone)
            doc = self.store._data[ACTORS].get(actor_id) if actor_id else None
            return copy.deepcopy(doc) if doc else None


class InMemoryRecordStore(RecordStore):
    """Process-local store with optimistic version checks at commit time.

    Used for tests and single-process demos. Every record read by a unit of
    work is validated on commit, so concurrent units touching the same
    records serialize through conflict and retry.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[str, dict]] = {ISSUES: {}, ACTORS: {}}
        self._phones: Dict[str, str] = {}
        self._usernames: Dict[str, str] = {}

    def _version(self, collection, record_id) -> Optional[int]:
        doc = self._data[collection].get(record_id)
        return doc["version"] if doc else None

    def _attempt(self, fn):
        uow = MemoryUnitOfWork(self)
        result = fn(uow)
        with self._lock:
            for (collection, record_id), doc in uow._snapshots.items():
                seen = doc["version"] if doc else None
                if self._version(collection, record_id) != seen:
                    raise ConcurrencyConflict(f"{collection}/{record_id} changed since read")
            for phone, actor_id in uow._phone_reads.items():
                if self._phones.get(phone) != actor_id:
                    raise ConcurrencyConflict(f"phone {phone} claimed concurrently")
            for (collection, record_id), doc in uow.pending_writes.items():
                if collection == ACTORS:
                    self._check_unique(doc)
            for (collection, record_id), doc in uow.pending_writes.items():
                self._data[collection][record_id] = copy.deepcopy(doc)
                if collection == ACTORS:
                    self._index_actor(doc)
        return result

    def _check_unique(self, doc: dict) -> None:
        phone, username = doc.get("phone_number"), doc.get("username")
        if phone and self._phones.get(phone, doc["_id"]) != doc["_id"]:
            raise ConcurrencyConflict(f"phone {phone} already registered")
        if username and self._usernames.get(username, doc["_id"]) != doc["_id"]:
            raise ConcurrencyConflict(f"username {username} already registered")

    def _index_actor(self, doc: dict) -> None:
        if doc.get("phone_number"):
            self._phones[doc["phone_number"]] = doc["_id"]
        if doc.get("username"):
            self._usernames[doc["username"]] = doc["_id"]

    def create_if_absent(self, collection: str, record: Record) -> bool:
        doc = record.to_doc()
        with self._lock:
            if doc["_id"] in self._data[collection]:
                return False
            if collection == ACTORS:
                try:
                    self._check_unique(doc)
                except ConcurrencyConflict:
                    return False
                self._index_actor(doc)
            self._data[collection][doc["_id"]] = copy.deepcopy(doc)
        return True

    def _all(self, collection: str) -> List[dict]:
        with self._lock:
            return copy.deepcopy(list(self._data[collection].values()))

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        with self._lock:
            doc = copy.deepcopy(self._data[ISSUES].get(issue_id))
        return Issue.from_doc(doc) if doc else None

    def get_actor(self, actor_id: str) -> Optional[ActorProfile]:
        with self._lock:
            doc = copy.deepcopy(self._data[ACTORS].get(actor_id))
        return ActorProfile.from_doc(doc) if doc else None

    def find_actor_by_username(self, username: str) -> Optional[ActorProfile]:
        with self._lock:
            actor_id = self._usernames.get(username)
        return self.get_actor(actor_id) if actor_id else None

    def find_actors(self, role: Optional[str] = None, department: Optional[str] = None) -> List[ActorProfile]:
        docs = [d for d in self._all(ACTORS)
                if (not role or d["role"] == role) and (not department or d.get("department") == department)]
        docs.sort(key=lambda d: d["created_at"], reverse=True)
        return [ActorProfile.from_doc(d) for d in docs]

    def top_citizens(self, limit: int = 10) -> List[ActorProfile]:
        docs = [d for d in self._all(ACTORS) if d["role"] == ActorRole.CITIZEN.value]
        docs.sort(key=lambda d: d["utility_points"], reverse=True)
        return [ActorProfile.from_doc(d) for d in docs[:limit]]

    def find_issues(self, status: Optional[str] = None, creator_id: Optional[str] = None,
                    supporter_id: Optional[str] = None, postal_code: Optional[str] = None,
                    assigned_staff_id: Optional[str] = None,
                    limit: int = 50, skip: int = 0) -> List[Issue]:
        def match(d):
            return ((not status or d["status"] == status)
                    and (not creator_id or d["creator_id"] == creator_id)
                    and (not supporter_id or supporter_id in d["supporters"])
                    and (not postal_code or d.get("postal_code") == postal_code)
                    and (not assigned_staff_id or d.get("assigned_staff_id") == assigned_staff_id))
        docs = sorted((d for d in self._all(ISSUES) if match(d)),
                      key=lambda d: d["submitted_at"], reverse=True)
        return [Issue.from_doc(d) for d in docs[skip:skip + limit]]

    def count_issues(self, statuses) -> int:
        wanted = set(statuses)
        return sum(1 for d in self._all(ISSUES) if d["status"] in wanted)
