import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from pydantic import BaseModel

from .errors import ConcurrencyConflict, NotFound, StoreUnavailable

logger = logging.getLogger(__name__)

Record = TypeVar("Record", bound=BaseModel)

WALLETS = "wallets"
TRANSACTIONS = "transactions"
SPONSORSHIPS = "sponsorships"
PLANS = "plans"
ENROLLMENTS = "enrollments"
CLAIMS = "claims"

TABLES = (WALLETS, TRANSACTIONS, SPONSORSHIPS, PLANS, ENROLLMENTS, CLAIMS)


class LedgerStore:
    """In-process durable-record store for every engine entity.

    Records go in and come out as deep copies, so nothing outside the
    store can mutate persisted state without calling ``put``. ``put`` is a
    compare-and-swap on ``version``. ``atomic`` serializes read-check-write
    sequences and rolls every table back if the unit raises.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._tables: dict[str, dict[str, BaseModel]] = {name: {} for name in TABLES}
        self._idempotency_index: dict[str, dict[str, str]] = {name: {} for name in TABLES}
        self._depth = 0
        self._is_open = False

    def open(self) -> "LedgerStore":
        self._is_open = True
        logger.info("Ledger store opened")
        return self

    def close(self) -> None:
        with self._lock:
            self._is_open = False
        logger.info("Ledger store closed")

    @property
    def is_open(self) -> bool:
        return self._is_open

    def _ensure_open(self) -> None:
        if not self._is_open:
            raise StoreUnavailable("Ledger store is not open")

    @contextmanager
    def atomic(self) -> Iterator["LedgerStore"]:
        self._ensure_open()
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            tables = {name: dict(rows) for name, rows in self._tables.items()}
            index = {name: dict(keys) for name, keys in self._idempotency_index.items()}
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._tables = tables
                self._idempotency_index = index
                logger.debug("Atomic unit rolled back")
                raise
            finally:
                self._depth = 0

    def get(self, table: str, record_id: str, model: type[Record]) -> Record:
        found = self.find(table, record_id, model)
        if found is None:
            raise NotFound(f"{model.__name__} {record_id} not found")
        return found

    def find(self, table: str, record_id: str, model: type[Record]) -> Optional[Record]:
        self._ensure_open()
        with self._lock:
            row = self._tables[table].get(record_id)
            return row.model_copy(deep=True) if row is not None else None

    def insert(self, table: str, record: Record, idempotency_key: Optional[str] = None) -> Record:
        self._ensure_open()
        with self._lock:
            if record.id in self._tables[table]:
                raise ConcurrencyConflict(f"{type(record).__name__} {record.id} already exists")
            stored = record.model_copy(deep=True)
            self._tables[table][record.id] = stored
            if idempotency_key:
                self._idempotency_index[table][idempotency_key] = record.id
            return stored.model_copy(deep=True)

    def put(self, table: str, record: Record) -> Record:
        self._ensure_open()
        with self._lock:
            current = self._tables[table].get(record.id)
            if current is None:
                raise NotFound(f"{type(record).__name__} {record.id} not found")
            if current.version != record.version:
                raise ConcurrencyConflict(
                    f"{type(record).__name__} {record.id} changed since it was read "
                    f"(version {record.version}, now {current.version})"
                )
            stored = record.model_copy(deep=True, update={"version": record.version + 1})
            self._tables[table][record.id] = stored
            return stored.model_copy(deep=True)

    def lookup_key(self, table: str, idempotency_key: Optional[str]) -> Optional[str]:
        if not idempotency_key:
            return None
        self._ensure_open()
        with self._lock:
            return self._idempotency_index[table].get(idempotency_key)

    def select(self, table: str, model: type[Record], where: Optional[Callable[[Record], bool]] = None) -> list[Record]:
        self._ensure_open()
        with self._lock:
            rows = list(self._tables[table].values())
        return [r.model_copy(deep=True) for r in rows if where is None or where(r)]
