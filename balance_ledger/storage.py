"""
Ledger Storage Module

Provides the ledger store interface and implementations for in-memory
(testing), SQLite (single-node persistence) and PostgreSQL (production).
Balance mutations and transaction appends only exist on a unit of work,
which commits all of its writes together or none of them.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, TypeVar, Any
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from contextlib import contextmanager
import sqlite3
import threading

from .amounts import ZERO, apply_delta, negate
from .config import LedgerConfig
from .errors import InsufficientFunds, StorageFailure
from .transactions import TransactionRecord, TransactionType
from .users import User
from .logging_config import get_logger


T = TypeVar("T")

logger = get_logger("balance_ledger.storage")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class BalanceRecord:
    """Current balance of one user"""
    user_id: int
    amount: Decimal
    created_at: datetime
    updated_at: datetime


class UnitOfWork(ABC):
    """
    One all-or-nothing scope of ledger reads and writes.

    Only the balances of the users the unit was opened for may be read or
    written; the store holds their locks until the unit ends. Once the scope
    has closed every method raises RuntimeError.
    """

    def __init__(self, user_ids: Sequence[int]):
        self.user_ids = frozenset(user_ids)
        self._active = True
        self._balances: Dict[int, BalanceRecord] = {}

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        self._active = False

    def _check_access(self, user_id: int) -> None:
        if not self._active:
            raise RuntimeError("Unit of work is closed")
        if user_id not in self.user_ids:
            raise RuntimeError(f"Balance of user {user_id} is not locked by this unit of work")

    def get_balance(self, user_id: int) -> Decimal:
        """Current amount as seen inside this unit, 0.00 if no record exists"""
        self._check_access(user_id)
        if user_id in self._balances:
            return self._balances[user_id].amount
        record = self._load_balance(user_id)
        return record.amount if record else ZERO

    def get_or_create_balance(self, user_id: int) -> BalanceRecord:
        """Return the user's balance record, creating it with 0.00 if absent"""
        self._check_access(user_id)
        record = self._balances.get(user_id)
        if record is None:
            record = self._load_balance(user_id)
            if record is None:
                now = _utcnow()
                record = BalanceRecord(user_id=user_id, amount=ZERO, created_at=now, updated_at=now)
                self._insert_balance(record)
            self._balances[user_id] = record
        return record

    def adjust_balance(self, user_id: int, delta: Decimal, allow_negative: bool = False) -> BalanceRecord:
        """
        Apply a signed delta to the stored amount

        Raises:
            InsufficientFunds: If the result would be negative and allow_negative is False
        """
        record = self.get_or_create_balance(user_id)
        new_amount = apply_delta(record.amount, delta)
        if new_amount < 0 and not allow_negative:
            raise InsufficientFunds(user_id, record.amount, negate(delta))

        updated = BalanceRecord(
            user_id=user_id,
            amount=new_amount,
            created_at=record.created_at,
            updated_at=_utcnow()
        )
        self._write_balance(updated)
        self._balances[user_id] = updated
        return updated

    def append_transaction(self, record: TransactionRecord) -> int:
        """Append one immutable record and return its generated id"""
        self._check_access(record.user_id)
        if record.id is not None:
            raise ValueError(f"Transaction {record.id} has already been appended")
        return self._insert_transaction(record)

    @abstractmethod
    def _load_balance(self, user_id: int) -> Optional[BalanceRecord]:
        pass

    @abstractmethod
    def _insert_balance(self, record: BalanceRecord) -> None:
        pass

    @abstractmethod
    def _write_balance(self, record: BalanceRecord) -> None:
        pass

    @abstractmethod
    def _insert_transaction(self, record: TransactionRecord) -> int:
        pass


class LedgerStore(ABC):
    """Abstract interface for ledger storage backends"""

    @abstractmethod
    def get_balance(self, user_id: int) -> Decimal:
        """Committed balance of a user, 0.00 if no record exists (never creates one)"""
        pass

    @abstractmethod
    def atomic(self, user_ids: Iterable[int] = ()) -> Iterator[UnitOfWork]:
        """Context manager yielding a unit of work over the given users' balances"""
        pass

    def run_atomic(self, fn: Callable[[UnitOfWork], T], user_ids: Iterable[int] = ()) -> T:
        """Run fn inside one unit of work; an exception raised by fn rolls everything back"""
        with self.atomic(user_ids) as uow:
            return fn(uow)

    @abstractmethod
    def add_user(self, name: str, email: Optional[str] = None) -> User:
        """Create a user in the directory table"""
        pass

    @abstractmethod
    def load_user(self, user_id: int) -> Optional[User]:
        """Load a user or None"""
        pass

    @abstractmethod
    def list_transactions(self, user_id: int) -> List[TransactionRecord]:
        """Committed records of a user in append order"""
        pass

    def close(self) -> None:
        """Release backend resources (default no-op)"""
        pass


class InMemoryUnitOfWork(UnitOfWork):
    """Stages writes privately and publishes them on commit"""

    def __init__(self, store: 'InMemoryLedgerStore', user_ids: Sequence[int]):
        super().__init__(user_ids)
        self.store = store
        self._staged_balances: Dict[int, BalanceRecord] = {}
        self._staged_transactions: List[TransactionRecord] = []

    def _load_balance(self, user_id: int) -> Optional[BalanceRecord]:
        with self.store._lock:
            return self.store._balances.get(user_id)

    def _insert_balance(self, record: BalanceRecord) -> None:
        self._staged_balances[record.user_id] = record

    def _write_balance(self, record: BalanceRecord) -> None:
        self._staged_balances[record.user_id] = record

    def _insert_transaction(self, record: TransactionRecord) -> int:
        with self.store._lock:
            transaction_id = self.store._next_transaction_id
            self.store._next_transaction_id += 1
        self._staged_transactions.append(record.with_id(transaction_id))
        return transaction_id

    def commit(self) -> None:
        with self.store._lock:
            self.store._balances.update(self._staged_balances)
            self.store._transactions.extend(self._staged_transactions)
        self._staged_balances = {}
        self._staged_transactions = []

    def rollback(self) -> None:
        self._staged_balances = {}
        self._staged_transactions = []


class InMemoryLedgerStore(LedgerStore):
    """In-memory ledger store with per-user locks, for tests and ephemeral ledgers"""

    def __init__(self):
        self._users: Dict[int, User] = {}
        self._balances: Dict[int, BalanceRecord] = {}
        self._transactions: List[TransactionRecord] = []
        self._next_user_id = 1
        self._next_transaction_id = 1
        # Guards the tables above; never held while waiting for a user lock
        self._lock = threading.RLock()
        self._user_locks: Dict[int, threading.Lock] = {}

    def _user_lock(self, user_id: int) -> threading.Lock:
        with self._lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.Lock()
            return lock

    def get_balance(self, user_id: int) -> Decimal:
        with self._lock:
            record = self._balances.get(user_id)
            return record.amount if record else ZERO

    @contextmanager
    def atomic(self, user_ids: Iterable[int] = ()) -> Iterator[UnitOfWork]:
        ordered = sorted(set(user_ids))
        # Sorted acquisition keeps opposite transfers from deadlocking
        locks = [self._user_lock(user_id) for user_id in ordered]
        for lock in locks:
            lock.acquire()

        uow = InMemoryUnitOfWork(self, ordered)
        try:
            yield uow
            uow.commit()
        except BaseException:
            uow.rollback()
            raise
        finally:
            uow.close()
            for lock in reversed(locks):
                lock.release()

    def add_user(self, name: str, email: Optional[str] = None) -> User:
        with self._lock:
            if email is not None and any(u.email == email for u in self._users.values()):
                raise ValueError(f"User with email {email} already exists")
            user = User(id=self._next_user_id, name=name, email=email)
            self._users[user.id] = user
            self._next_user_id += 1
            return user

    def load_user(self, user_id: int) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)

    def list_transactions(self, user_id: int) -> List[TransactionRecord]:
        with self._lock:
            return [t for t in self._transactions if t.user_id == user_id]


class SQLUnitOfWork(UnitOfWork):
    """Unit of work running inside one open database transaction"""

    def __init__(self, store: 'SQLLedgerStore', connection: Any, user_ids: Sequence[int]):
        super().__init__(user_ids)
        self.store = store
        self.connection = connection

    def _cursor(self):
        return self.connection.cursor()

    def _load_balance(self, user_id: int) -> Optional[BalanceRecord]:
        cursor = self._cursor()
        cursor.execute(
            self.store.sql(
                "SELECT user_id, amount, created_at, updated_at FROM balances WHERE user_id = ?"
                + self.store.row_lock_clause
            ),
            (user_id,)
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return BalanceRecord(
            user_id=row[0],
            amount=Decimal(str(row[1])),
            created_at=_to_datetime(row[2]),
            updated_at=_to_datetime(row[3])
        )

    def _insert_balance(self, record: BalanceRecord) -> None:
        self._cursor().execute(
            self.store.sql(
                "INSERT INTO balances (user_id, amount, created_at, updated_at) VALUES (?, ?, ?, ?)"
            ),
            (record.user_id, str(record.amount), record.created_at.isoformat(), record.updated_at.isoformat())
        )

    def _write_balance(self, record: BalanceRecord) -> None:
        self._cursor().execute(
            self.store.sql("UPDATE balances SET amount = ?, updated_at = ? WHERE user_id = ?"),
            (str(record.amount), record.updated_at.isoformat(), record.user_id)
        )

    def _insert_transaction(self, record: TransactionRecord) -> int:
        return self.store.insert_returning_id(
            self._cursor(),
            "INSERT INTO transactions (user_id, type, amount, comment, related_user_id, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (record.user_id, record.type.value, str(record.amount), record.comment,
             record.related_user_id, record.created_at.isoformat())
        )


class SQLLedgerStore(LedgerStore):
    """
    Shared implementation for DB-API backends.

    Statements are written with "?" placeholders and translated per dialect.
    Driver errors raised anywhere inside a session roll the transaction back
    and surface as StorageFailure.
    """

    dialect: str = ""
    placeholder: str = "?"
    row_lock_clause: str = ""
    driver_error: Any = ()
    integrity_error: Any = ()

    def sql(self, statement: str) -> str:
        if self.placeholder == "?":
            return statement
        return statement.replace("?", self.placeholder)

    @abstractmethod
    def _acquire(self) -> Any:
        """Open or borrow a connection"""
        pass

    @abstractmethod
    def _release(self, connection: Any) -> None:
        """Close or return a connection"""
        pass

    @abstractmethod
    def _begin(self, connection: Any, lock_user_ids: Optional[Sequence[int]]) -> None:
        """Start a transaction; lock_user_ids is set for balance-mutating units"""
        pass

    @abstractmethod
    def _commit(self, connection: Any) -> None:
        pass

    @abstractmethod
    def _rollback(self, connection: Any) -> None:
        pass

    @abstractmethod
    def insert_returning_id(self, cursor: Any, statement: str, params: Sequence[Any]) -> int:
        pass

    def _rollback_after_error(self, connection: Any) -> None:
        try:
            self._rollback(connection)
        except self.driver_error as e:
            logger.error(f"Rollback failed: {e}")

    @contextmanager
    def session(self, lock_user_ids: Optional[Sequence[int]] = None) -> Iterator[Any]:
        """Yield a connection inside one database transaction"""
        try:
            connection = self._acquire()
        except self.driver_error as e:
            raise StorageFailure("Could not connect to the ledger database.", e) from e

        try:
            self._begin(connection, lock_user_ids)
            yield connection
            self._commit(connection)
        except self.driver_error as e:
            self._rollback_after_error(connection)
            raise StorageFailure(original_error=e) from e
        except BaseException:
            self._rollback_after_error(connection)
            raise
        finally:
            self._release(connection)

    @contextmanager
    def atomic(self, user_ids: Iterable[int] = ()) -> Iterator[UnitOfWork]:
        ordered = sorted(set(user_ids))
        with self.session(lock_user_ids=ordered) as connection:
            uow = SQLUnitOfWork(self, connection, ordered)
            try:
                yield uow
            finally:
                uow.close()

    def get_balance(self, user_id: int) -> Decimal:
        with self.session() as connection:
            cursor = connection.cursor()
            cursor.execute(self.sql("SELECT amount FROM balances WHERE user_id = ?"), (user_id,))
            row = cursor.fetchone()
        return Decimal(str(row[0])) if row else ZERO

    def add_user(self, name: str, email: Optional[str] = None) -> User:
        created_at = _utcnow()
        with self.session() as connection:
            try:
                user_id = self.insert_returning_id(
                    connection.cursor(),
                    "INSERT INTO users (name, email, created_at) VALUES (?, ?, ?)",
                    (name, email, created_at.isoformat())
                )
            except self.integrity_error:
                raise ValueError(f"User with email {email} already exists") from None
        return User(id=user_id, name=name, email=email, created_at=created_at)

    def load_user(self, user_id: int) -> Optional[User]:
        with self.session() as connection:
            cursor = connection.cursor()
            cursor.execute(
                self.sql("SELECT id, name, email, created_at FROM users WHERE id = ?"), (user_id,)
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return User(id=row[0], name=row[1], email=row[2], created_at=_to_datetime(row[3]))

    def list_transactions(self, user_id: int) -> List[TransactionRecord]:
        with self.session() as connection:
            cursor = connection.cursor()
            cursor.execute(
                self.sql(
                    "SELECT id, user_id, type, amount, comment, related_user_id, created_at "
                    "FROM transactions WHERE user_id = ? ORDER BY id"
                ),
                (user_id,)
            )
            rows = cursor.fetchall()
        return [
            TransactionRecord(
                id=row[0],
                user_id=row[1],
                type=TransactionType(row[2]),
                amount=Decimal(str(row[3])),
                comment=row[4],
                related_user_id=row[5],
                created_at=_to_datetime(row[6])
            )
            for row in rows
        ]

    def migrate(self) -> None:
        """Apply pending schema migrations"""
        from .migrations import MigrationManager
        MigrationManager(self).migrate_up()


class SQLiteLedgerStore(SQLLedgerStore):
    """
    SQLite ledger store.

    Every unit of work opens its own connection and takes the database write
    lock with BEGIN IMMEDIATE, so balance-mutating units are serialized across
    threads and processes; plain reads run concurrently under WAL.
    """

    dialect = "sqlite"
    placeholder = "?"
    row_lock_clause = ""
    driver_error = sqlite3.Error
    integrity_error = sqlite3.IntegrityError

    def __init__(self, db_path: str = "ledger.db", busy_timeout: float = 30.0, auto_migrate: bool = True):
        if db_path == ":memory:":
            raise ValueError("SQLiteLedgerStore needs a database file; use InMemoryLedgerStore for ephemeral ledgers")
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout

        # Enable WAL mode for better concurrent access
        connection = self._acquire()
        try:
            connection.execute("PRAGMA journal_mode = WAL")
            connection.execute("PRAGMA synchronous = NORMAL")
        finally:
            connection.close()

        if auto_migrate:
            self.migrate()

    def _acquire(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are started explicitly in _begin
        connection = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def _release(self, connection: sqlite3.Connection) -> None:
        connection.close()

    def _begin(self, connection: sqlite3.Connection, lock_user_ids: Optional[Sequence[int]]) -> None:
        if lock_user_ids is None:
            connection.execute("BEGIN")
        else:
            connection.execute("BEGIN IMMEDIATE")

    def _commit(self, connection: sqlite3.Connection) -> None:
        connection.execute("COMMIT")

    def _rollback(self, connection: sqlite3.Connection) -> None:
        if connection.in_transaction:
            connection.execute("ROLLBACK")

    def insert_returning_id(self, cursor: sqlite3.Cursor, statement: str, params: Sequence[Any]) -> int:
        cursor.execute(self.sql(statement), params)
        return cursor.lastrowid


class PostgreSQLLedgerStore(SQLLedgerStore):
    """
    PostgreSQL ledger store.

    A unit of work locks the rows of its users with SELECT ... FOR UPDATE in
    id order, so units on the same user serialize while units on disjoint
    users proceed in parallel.
    """

    dialect = "postgresql"
    placeholder = "%s"
    row_lock_clause = " FOR UPDATE"

    def __init__(self, connection_string: str, min_connections: int = 1,
                 max_connections: int = 10, auto_migrate: bool = True):
        try:
            import psycopg2
            import psycopg2.pool
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.driver_error = psycopg2.Error
        self.integrity_error = psycopg2.IntegrityError
        self.connection_string = connection_string

        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                min_connections, max_connections, connection_string
            )
        except psycopg2.Error as e:
            raise StorageFailure("Could not connect to the ledger database.", e) from e

        if auto_migrate:
            self.migrate()

    def _acquire(self) -> Any:
        connection = self._pool.getconn()
        connection.autocommit = False
        return connection

    def _release(self, connection: Any) -> None:
        self._pool.putconn(connection)

    def _begin(self, connection: Any, lock_user_ids: Optional[Sequence[int]]) -> None:
        # psycopg2 opens the transaction implicitly with the first statement
        if lock_user_ids:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT id FROM users WHERE id = ANY(%s) ORDER BY id FOR UPDATE",
                (list(lock_user_ids),)
            )

    def _commit(self, connection: Any) -> None:
        connection.commit()

    def _rollback(self, connection: Any) -> None:
        connection.rollback()

    def insert_returning_id(self, cursor: Any, statement: str, params: Sequence[Any]) -> int:
        cursor.execute(self.sql(statement) + " RETURNING id", params)
        return cursor.fetchone()[0]

    def close(self) -> None:
        self._pool.closeall()


def create_store(config: LedgerConfig) -> LedgerStore:
    """Build the ledger store selected by configuration"""
    backend = config.storage_backend.lower()

    if backend == "memory":
        return InMemoryLedgerStore()

    if backend == "sqlite":
        return SQLiteLedgerStore(
            config.sqlite_path,
            busy_timeout=config.sqlite_busy_timeout,
            auto_migrate=config.auto_migrate
        )

    if backend == "postgresql":
        if not config.database_url:
            raise ValueError("LEDGER_DATABASE_URL is required for the postgresql backend")
        return PostgreSQLLedgerStore(
            config.database_url,
            min_connections=config.database_pool_min,
            max_connections=config.database_pool_max,
            auto_migrate=config.auto_migrate
        )

    raise ValueError(f"Unknown storage backend: {config.storage_backend}")
