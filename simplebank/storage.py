"""
Storage Backend Module

Provides the abstract ledger store and its implementations: in-memory
(testing), SQLite (single-node persistence) and PostgreSQL (production).
Every accessor is a single statement; multi-statement work is grouped with
atomic(). Missing rows raise NotFoundError and driver errors are mapped onto
the TransactionFailure hierarchy.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Sequence
from datetime import datetime, timezone
from pathlib import Path
from contextlib import contextmanager
import itertools
import sqlite3
import threading
import time

from .context import TxContext
from .currency import Currency
from .errors import (
    NotFoundError, TransactionFailure, ConstraintViolation,
    ForeignKeyViolation, UniqueViolation, LockTimeout, TransactionCancelled
)
from .models import Account, Entry, Transfer, User, ZERO_TIME


# Granularity of lock waits, so cancellation is noticed while blocked
LOCK_POLL_INTERVAL = 0.05


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _acquire(lock, ctx: TxContext, timeout: float, what: str) -> None:
    """Acquire a lock, honouring the context deadline and cancel flag"""
    deadline = time.monotonic() + ctx.bound_timeout(timeout)
    while True:
        ctx.check()
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            ctx.check()
            raise LockTimeout(f"timed out waiting for lock on {what}")
        if lock.acquire(timeout=min(LOCK_POLL_INTERVAL, remaining)):
            return


class StorageInterface(ABC):
    """Abstract interface for ledger storage backends"""

    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout
        self._local = threading.local()

    # Transaction control

    def current_context(self) -> Optional[TxContext]:
        """Context of this thread's open transaction, None outside atomic()"""
        return getattr(self._local, "ctx", None)

    def in_transaction(self) -> bool:
        return self.current_context() is not None

    @abstractmethod
    def begin_transaction(self, ctx: TxContext) -> None:
        """Start a database transaction for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Rollback the calling thread's transaction"""
        pass

    @contextmanager
    def atomic(self, ctx: Optional[TxContext] = None):
        """
        Context manager for atomic operations.

        Nested blocks join the outermost transaction. The context is checked
        before commit so a cancelled or expired transaction is rolled back.
        """
        if self.in_transaction():
            yield self
            return

        ctx = ctx or TxContext.background()
        ctx.check()
        self.begin_transaction(ctx)
        try:
            yield self
            ctx.check()
        except BaseException:
            self.rollback()
            raise
        self.commit()

    # Accounts

    @abstractmethod
    def create_account(self, owner: str, balance: int, currency: Currency) -> Account:
        pass

    @abstractmethod
    def get_account(self, account_id: int, for_update: bool = False) -> Account:
        """Load an account; for_update takes the row lock until commit"""
        pass

    @abstractmethod
    def list_accounts(self, owner: str, limit: int, offset: int) -> List[Account]:
        pass

    @abstractmethod
    def update_account(self, account_id: int, balance: int) -> Account:
        """Set an account balance"""
        pass

    @abstractmethod
    def add_account_balance(self, account_id: int, amount: int) -> Account:
        """Add a signed amount to an account balance"""
        pass

    @abstractmethod
    def delete_account(self, account_id: int) -> None:
        pass

    # Entries

    @abstractmethod
    def create_entry(self, account_id: int, amount: int) -> Entry:
        pass

    @abstractmethod
    def get_entry(self, entry_id: int) -> Entry:
        pass

    @abstractmethod
    def list_entries(self, account_id: int, limit: int, offset: int) -> List[Entry]:
        pass

    # Transfers

    @abstractmethod
    def create_transfer(self, from_account_id: int, to_account_id: int, amount: int) -> Transfer:
        pass

    @abstractmethod
    def get_transfer(self, transfer_id: int) -> Transfer:
        pass

    @abstractmethod
    def list_transfers(self, from_account_id: int, to_account_id: int,
                       limit: int, offset: int) -> List[Transfer]:
        """Transfers sent from from_account_id or received by to_account_id"""
        pass

    # Users

    @abstractmethod
    def create_user(self, username: str, hashed_password: str,
                    full_name: str, email: str) -> User:
        pass

    @abstractmethod
    def get_user(self, username: str) -> User:
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass


class _MemoryTransaction:
    """Write buffer and held row locks of one in-memory transaction"""

    def __init__(self, ctx: TxContext, tables: Sequence[str]):
        self.ctx = ctx
        # table -> key -> row, None marks a deleted row
        self.pending: Dict[str, Dict[Any, Optional[Dict[str, Any]]]] = {t: {} for t in tables}
        self.held_locks: Dict[int, threading.Lock] = {}


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Behaves like a read-committed database: writes inside atomic() are
    buffered until commit, and account rows carry exclusive locks that are
    held until the transaction ends.
    """

    TABLES = ("users", "accounts", "entries", "transfers")

    def __init__(self, lock_timeout: float = 5.0):
        super().__init__(lock_timeout)
        self._data: Dict[str, Dict[Any, Dict[str, Any]]] = {t: {} for t in self.TABLES}
        self._sequences = {t: itertools.count(1) for t in ("accounts", "entries", "transfers")}
        self._row_locks: Dict[int, threading.Lock] = {}
        self._lock = threading.RLock()

    # Transaction control

    def _tx(self) -> Optional[_MemoryTransaction]:
        tx = getattr(self._local, "tx", None)
        if tx is not None:
            tx.ctx.check()
        return tx

    def begin_transaction(self, ctx: TxContext) -> None:
        self._local.tx = _MemoryTransaction(ctx, self.TABLES)
        self._local.ctx = ctx

    def commit(self) -> None:
        tx = self._local.tx
        try:
            with self._lock:
                self._check_unique_on_commit(tx)
                self._check_references_on_commit(tx)
                for table, rows in tx.pending.items():
                    for key, row in rows.items():
                        if row is None:
                            self._data[table].pop(key, None)
                        else:
                            self._data[table][key] = row
        finally:
            self._end(tx)

    def rollback(self) -> None:
        tx = getattr(self._local, "tx", None)
        if tx is not None:
            self._end(tx)

    def _end(self, tx: _MemoryTransaction) -> None:
        for lock in tx.held_locks.values():
            lock.release()
        tx.held_locks.clear()
        self._local.tx = None
        self._local.ctx = None

    def _row_lock(self, account_id: int) -> threading.Lock:
        with self._lock:
            if account_id not in self._row_locks:
                self._row_locks[account_id] = threading.Lock()
            return self._row_locks[account_id]

    def _lock_account_row(self, tx: _MemoryTransaction, account_id: int) -> None:
        if account_id in tx.held_locks:
            return
        lock = self._row_lock(account_id)
        _acquire(lock, tx.ctx, self.lock_timeout, f"account {account_id}")
        tx.held_locks[account_id] = lock

    # Row access

    def _read(self, table: str, key: Any) -> Optional[Dict[str, Any]]:
        tx = self._tx()
        if tx is not None and key in tx.pending[table]:
            row = tx.pending[table][key]
            return dict(row) if row is not None else None
        with self._lock:
            row = self._data[table].get(key)
            return dict(row) if row is not None else None

    def _write(self, table: str, key: Any, row: Optional[Dict[str, Any]]) -> None:
        tx = self._tx()
        if tx is not None:
            tx.pending[table][key] = row
            return
        with self._lock:
            if row is None:
                self._data[table].pop(key, None)
            else:
                self._data[table][key] = row

    def _scan(self, table: str) -> List[Dict[str, Any]]:
        """All rows visible to the caller, ordered by key"""
        with self._lock:
            rows = {key: dict(row) for key, row in self._data[table].items()}
        tx = self._tx()
        if tx is not None:
            for key, row in tx.pending[table].items():
                if row is None:
                    rows.pop(key, None)
                else:
                    rows[key] = dict(row)
        return [rows[key] for key in sorted(rows)]

    def _next_id(self, table: str) -> int:
        with self._lock:
            return next(self._sequences[table])

    def _require_account(self, account_id: int) -> None:
        if self._read("accounts", account_id) is None:
            raise ForeignKeyViolation(f"account {account_id} does not exist")

    def _check_unique(self, table: str, row: Dict[str, Any], rows: List[Dict[str, Any]]) -> None:
        if table == "accounts":
            for other in rows:
                if other["id"] != row["id"] and (other["owner"], other["currency"]) == (row["owner"], row["currency"]):
                    raise UniqueViolation(
                        f"owner {row['owner']} already has a {row['currency']} account"
                    )
        elif table == "users":
            for other in rows:
                if other["username"] == row["username"]:
                    raise UniqueViolation(f"username {row['username']} already exists")
                if other["email"] == row["email"]:
                    raise UniqueViolation(f"email {row['email']} already exists")

    def _check_unique_on_commit(self, tx: _MemoryTransaction) -> None:
        """Recheck unique keys against rows committed by other transactions"""
        for table in ("users", "accounts"):
            committed = list(self._data[table].values())
            for row in tx.pending[table].values():
                if row is not None:
                    self._check_unique(table, row, [r for r in committed if r is not row])

    def _check_references_on_commit(self, tx: _MemoryTransaction) -> None:
        """Buffered entries and transfers must reference accounts that still exist"""
        accounts = set(self._data["accounts"])
        for key, row in tx.pending["accounts"].items():
            if row is None:
                accounts.discard(key)
            else:
                accounts.add(key)

        for row in tx.pending["entries"].values():
            if row is not None and row["account_id"] not in accounts:
                raise ForeignKeyViolation(f"account {row['account_id']} does not exist")
        for row in tx.pending["transfers"].values():
            if row is None:
                continue
            for account_id in (row["from_account_id"], row["to_account_id"]):
                if account_id not in accounts:
                    raise ForeignKeyViolation(f"account {account_id} does not exist")

    # Accounts

    def create_account(self, owner: str, balance: int, currency: Currency) -> Account:
        if self._read("users", owner) is None:
            raise ForeignKeyViolation(f"user {owner} does not exist")
        row = {
            "id": self._next_id("accounts"),
            "owner": owner,
            "balance": balance,
            "currency": Currency.from_code(currency).code,
            "created_at": _utcnow(),
        }
        self._check_unique("accounts", row, self._scan("accounts"))
        self._write("accounts", row["id"], row)
        return Account.from_row(row)

    def get_account(self, account_id: int, for_update: bool = False) -> Account:
        row = self._read("accounts", account_id)
        if row is None:
            raise NotFoundError("account", account_id)
        tx = self._tx()
        if for_update and tx is not None:
            self._lock_account_row(tx, account_id)
            # Re-read: the previous lock holder may have committed a change
            row = self._read("accounts", account_id)
            if row is None:
                raise NotFoundError("account", account_id)
        return Account.from_row(row)

    def list_accounts(self, owner: str, limit: int, offset: int) -> List[Account]:
        rows = [r for r in self._scan("accounts") if r["owner"] == owner]
        return [Account.from_row(r) for r in rows[offset:offset + limit]]

    def _change_balance(self, account_id: int, change) -> Account:
        if self._read("accounts", account_id) is None:
            raise NotFoundError("account", account_id)
        tx = self._tx()
        if tx is not None:
            self._lock_account_row(tx, account_id)
            row = self._read("accounts", account_id)
            if row is None:
                raise NotFoundError("account", account_id)
            row["balance"] = change(row["balance"])
            self._write("accounts", account_id, row)
            return Account.from_row(row)

        lock = self._row_lock(account_id)
        _acquire(lock, TxContext.background(), self.lock_timeout, f"account {account_id}")
        try:
            with self._lock:
                row = self._data["accounts"].get(account_id)
                if row is None:
                    raise NotFoundError("account", account_id)
                row = dict(row, balance=change(row["balance"]))
                self._data["accounts"][account_id] = row
            return Account.from_row(row)
        finally:
            lock.release()

    def update_account(self, account_id: int, balance: int) -> Account:
        return self._change_balance(account_id, lambda _: balance)

    def add_account_balance(self, account_id: int, amount: int) -> Account:
        return self._change_balance(account_id, lambda current: current + amount)

    def delete_account(self, account_id: int) -> None:
        if self._read("accounts", account_id) is None:
            raise NotFoundError("account", account_id)
        tx = self._tx()
        if tx is not None:
            self._lock_account_row(tx, account_id)
            self._delete_unreferenced_account(account_id)
            return

        # Waits for transactions holding the row, as a DELETE would
        lock = self._row_lock(account_id)
        _acquire(lock, TxContext.background(), self.lock_timeout, f"account {account_id}")
        try:
            self._delete_unreferenced_account(account_id)
        finally:
            lock.release()

    def _delete_unreferenced_account(self, account_id: int) -> None:
        if self._read("accounts", account_id) is None:
            raise NotFoundError("account", account_id)
        if any(e["account_id"] == account_id for e in self._scan("entries")):
            raise ForeignKeyViolation(f"account {account_id} is referenced by entries")
        if any(account_id in (t["from_account_id"], t["to_account_id"]) for t in self._scan("transfers")):
            raise ForeignKeyViolation(f"account {account_id} is referenced by transfers")
        self._write("accounts", account_id, None)

    # Entries

    def create_entry(self, account_id: int, amount: int) -> Entry:
        self._require_account(account_id)
        row = {
            "id": self._next_id("entries"),
            "account_id": account_id,
            "amount": amount,
            "created_at": _utcnow(),
        }
        self._write("entries", row["id"], row)
        return Entry.from_row(row)

    def get_entry(self, entry_id: int) -> Entry:
        row = self._read("entries", entry_id)
        if row is None:
            raise NotFoundError("entry", entry_id)
        return Entry.from_row(row)

    def list_entries(self, account_id: int, limit: int, offset: int) -> List[Entry]:
        rows = [r for r in self._scan("entries") if r["account_id"] == account_id]
        return [Entry.from_row(r) for r in rows[offset:offset + limit]]

    # Transfers

    def create_transfer(self, from_account_id: int, to_account_id: int, amount: int) -> Transfer:
        self._require_account(from_account_id)
        self._require_account(to_account_id)
        row = {
            "id": self._next_id("transfers"),
            "from_account_id": from_account_id,
            "to_account_id": to_account_id,
            "amount": amount,
            "created_at": _utcnow(),
        }
        self._write("transfers", row["id"], row)
        return Transfer.from_row(row)

    def get_transfer(self, transfer_id: int) -> Transfer:
        row = self._read("transfers", transfer_id)
        if row is None:
            raise NotFoundError("transfer", transfer_id)
        return Transfer.from_row(row)

    def list_transfers(self, from_account_id: int, to_account_id: int,
                       limit: int, offset: int) -> List[Transfer]:
        rows = [
            r for r in self._scan("transfers")
            if r["from_account_id"] == from_account_id or r["to_account_id"] == to_account_id
        ]
        return [Transfer.from_row(r) for r in rows[offset:offset + limit]]

    # Users

    def create_user(self, username: str, hashed_password: str,
                    full_name: str, email: str) -> User:
        row = {
            "username": username,
            "hashed_password": hashed_password,
            "full_name": full_name,
            "email": email,
            "password_changed_at": ZERO_TIME,
            "created_at": _utcnow(),
        }
        self._check_unique("users", row, self._scan("users"))
        self._write("users", username, row)
        return User.from_row(row)

    def get_user(self, username: str) -> User:
        row = self._read("users", username)
        if row is None:
            raise NotFoundError("user", username)
        return User.from_row(row)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


ACCOUNT_COLUMNS = "id, owner, balance, currency, created_at"
ENTRY_COLUMNS = "id, account_id, amount, created_at"
TRANSFER_COLUMNS = "id, from_account_id, to_account_id, amount, created_at"
USER_COLUMNS = "username, hashed_password, full_name, email, password_changed_at, created_at"


class SQLStorage(StorageInterface):
    """
    Shared query layer for relational backends.

    Queries are written with %s placeholders; backends adapt them to their
    driver and supply the row-lock clause for locked reads.
    """

    dialect = ""
    for_update_clause = ""

    CREATE_ACCOUNT = f"""
        INSERT INTO accounts (owner, balance, currency, created_at)
        VALUES (%s, %s, %s, %s)
        RETURNING {ACCOUNT_COLUMNS}
    """
    GET_ACCOUNT = f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = %s LIMIT 1"
    LIST_ACCOUNTS = f"""
        SELECT {ACCOUNT_COLUMNS} FROM accounts
        WHERE owner = %s
        ORDER BY id
        LIMIT %s OFFSET %s
    """
    UPDATE_ACCOUNT = f"UPDATE accounts SET balance = %s WHERE id = %s RETURNING {ACCOUNT_COLUMNS}"
    ADD_ACCOUNT_BALANCE = f"UPDATE accounts SET balance = balance + %s WHERE id = %s RETURNING {ACCOUNT_COLUMNS}"
    DELETE_ACCOUNT = "DELETE FROM accounts WHERE id = %s RETURNING id"

    CREATE_ENTRY = f"""
        INSERT INTO entries (account_id, amount, created_at)
        VALUES (%s, %s, %s)
        RETURNING {ENTRY_COLUMNS}
    """
    GET_ENTRY = f"SELECT {ENTRY_COLUMNS} FROM entries WHERE id = %s LIMIT 1"
    LIST_ENTRIES = f"""
        SELECT {ENTRY_COLUMNS} FROM entries
        WHERE account_id = %s
        ORDER BY id
        LIMIT %s OFFSET %s
    """

    CREATE_TRANSFER = f"""
        INSERT INTO transfers (from_account_id, to_account_id, amount, created_at)
        VALUES (%s, %s, %s, %s)
        RETURNING {TRANSFER_COLUMNS}
    """
    GET_TRANSFER = f"SELECT {TRANSFER_COLUMNS} FROM transfers WHERE id = %s LIMIT 1"
    LIST_TRANSFERS = f"""
        SELECT {TRANSFER_COLUMNS} FROM transfers
        WHERE from_account_id = %s OR to_account_id = %s
        ORDER BY id
        LIMIT %s OFFSET %s
    """

    CREATE_USER = f"""
        INSERT INTO users (username, hashed_password, full_name, email, password_changed_at, created_at)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING {USER_COLUMNS}
    """
    GET_USER = f"SELECT {USER_COLUMNS} FROM users WHERE username = %s LIMIT 1"

    @abstractmethod
    def execute(self, sql: str, params: Sequence[Any] = ()) -> List[Any]:
        """Run one statement and return its rows (empty for no result set)"""
        pass

    def _timestamp(self, value: datetime) -> Any:
        """Adapt a timestamp parameter for the driver"""
        return value

    def _one(self, sql: str, params: Sequence[Any], resource: str, key: Any):
        rows = self.execute(sql, params)
        if not rows:
            raise NotFoundError(resource, key)
        return rows[0]

    # Accounts

    def create_account(self, owner: str, balance: int, currency: Currency) -> Account:
        currency = Currency.from_code(currency)
        row = self._one(self.CREATE_ACCOUNT, (owner, balance, currency.code, self._timestamp(_utcnow())),
                        "account", owner)
        return Account.from_row(row)

    def get_account(self, account_id: int, for_update: bool = False) -> Account:
        sql = self.GET_ACCOUNT
        if for_update and self.for_update_clause:
            sql = f"{sql} {self.for_update_clause}"
        return Account.from_row(self._one(sql, (account_id,), "account", account_id))

    def list_accounts(self, owner: str, limit: int, offset: int) -> List[Account]:
        return [Account.from_row(r) for r in self.execute(self.LIST_ACCOUNTS, (owner, limit, offset))]

    def update_account(self, account_id: int, balance: int) -> Account:
        return Account.from_row(self._one(self.UPDATE_ACCOUNT, (balance, account_id), "account", account_id))

    def add_account_balance(self, account_id: int, amount: int) -> Account:
        return Account.from_row(self._one(self.ADD_ACCOUNT_BALANCE, (amount, account_id), "account", account_id))

    def delete_account(self, account_id: int) -> None:
        self._one(self.DELETE_ACCOUNT, (account_id,), "account", account_id)

    # Entries

    def create_entry(self, account_id: int, amount: int) -> Entry:
        row = self._one(self.CREATE_ENTRY, (account_id, amount, self._timestamp(_utcnow())),
                        "account", account_id)
        return Entry.from_row(row)

    def get_entry(self, entry_id: int) -> Entry:
        return Entry.from_row(self._one(self.GET_ENTRY, (entry_id,), "entry", entry_id))

    def list_entries(self, account_id: int, limit: int, offset: int) -> List[Entry]:
        return [Entry.from_row(r) for r in self.execute(self.LIST_ENTRIES, (account_id, limit, offset))]

    # Transfers

    def create_transfer(self, from_account_id: int, to_account_id: int, amount: int) -> Transfer:
        params = (from_account_id, to_account_id, amount, self._timestamp(_utcnow()))
        return Transfer.from_row(self._one(self.CREATE_TRANSFER, params, "account", from_account_id))

    def get_transfer(self, transfer_id: int) -> Transfer:
        return Transfer.from_row(self._one(self.GET_TRANSFER, (transfer_id,), "transfer", transfer_id))

    def list_transfers(self, from_account_id: int, to_account_id: int,
                       limit: int, offset: int) -> List[Transfer]:
        rows = self.execute(self.LIST_TRANSFERS, (from_account_id, to_account_id, limit, offset))
        return [Transfer.from_row(r) for r in rows]

    # Users

    def create_user(self, username: str, hashed_password: str,
                    full_name: str, email: str) -> User:
        params = (username, hashed_password, full_name, email,
                  self._timestamp(ZERO_TIME), self._timestamp(_utcnow()))
        return User.from_row(self._one(self.CREATE_USER, params, "user", username))

    def get_user(self, username: str) -> User:
        return User.from_row(self._one(self.GET_USER, (username,), "user", username))


class SQLiteStorage(SQLStorage):
    """
    SQLite storage implementation for persistence.

    SQLite has a single writer, so one shared connection is guarded by an
    RLock that atomic() holds from BEGIN IMMEDIATE until commit or rollback.
    Holding it is what serializes locked reads of account rows.
    """

    dialect = "sqlite"

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: float = 5.0):
        super().__init__(lock_timeout)
        self.db_path = str(db_path)
        # isolation_level=None: autocommit, transactions are opened explicitly
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=lock_timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        with self._lock:
            self._connection.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @staticmethod
    def _translate(exc: sqlite3.Error) -> TransactionFailure:
        message = str(exc)
        if isinstance(exc, sqlite3.IntegrityError):
            if "FOREIGN KEY" in message:
                return ForeignKeyViolation(message)
            if "UNIQUE" in message:
                return UniqueViolation(message)
            return ConstraintViolation(message)
        if isinstance(exc, sqlite3.OperationalError) and "locked" in message:
            return LockTimeout(message)
        return TransactionFailure(message)

    def _timestamp(self, value: datetime) -> Any:
        return value.isoformat()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> List[Any]:
        sql = sql.replace("%s", "?")
        ctx = self.current_context()
        if ctx is not None:
            ctx.check()
            return self._execute(sql, params)

        _acquire(self._lock, TxContext.background(), self.lock_timeout, "database")
        try:
            return self._execute(sql, params)
        finally:
            self._lock.release()

    def _execute(self, sql: str, params: Sequence[Any]) -> List[Any]:
        try:
            cursor = self._connection.execute(sql, tuple(params))
            try:
                return cursor.fetchall()
            finally:
                cursor.close()
        except sqlite3.Error as e:
            raise self._translate(e) from e

    def begin_transaction(self, ctx: TxContext) -> None:
        _acquire(self._lock, ctx, self.lock_timeout, "database")
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            self._lock.release()
            raise self._translate(e) from e
        self._local.ctx = ctx

    def commit(self) -> None:
        try:
            self._connection.execute("COMMIT")
        except sqlite3.Error as e:
            self._connection.rollback()
            raise self._translate(e) from e
        finally:
            self._local.ctx = None
            self._lock.release()

    def rollback(self) -> None:
        if self.current_context() is None:
            return
        try:
            if self._connection.in_transaction:
                self._connection.execute("ROLLBACK")
        finally:
            self._local.ctx = None
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


# PostgreSQL SQLSTATE codes mapped onto the error taxonomy
_PG_FOREIGN_KEY_VIOLATION = "23503"
_PG_UNIQUE_VIOLATION = "23505"
_PG_LOCK_NOT_AVAILABLE = "55P03"
_PG_QUERY_CANCELED = "57014"


class PostgreSQLStorage(SQLStorage):
    """PostgreSQL storage backend with ACID transaction support"""

    dialect = "postgresql"
    # NO KEY UPDATE does not block inserts of rows referencing the account
    for_update_clause = "FOR NO KEY UPDATE"

    def __init__(self, connection_string: str, min_connections: int = 1,
                 max_connections: int = 10, lock_timeout: float = 5.0):
        super().__init__(lock_timeout)
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            min_connections, max_connections, connection_string,
            cursor_factory=psycopg2.extras.RealDictCursor
        )
        # The pool raises when exhausted; callers wait for a slot instead
        self._slots = threading.BoundedSemaphore(max_connections)

    def _getconn(self, ctx: TxContext):
        _acquire(self._slots, ctx, self.lock_timeout, "database connection")
        try:
            return self._pool.getconn()
        except BaseException:
            self._slots.release()
            raise

    def _putconn(self, connection) -> None:
        try:
            self._pool.putconn(connection)
        finally:
            self._slots.release()

    def _translate(self, exc: Exception) -> TransactionFailure:
        code = getattr(exc, "pgcode", None)
        message = str(exc).strip()
        if code == _PG_FOREIGN_KEY_VIOLATION:
            return ForeignKeyViolation(message)
        if code == _PG_UNIQUE_VIOLATION:
            return UniqueViolation(message)
        if code and code.startswith("23"):
            return ConstraintViolation(message)
        if code == _PG_LOCK_NOT_AVAILABLE:
            return LockTimeout(message)
        if code == _PG_QUERY_CANCELED:
            return TransactionCancelled(message)
        return TransactionFailure(message)

    def _execute(self, connection, sql: str, params: Sequence[Any]) -> List[Any]:
        try:
            with connection.cursor() as cursor:
                cursor.execute(sql, tuple(params))
                if cursor.description is None:
                    return []
                return cursor.fetchall()
        except self.psycopg2.Error as e:
            raise self._translate(e) from e

    def execute(self, sql: str, params: Sequence[Any] = ()) -> List[Any]:
        ctx = self.current_context()
        if ctx is not None:
            ctx.check()
            return self._execute(self._local.connection, sql, params)

        connection = self._getconn(TxContext.background())
        try:
            rows = self._execute(connection, sql, params)
            connection.commit()
            return rows
        except BaseException:
            connection.rollback()
            raise
        finally:
            self._putconn(connection)

    def begin_transaction(self, ctx: TxContext) -> None:
        connection = self._getconn(ctx)
        try:
            # psycopg2 opens the transaction implicitly on the first statement
            lock_ms = int(ctx.bound_timeout(self.lock_timeout) * 1000)
            self._execute(connection, "SELECT set_config('lock_timeout', %s, true)", (f"{max(lock_ms, 1)}ms",))
            remaining = ctx.remaining()
            if remaining is not None:
                statement_ms = max(int(remaining * 1000), 1)
                self._execute(connection, "SELECT set_config('statement_timeout', %s, true)", (f"{statement_ms}ms",))
        except BaseException:
            connection.rollback()
            self._putconn(connection)
            raise
        self._local.connection = connection
        self._local.ctx = ctx

    def _release(self) -> None:
        connection = self._local.connection
        self._local.connection = None
        self._local.ctx = None
        self._putconn(connection)

    def commit(self) -> None:
        try:
            self._local.connection.commit()
        except self.psycopg2.Error as e:
            self._local.connection.rollback()
            raise self._translate(e) from e
        finally:
            self._release()

    def rollback(self) -> None:
        if getattr(self._local, "connection", None) is None:
            return
        try:
            self._local.connection.rollback()
        finally:
            self._release()

    def close(self) -> None:
        """Close all pooled PostgreSQL connections"""
        if self._pool:
            self._pool.closeall()
            self._pool = None


def create_storage(database_url: str, lock_timeout: float = 5.0,
                   min_connections: int = 1, max_connections: int = 10) -> StorageInterface:
    """
    Create a storage backend from a database URL.

    Supported forms: memory://, sqlite://, sqlite:///:memory:,
    sqlite:///relative/path.db, sqlite:////absolute/path.db,
    postgresql://... and postgres://...
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)

    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", lock_timeout=lock_timeout)

    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(
            database_url, min_connections=min_connections,
            max_connections=max_connections, lock_timeout=lock_timeout
        )

    raise ValueError(f"Unsupported database URL: {database_url}")
