"""
Ledger Records Module

Row types for accounts, entries, transfers and users. Records are plain
dataclasses built from database rows (sqlite3.Row, psycopg2 RealDictRow or
dict) and converted back to dictionaries for logging and serialization.
"""

from dataclasses import dataclass, asdict, fields
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

from .currency import Currency


# Default for users.password_changed_at
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


def _to_datetime(value: Any) -> datetime:
    """Normalize a stored timestamp to an aware UTC datetime"""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class LedgerRecord:
    """Base class for all ledger rows"""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Currency):
                result[key] = value.code
        return result

    @classmethod
    def from_row(cls, row: Mapping[str, Any]):
        """Create instance from a database row"""
        data = {f.name: row[f.name] for f in fields(cls)}
        for key in ("created_at", "password_changed_at"):
            if key in data:
                data[key] = _to_datetime(data[key])
        return cls(**data)


@dataclass
class Account(LedgerRecord):
    id: int
    owner: str
    balance: int
    currency: Currency
    created_at: datetime

    def __post_init__(self):
        self.currency = Currency.from_code(self.currency)


@dataclass
class Entry(LedgerRecord):
    """Signed balance adjustment; positive is a credit, negative a debit"""
    id: int
    account_id: int
    amount: int
    created_at: datetime


@dataclass
class Transfer(LedgerRecord):
    id: int
    from_account_id: int
    to_account_id: int
    amount: int
    created_at: datetime


@dataclass
class User(LedgerRecord):
    username: str
    hashed_password: str
    full_name: str
    email: str
    password_changed_at: datetime
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        # Never expose the password hash
        result.pop("hashed_password", None)
        return result
