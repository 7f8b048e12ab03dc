"""
Test suite for the ledger service

Tests request validation, ownership checks, pagination and the
configuration-driven construction of the service.
"""

import threading

import pytest

from simplebank.config import LedgerConfig
from simplebank.context import TxContext
from simplebank.currency import Currency
from simplebank.errors import (
    ErrorKind, NotFoundError, PermissionDenied, TransactionCancelled,
    UniqueViolation, ValidationFailure
)
from simplebank.migrations import MigrationManager
from simplebank.service import LedgerService
from simplebank.storage import InMemoryStorage, SQLiteStorage

from tests.factories import create_random_account


class TestLedgerService:
    """Test ledger operations through the service"""

    @pytest.fixture(autouse=True)
    def setup(self, storage, data):
        self.storage = storage
        self.data = data
        self.service = LedgerService(storage, LedgerConfig(page_size_min=5, page_size_max=10))

    def _user(self):
        return self.service.create_user(
            username=self.data.owner(),
            hashed_password=self.data.string(32),
            full_name="Jane Doe",
            email=self.data.email(),
        )

    def _funded(self, owner, balance, currency=Currency.USD):
        account = self.service.create_account(owner, currency.code)
        return self.storage.update_account(account.id, balance)

    # Users

    def test_create_user(self):
        """Test creating and reading back a user"""
        user = self._user()

        assert self.service.get_user(user.username) == user

    @pytest.mark.parametrize("field,value", [
        ("username", "not valid!"),
        ("username", ""),
        ("hashed_password", ""),
        ("full_name", "   "),
        ("email", "not-an-email"),
    ])
    def test_create_user_validation(self, field, value):
        """Test invalid user fields are rejected before storage"""
        kwargs = {
            "username": self.data.owner(),
            "hashed_password": "hashed",
            "full_name": "Jane Doe",
            "email": self.data.email(),
        }
        kwargs[field] = value

        with pytest.raises(ValidationFailure) as exc_info:
            self.service.create_user(**kwargs)
        assert exc_info.value.kind == ErrorKind.VALIDATION

    def test_duplicate_user(self):
        """Test a duplicate username surfaces as a unique violation"""
        user = self._user()

        with pytest.raises(UniqueViolation):
            self.service.create_user(user.username, "hashed", "Jane Doe", self.data.email())

    # Accounts

    def test_create_account(self):
        """Test new accounts start empty"""
        user = self._user()

        account = self.service.create_account(user.username, "eur")

        assert account.owner == user.username
        assert account.balance == 0
        assert account.currency == Currency.EUR

    def test_create_account_unsupported_currency(self):
        """Test unsupported currencies are rejected"""
        user = self._user()

        with pytest.raises(ValidationFailure):
            self.service.create_account(user.username, "JPY")

    def test_get_account_ownership(self):
        """Test only the owner can read an account"""
        user = self._user()
        account = self.service.create_account(user.username, "USD")

        assert self.service.get_account(account.id, owner=user.username) == account
        with pytest.raises(PermissionDenied) as exc_info:
            self.service.get_account(account.id, owner="someoneelse")
        assert exc_info.value.kind == ErrorKind.PERMISSION_DENIED

    def test_list_accounts(self):
        """Test listing returns only the owner's accounts"""
        user = self._user()
        for currency in Currency:
            self.service.create_account(user.username, currency.code)
        self._user()

        accounts = self.service.list_accounts(user.username, page_id=1, page_size=5)

        assert len(accounts) == len(Currency)
        assert {a.owner for a in accounts} == {user.username}

    @pytest.mark.parametrize("page_id,page_size", [(0, 5), (1, 4), (1, 11)])
    def test_pagination_bounds(self, page_id, page_size):
        """Test page_id and page_size bounds"""
        with pytest.raises(ValidationFailure):
            self.service.list_accounts("someone", page_id=page_id, page_size=page_size)

    def test_list_entries_pages(self):
        """Test entries are paged by page_id and page_size"""
        user = self._user()
        account = self.service.create_account(user.username, "USD")
        for _ in range(7):
            self.storage.create_entry(account.id, self.data.money())

        first = self.service.list_entries(account.id, page_id=1, page_size=5, owner=user.username)
        second = self.service.list_entries(account.id, page_id=2, page_size=5, owner=user.username)

        assert len(first) == 5
        assert len(second) == 2
        assert not {e.id for e in first} & {e.id for e in second}

    def test_list_entries_requires_ownership(self):
        """Test entries of another user's account are not listed"""
        user = self._user()
        account = self.service.create_account(user.username, "USD")

        with pytest.raises(PermissionDenied):
            self.service.list_entries(account.id, 1, 5, owner="someoneelse")

    # Transfers

    def test_transfer(self):
        """Test a valid transfer between two users"""
        alice, bob = self._user(), self._user()
        source = self._funded(alice.username, 100)
        destination = self._funded(bob.username, 50)

        result = self.service.transfer(source.id, destination.id, 30, "USD", owner=alice.username)

        assert result.from_account.balance == 70
        assert result.to_account.balance == 80

        transfer = self.service.get_transfer(result.transfer.id, owner=bob.username)
        assert transfer == result.transfer
        entry = self.service.get_entry(result.from_entry.id, owner=alice.username)
        assert entry.amount == -30

        sent = self.service.list_transfers(source.id, 1, 5, owner=alice.username)
        received = self.service.list_transfers(destination.id, 1, 5, owner=bob.username)
        assert [t.id for t in sent] == [t.id for t in received] == [result.transfer.id]

    @pytest.mark.parametrize("amount", [0, -10, True, 10.5, "10"])
    def test_transfer_invalid_amount(self, amount):
        """Test non-positive and non-integer amounts are rejected"""
        user = self._user()
        source = self._funded(user.username, 100)
        destination = self._funded(self._user().username, 0)

        with pytest.raises(ValidationFailure):
            self.service.transfer(source.id, destination.id, amount, "USD")

    def test_transfer_to_same_account(self):
        """Test transfers to the source account are rejected"""
        account = self._funded(self._user().username, 100)

        with pytest.raises(ValidationFailure):
            self.service.transfer(account.id, account.id, 10, "USD")

    def test_transfer_currency_mismatch(self):
        """Test both accounts must hold the requested currency"""
        source = self._funded(self._user().username, 100, Currency.USD)
        destination = self._funded(self._user().username, 0, Currency.EUR)

        with pytest.raises(ValidationFailure, match="currency mismatch"):
            self.service.transfer(source.id, destination.id, 10, "USD")
        with pytest.raises(ValidationFailure):
            self.service.transfer(source.id, destination.id, 10, "XYZ")

        assert self.storage.get_account(source.id).balance == 100

    def test_transfer_missing_account(self):
        """Test unknown accounts are reported as not found"""
        source = self._funded(self._user().username, 100)

        with pytest.raises(NotFoundError):
            self.service.transfer(source.id, 987654321, 10, "USD")

    def test_transfer_requires_source_ownership(self):
        """Test only the source account owner can send money"""
        alice, bob = self._user(), self._user()
        source = self._funded(alice.username, 100)
        destination = self._funded(bob.username, 0)

        with pytest.raises(PermissionDenied):
            self.service.transfer(source.id, destination.id, 10, "USD", owner=bob.username)

        assert self.storage.get_account(source.id).balance == 100

    def test_transfer_insufficient_funds(self):
        """Test the source balance must cover the amount"""
        source = self._funded(self._user().username, 20)
        destination = self._funded(self._user().username, 0)

        with pytest.raises(ValidationFailure, match="insufficient funds"):
            self.service.transfer(source.id, destination.id, 30, "USD")

    def test_concurrent_transfers_never_overdraw(self, monkeypatch):
        """Test concurrent transfers that all pass the early funds check cannot overdraw"""
        source = self._funded(self._user().username, 100)
        destination = self._funded(self._user().username, 0)
        n = 4
        barrier = threading.Barrier(n, timeout=10)
        transfer_tx = self.service.transfer_processor.transfer_tx

        def transfer_after_all_checked(*args, **kwargs):
            # Every thread has read the unlocked balance before any transfer runs
            barrier.wait()
            return transfer_tx(*args, **kwargs)

        monkeypatch.setattr(self.service.transfer_processor, "transfer_tx", transfer_after_all_checked)

        results, errors = [], []
        lock = threading.Lock()

        def worker():
            try:
                result = self.service.transfer(source.id, destination.id, 60, "USD")
            except Exception as e:
                with lock:
                    errors.append(e)
            else:
                with lock:
                    results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(n)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(results) == 1
        assert len(errors) == n - 1
        assert all(isinstance(e, ValidationFailure) for e in errors)
        assert self.storage.get_account(source.id).balance == 40
        assert self.storage.get_account(destination.id).balance == 60
        assert len(self.storage.list_entries(source.id, 10, 0)) == 1

    def test_transfer_overdraft_allowed(self):
        """Test the funds check can be disabled"""
        service = LedgerService(self.storage, LedgerConfig(allow_overdraft=True))
        source = self._funded(self._user().username, 20)
        destination = self._funded(self._user().username, 0)

        result = service.transfer(source.id, destination.id, 30, "USD")

        assert result.from_account.balance == -10

    def test_transfer_with_cancelled_context(self):
        """Test the caller's context reaches the transaction"""
        source = self._funded(self._user().username, 100)
        destination = self._funded(self._user().username, 0)
        ctx = TxContext()
        ctx.cancel()

        with pytest.raises(TransactionCancelled):
            self.service.transfer(source.id, destination.id, 10, "USD", ctx=ctx)

        assert self.storage.get_account(source.id).balance == 100

    def test_get_transfer_requires_participation(self):
        """Test only the sender or receiver can read a transfer"""
        source = self._funded(self._user().username, 100)
        destination = self._funded(self._user().username, 0)
        result = self.service.transfer(source.id, destination.id, 10, "USD")

        with pytest.raises(PermissionDenied):
            self.service.get_transfer(result.transfer.id, owner="someoneelse")


class TestLedgerServiceFromConfig:
    """Test building the service from configuration"""

    def test_memory_backend(self):
        service = LedgerService.from_config(LedgerConfig(database_url="memory://"))

        assert isinstance(service.storage, InMemoryStorage)
        service.close()

    def test_sqlite_backend_is_migrated(self, tmp_path):
        """Test SQL backends are migrated to the latest schema on startup"""
        url = f"sqlite:///{tmp_path / 'ledger.db'}"
        service = LedgerService.from_config(LedgerConfig(database_url=url, lock_timeout_seconds=2.0))

        try:
            assert isinstance(service.storage, SQLiteStorage)
            assert service.storage.lock_timeout == 2.0
            status = MigrationManager(service.storage).get_migration_status()
            assert status["needs_migration"] is False

            user = service.create_user("alice", "hashed", "Alice Doe", "alice@email.com")
            assert service.create_account(user.username, "USD").balance == 0
        finally:
            service.close()

    def test_auto_migrate_disabled(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'ledger.db'}"
        service = LedgerService.from_config(LedgerConfig(database_url=url, auto_migrate=False))

        try:
            assert MigrationManager(service.storage).get_current_version() == 0
        finally:
            service.close()

    def test_transfer_timeout_from_config(self, data):
        """Test the configured timeout bounds transfers without a caller context"""
        config = LedgerConfig(database_url="memory://", transfer_timeout_seconds=0)
        service = LedgerService.from_config(config)
        source = create_random_account(service.storage, data, balance=100, currency=Currency.USD)
        destination = create_random_account(service.storage, data, balance=0, currency=Currency.USD)

        with pytest.raises(TransactionCancelled):
            service.transfer(source.id, destination.id, 10, "USD")
