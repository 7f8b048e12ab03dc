"""
Ledger Service Module

The boundary an API layer calls: request validation, ownership checks and
pagination in front of the storage accessors and the transfer processor.
"""

import re
from typing import List, Optional

from .config import LedgerConfig, get_config
from .context import TxContext
from .currency import Currency
from .errors import ValidationFailure, PermissionDenied
from .logging_config import get_logger, log_action
from .migrations import MigrationManager
from .models import Account, Entry, Transfer, User
from .storage import StorageInterface, SQLStorage, create_storage
from .transfers import TransferProcessor, TransferTxParams, TransferTxResult


USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9]+$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class LedgerService:
    """Ledger operations with the checks the transfer core leaves to its caller"""

    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None):
        self.storage = storage
        self.config = config or get_config()
        self.transfer_processor = TransferProcessor(storage)
        self.logger = get_logger("simplebank.service")

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> "LedgerService":
        """Build storage from configuration, migrating SQL schemas if enabled"""
        config = config or get_config()
        storage = create_storage(
            config.database_url,
            lock_timeout=config.lock_timeout_seconds,
            min_connections=config.database_pool_min,
            max_connections=config.database_pool_size,
        )
        if config.auto_migrate and isinstance(storage, SQLStorage):
            MigrationManager(storage).migrate_up()
        return cls(storage, config)

    def close(self) -> None:
        self.storage.close()

    # Helpers

    def _offset(self, page_id: int, page_size: int) -> int:
        if page_id < 1:
            raise ValidationFailure("page_id must be at least 1")
        if not self.config.page_size_min <= page_size <= self.config.page_size_max:
            raise ValidationFailure(
                f"page_size must be between {self.config.page_size_min} and {self.config.page_size_max}"
            )
        return (page_id - 1) * page_size

    @staticmethod
    def _check_owner(account: Account, owner: Optional[str]) -> None:
        if owner is not None and account.owner != owner:
            raise PermissionDenied(f"account {account.id} doesn't belong to the authenticated user")

    # Users

    def create_user(self, username: str, hashed_password: str,
                    full_name: str, email: str) -> User:
        """Create a user; the password must already be hashed"""
        if not USERNAME_PATTERN.match(username or ""):
            raise ValidationFailure("username must be alphanumeric")
        if not hashed_password:
            raise ValidationFailure("hashed_password is required")
        if not (full_name or "").strip():
            raise ValidationFailure("full_name is required")
        if not EMAIL_PATTERN.match(email or ""):
            raise ValidationFailure(f"invalid email: {email}")

        user = self.storage.create_user(username, hashed_password, full_name, email)
        log_action(self.logger, "info", "User created",
                   action="create_user", resource=f"user:{username}")
        return user

    def get_user(self, username: str) -> User:
        return self.storage.get_user(username)

    # Accounts

    def create_account(self, owner: str, currency: str) -> Account:
        """Open an empty account in a supported currency"""
        try:
            currency = Currency.from_code(currency)
        except ValueError as e:
            raise ValidationFailure(str(e)) from e

        account = self.storage.create_account(owner, 0, currency)
        log_action(self.logger, "info", "Account created",
                   action="create_account", resource=f"account:{account.id}",
                   extra={"owner": owner, "currency": currency.code})
        return account

    def get_account(self, account_id: int, owner: Optional[str] = None) -> Account:
        account = self.storage.get_account(account_id)
        self._check_owner(account, owner)
        return account

    def list_accounts(self, owner: str, page_id: int, page_size: int) -> List[Account]:
        offset = self._offset(page_id, page_size)
        return self.storage.list_accounts(owner, page_size, offset)

    # Entries

    def get_entry(self, entry_id: int, owner: Optional[str] = None) -> Entry:
        entry = self.storage.get_entry(entry_id)
        if owner is not None:
            self._check_owner(self.storage.get_account(entry.account_id), owner)
        return entry

    def list_entries(self, account_id: int, page_id: int, page_size: int,
                     owner: Optional[str] = None) -> List[Entry]:
        offset = self._offset(page_id, page_size)
        self.get_account(account_id, owner)
        return self.storage.list_entries(account_id, page_size, offset)

    # Transfers

    def get_transfer(self, transfer_id: int, owner: Optional[str] = None) -> Transfer:
        transfer = self.storage.get_transfer(transfer_id)
        if owner is not None:
            from_account = self.storage.get_account(transfer.from_account_id)
            to_account = self.storage.get_account(transfer.to_account_id)
            if owner not in (from_account.owner, to_account.owner):
                raise PermissionDenied(f"transfer {transfer_id} doesn't involve the authenticated user")
        return transfer

    def list_transfers(self, account_id: int, page_id: int, page_size: int,
                       owner: Optional[str] = None) -> List[Transfer]:
        """Transfers the account sent or received"""
        offset = self._offset(page_id, page_size)
        self.get_account(account_id, owner)
        return self.storage.list_transfers(account_id, account_id, page_size, offset)

    def transfer(self, from_account_id: int, to_account_id: int, amount: int,
                 currency: str, owner: Optional[str] = None,
                 ctx: Optional[TxContext] = None) -> TransferTxResult:
        """
        Validate a transfer request and execute it

        Args:
            from_account_id: Account debited
            to_account_id: Account credited
            amount: Positive amount in minor units
            currency: Currency both accounts must hold
            owner: Authenticated user, must own the source account
            ctx: Cancellation/deadline; derived from configuration if omitted

        Returns:
            TransferTxResult from the transfer processor
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationFailure("amount must be a positive integer")
        if from_account_id == to_account_id:
            raise ValidationFailure("cannot transfer to the same account")
        try:
            currency = Currency.from_code(currency)
        except ValueError as e:
            raise ValidationFailure(str(e)) from e

        from_account = self._valid_account(from_account_id, currency)
        self._valid_account(to_account_id, currency)
        self._check_owner(from_account, owner)

        # Early rejection; the binding check runs again under the row lock
        require_funds = not self.config.allow_overdraft
        if require_funds and from_account.balance < amount:
            raise ValidationFailure(
                f"insufficient funds in account {from_account_id}: "
                f"balance {from_account.balance}, amount {amount}"
            )

        if ctx is None and self.config.transfer_timeout_seconds is not None:
            ctx = TxContext.with_timeout(self.config.transfer_timeout_seconds)

        return self.transfer_processor.transfer_tx(
            TransferTxParams(from_account_id, to_account_id, amount), ctx,
            require_funds=require_funds,
        )

    def _valid_account(self, account_id: int, currency: Currency) -> Account:
        account = self.storage.get_account(account_id)
        if account.currency != currency:
            raise ValidationFailure(
                f"account [{account_id}] currency mismatch: {account.currency.code} vs {currency.code}"
            )
        return account
