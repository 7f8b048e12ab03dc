"""
Transfer Transaction Module

Moves money between two accounts as one all-or-nothing database
transaction: a transfer record, a debit entry, a credit entry and both
balance updates either all become durable or none do.

Balance updates lock the two account rows. Locks are always taken in
ascending account id order, whichever account is the source, so two
transfers running in opposite directions over the same pair of accounts
can never wait on each other in a cycle.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .context import TxContext
from .errors import ValidationFailure, error_kind
from .logging_config import get_logger, log_action
from .models import Account, Entry, Transfer
from .storage import StorageInterface


@dataclass(frozen=True)
class TransferTxParams:
    """Input of a money transfer; amount is in minor units"""
    from_account_id: int
    to_account_id: int
    amount: int


@dataclass
class TransferTxResult:
    """Rows written by a money transfer and both accounts after it"""
    transfer: Transfer
    from_account: Account
    to_account: Account
    from_entry: Entry
    to_entry: Entry

    def to_dict(self) -> Dict:
        return {
            "transfer": self.transfer.to_dict(),
            "from_account": self.from_account.to_dict(),
            "to_account": self.to_account.to_dict(),
            "from_entry": self.from_entry.to_dict(),
            "to_entry": self.to_entry.to_dict(),
        }


class TransferProcessor:
    """
    Executes money transfers against a ledger store.

    The processor trusts its caller: amount positivity, distinct accounts,
    currency and ownership are checked before transfer_tx is invoked.
    Errors are never retried or translated; they roll the transaction back
    and reach the caller unchanged.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.logger = get_logger("simplebank.transfers")

    def transfer_tx(self, params: TransferTxParams,
                    ctx: Optional[TxContext] = None,
                    require_funds: bool = False) -> TransferTxResult:
        """
        Transfer money from one account to another

        Args:
            params: Source, destination and amount
            ctx: Optional cancellation/deadline for the transaction
            require_funds: Reject the transfer if the locked source balance
                cannot cover the amount

        Returns:
            TransferTxResult with the transfer, both entries and both accounts

        Raises:
            NotFoundError, TransactionFailure: the transaction was rolled back
            ValidationFailure: insufficient funds with require_funds set
        """
        amount = params.amount
        try:
            with self.storage.atomic(ctx):
                transfer = self.storage.create_transfer(
                    params.from_account_id, params.to_account_id, amount
                )
                from_entry = self.storage.create_entry(params.from_account_id, -amount)
                to_entry = self.storage.create_entry(params.to_account_id, amount)

                from_account, to_account = self._add_money(
                    params.from_account_id, -amount,
                    params.to_account_id, amount,
                    require_funds=require_funds,
                )
        except Exception as e:
            log_action(
                self.logger, "warning", f"Transfer rolled back: {e}",
                action="transfer_tx", resource=f"account:{params.from_account_id}",
                extra={
                    "from_account": params.from_account_id,
                    "to_account": params.to_account_id,
                    "amount": amount,
                    "error_kind": error_kind(e).value,
                }
            )
            raise

        log_action(
            self.logger, "info", "Transfer completed",
            action="transfer_tx", resource=f"transfer:{transfer.id}",
            extra={
                "transfer_id": transfer.id,
                "from_account": params.from_account_id,
                "to_account": params.to_account_id,
                "amount": amount,
            }
        )

        return TransferTxResult(
            transfer=transfer,
            from_account=from_account,
            to_account=to_account,
            from_entry=from_entry,
            to_entry=to_entry,
        )

    def _add_money(self, account_id1: int, amount1: int,
                   account_id2: int, amount2: int,
                   require_funds: bool = False) -> Tuple[Account, Account]:
        """
        Apply two balance changes under row locks, lowest account id first.

        With require_funds, a debit that would take a locked balance below
        zero raises ValidationFailure. Returns the accounts in argument
        order, not lock order.
        """
        ordered = sorted([(account_id1, amount1), (account_id2, amount2)], key=lambda change: change[0])

        updated: Dict[int, Account] = {}
        for account_id, amount in ordered:
            locked = self.storage.get_account(account_id, for_update=True)
            if require_funds and amount < 0 and locked.balance + amount < 0:
                raise ValidationFailure(
                    f"insufficient funds in account {account_id}: "
                    f"balance {locked.balance}, amount {-amount}"
                )
            updated[account_id] = self.storage.add_account_balance(account_id, amount)

        return updated[account_id1], updated[account_id2]
