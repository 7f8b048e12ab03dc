"""
Random test data

Every generator draws from the random.Random instance it is given, so each
test owns its sequence and nothing touches the global random state.
"""

import random
import string
from typing import Optional

from simplebank.currency import Currency
from simplebank.models import Account, User
from simplebank.storage import StorageInterface


ALPHABET = string.ascii_lowercase


class RandomData:
    """Random ledger values drawn from an explicit generator"""

    def __init__(self, rng: random.Random):
        self.rng = rng

    def int(self, low: int, high: int) -> int:
        return self.rng.randint(low, high)

    def string(self, length: int) -> str:
        return "".join(self.rng.choice(ALPHABET) for _ in range(length))

    def owner(self) -> str:
        return self.string(self.int(8, 12))

    def money(self) -> int:
        return self.int(0, 1000)

    def currency(self) -> Currency:
        return self.rng.choice(list(Currency))

    def email(self) -> str:
        return f"{self.string(6)}@email.com"


def create_random_user(storage: StorageInterface, data: RandomData) -> User:
    return storage.create_user(
        username=data.owner(),
        hashed_password=data.string(32),
        full_name=f"{data.string(6)} {data.string(8)}",
        email=data.email(),
    )


def create_random_account(storage: StorageInterface, data: RandomData,
                          balance: Optional[int] = None,
                          currency: Optional[Currency] = None,
                          owner: Optional[str] = None) -> Account:
    """Create an account for a new random user unless an owner is given"""
    if owner is None:
        owner = create_random_user(storage, data).username
    return storage.create_account(
        owner=owner,
        balance=data.money() if balance is None else balance,
        currency=currency or data.currency(),
    )
