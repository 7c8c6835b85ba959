"""Repository layer.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from genjobs.repositories.job import GenerationJobRepository
from genjobs.repositories.ledger_entry import CreditLedgerEntryRepository
from genjobs.repositories.user_account import UserAccountRepository

__all__ = [
    "UserAccountRepository",
    "GenerationJobRepository",
    "CreditLedgerEntryRepository",
]
