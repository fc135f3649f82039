"""
Hyperion Deposit Bridge

Watches the Hyperion testnet for native tMETIS transfers to the
marketplace treasury wallet and credits the sender's off-chain ledger
balance. The same ledger pays for metered queries against service
listings.

Usage:
    # Run the deposit listener
    hyperion-bridge watch

    # Re-scan one block (already credited deposits are skipped)
    hyperion-bridge scan-block 1234567

    # Show a wallet's ledger balance
    hyperion-bridge balance 0x...

    # Run the marketplace ledger API
    hyperion-bridge serve
"""

__version__ = "0.1.0"

from .chain import ChainClient, ChainConnectionError
from .config import Settings, get_settings
from .db import LedgerDatabase
from .ledger import (
    CreditResult,
    CreditStatus,
    DebitResult,
    DebitStatus,
    LedgerTransactor,
    User,
)
from .watcher import DepositEvent, DepositWatcher

__all__ = [
    "__version__",
    "ChainClient",
    "ChainConnectionError",
    "Settings",
    "get_settings",
    "LedgerDatabase",
    "CreditResult",
    "CreditStatus",
    "DebitResult",
    "DebitStatus",
    "LedgerTransactor",
    "User",
    "DepositEvent",
    "DepositWatcher",
]
