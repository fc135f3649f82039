"""
Ledger transactor - user accounts, deposit credits and query debits.

Every balance mutation is a single conditional UPDATE issued to the
database. There is no read-modify-write anywhere: concurrent credits
commute, and a debit only applies when the row still satisfies
``balance >= amount`` at update time, so a balance can never go negative.

Deposits arrive in wei and balances are kept in base units of
LEDGER_DECIMALS. Wei that do not fill a whole base unit are carried in
the account and folded into the balance by later deposits, so the
credited total is exact whatever order deposits land in.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from web3 import Web3

from .db import LedgerDatabase, as_utc, processed_deposits, users, utcnow
from .units import WEI_PER_UNIT, format_ether, format_units, from_units, to_units, wei_to_units

logger = structlog.get_logger()


@dataclass
class Account:
    """Balance embedded in a user record."""

    balance: int  # ledger base units
    updated_at: datetime
    remainder_wei: int = 0

    @property
    def balance_tokens(self) -> Decimal:
        return from_units(self.balance)

    @property
    def balance_wei(self) -> int:
        return self.balance * WEI_PER_UNIT + self.remainder_wei


@dataclass
class User:
    """A marketplace user, keyed by lower-cased wallet address."""

    id: int
    wallet_address: str
    created_at: datetime
    last_funded_at: Optional[datetime]
    account: Account


class CreditStatus(str, Enum):
    CREDITED = "credited"
    USER_NOT_FOUND = "user_not_found"
    DUPLICATE = "duplicate"


@dataclass
class CreditResult:
    """Outcome of crediting a deposit."""

    status: CreditStatus
    wallet_address: str
    amount_wei: int
    tx_hash: Optional[str] = None
    account: Optional[Account] = None  # balance after the credit

    @property
    def matched(self) -> bool:
        return self.status == CreditStatus.CREDITED


class DebitStatus(str, Enum):
    SUCCEEDED = "succeeded"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    USER_NOT_FOUND = "user_not_found"
    INFRASTRUCTURE_ERROR = "infrastructure_error"


@dataclass
class DebitResult:
    """
    Outcome of a debit.

    Callers branch on ``ok`` only. ``status`` says why a debit was denied,
    which matters for diagnostics and HTTP status codes, not for deciding
    whether the paid action may proceed.
    """

    status: DebitStatus
    account: Optional[Account] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == DebitStatus.SUCCEEDED


def canonical_address(address: str) -> str:
    """Lower-case a wallet address after checking it is a valid EVM address."""
    address = address.strip()
    if not Web3.is_address(address):
        raise ValueError(f"Invalid wallet address: {address}")
    return address.lower()


def parse_record_id(user_id: Union[int, str]) -> Optional[int]:
    """Return the integer id, or None when it cannot name a record."""
    if isinstance(user_id, bool):
        return None
    if isinstance(user_id, int):
        return user_id
    user_id = str(user_id).strip()
    if not user_id.isdigit():
        return None
    return int(user_id)


def _row_to_account(row: Any) -> Account:
    return Account(
        balance=row.balance,
        updated_at=as_utc(row.balance_updated_at),
        remainder_wei=row.balance_remainder_wei,
    )


def _row_to_user(row: Any) -> User:
    return User(
        id=row.id,
        wallet_address=row.wallet_address,
        created_at=as_utc(row.created_at),
        last_funded_at=as_utc(row.last_funded_at),
        account=_row_to_account(row),
    )


class LedgerTransactor:
    """
    Account mutations against the ledger database.

    - find_or_create_user: idempotent, tolerates concurrent creation
    - credit: atomic increment, replay-safe when given a tx hash
    - debit: atomic conditional decrement, never raises on denial
    """

    def __init__(self, db: LedgerDatabase, create_unknown_depositors: bool = False):
        self.db = db
        self.create_unknown_depositors = create_unknown_depositors

    def get_user(self, address: str) -> Optional[User]:
        """Look up a user by wallet address."""
        wallet = canonical_address(address)
        with self.db.engine.connect() as conn:
            row = conn.execute(
                select(users).where(users.c.wallet_address == wallet)
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_id(self, user_id: Union[int, str]) -> Optional[User]:
        """Look up a user by id. Malformed ids find nothing."""
        uid = parse_record_id(user_id)
        if uid is None:
            return None
        with self.db.engine.connect() as conn:
            row = conn.execute(select(users).where(users.c.id == uid)).fetchone()
        return _row_to_user(row) if row else None

    def find_or_create_user(self, address: str) -> User:
        """
        Find a user by wallet address, creating them if they do not exist.

        Two callers racing on a new address both miss the lookup and both
        insert; the unique constraint rejects the loser, which then reads
        the winner's row. The caller never sees the conflict.
        """
        wallet = canonical_address(address)

        user = self.get_user(wallet)
        if user:
            return user

        now = utcnow()
        try:
            with self.db.engine.begin() as conn:
                result = conn.execute(
                    users.insert().values(
                        wallet_address=wallet,
                        created_at=now,
                        last_funded_at=None,
                        balance=0,
                        balance_remainder_wei=0,
                        balance_updated_at=now,
                    )
                )
                user_id = result.inserted_primary_key[0]
        except IntegrityError as e:
            logger.info("user_insert_conflict", wallet_address=wallet)
            user = self.get_user(wallet)
            if user:
                return user
            logger.error("user_create_failed", wallet_address=wallet, error=str(e))
            raise

        logger.info("user_created", wallet_address=wallet, user_id=user_id)
        return User(
            id=user_id,
            wallet_address=wallet,
            created_at=now,
            last_funded_at=None,
            account=Account(balance=0, updated_at=now),
        )

    def credit(
        self,
        address: str,
        amount_wei: int,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None,
    ) -> CreditResult:
        """
        Credit a deposit of ``amount_wei`` to the user owning ``address``.

        The balance increment and the processed-deposit record commit in
        one transaction. A tx hash that was already recorded rolls the
        whole transaction back and reports DUPLICATE. A deposit from an
        unknown wallet is logged and recorded as unmatched.

        Wei below one base unit are added to the account's remainder; when
        the remainder reaches a whole unit it moves into the balance in the
        same UPDATE, so no part of a deposit is lost.
        """
        wallet = canonical_address(address)
        units, remainder = wei_to_units(amount_wei)

        if self.create_unknown_depositors:
            self.find_or_create_user(wallet)

        # Both SET expressions read the pre-update remainder
        carried = users.c.balance_remainder_wei + remainder
        now = utcnow()
        try:
            with self.db.engine.begin() as conn:
                row = conn.execute(
                    users.update()
                    .where(users.c.wallet_address == wallet)
                    .values(
                        balance=users.c.balance + units + carried // WEI_PER_UNIT,
                        balance_remainder_wei=carried % WEI_PER_UNIT,
                        balance_updated_at=now,
                        last_funded_at=now,
                    )
                    .returning(
                        users.c.balance,
                        users.c.balance_remainder_wei,
                        users.c.balance_updated_at,
                    )
                ).first()

                if tx_hash is not None:
                    conn.execute(
                        processed_deposits.insert().values(
                            tx_hash=tx_hash.lower(),
                            sender=wallet,
                            value_wei=str(int(amount_wei)),
                            block_number=block_number,
                            status="credited" if row is not None else "unmatched",
                            processed_at=now,
                        )
                    )
        except IntegrityError:
            if tx_hash is None:
                raise
            logger.info("deposit_already_processed", tx_hash=tx_hash, wallet_address=wallet)
            return CreditResult(
                status=CreditStatus.DUPLICATE,
                wallet_address=wallet,
                amount_wei=amount_wei,
                tx_hash=tx_hash,
            )

        if row is None:
            logger.error(
                "credit_target_missing",
                wallet_address=wallet,
                amount=format_ether(amount_wei),
                tx_hash=tx_hash,
            )
            return CreditResult(
                status=CreditStatus.USER_NOT_FOUND,
                wallet_address=wallet,
                amount_wei=amount_wei,
                tx_hash=tx_hash,
            )

        account = _row_to_account(row)
        logger.info(
            "account_credited",
            wallet_address=wallet,
            amount=format_ether(amount_wei),
            balance=format_units(account.balance),
            remainder_wei=account.remainder_wei,
            tx_hash=tx_hash,
        )
        return CreditResult(
            status=CreditStatus.CREDITED,
            wallet_address=wallet,
            amount_wei=amount_wei,
            tx_hash=tx_hash,
            account=account,
        )

    def is_deposit_processed(self, tx_hash: str) -> bool:
        """Check if a deposit transaction has been recorded."""
        with self.db.engine.connect() as conn:
            row = conn.execute(
                select(processed_deposits.c.id).where(
                    processed_deposits.c.tx_hash == tx_hash.lower()
                )
            ).fetchone()
        return row is not None

    def debit(self, user_id: Union[int, str], amount: Union[int, str, Decimal]) -> DebitResult:
        """
        Deduct ``amount`` tokens from a user's balance for a query.

        Raises:
            ValueError: if the amount is negative or finer than a base unit
        """
        return self.debit_units(user_id, to_units(amount))

    def debit_units(self, user_id: Union[int, str], units: int) -> DebitResult:
        """
        Atomically deduct ``units`` base units if the balance covers them.

        Insufficient funds, an unknown user and a database failure all
        come back as a denied DebitResult rather than an exception.
        """
        if units < 0:
            raise ValueError(f"Debit amount must not be negative: {units}")

        uid = parse_record_id(user_id)
        if uid is None:
            logger.debug("debit_user_not_found", user_id=user_id)
            return DebitResult(status=DebitStatus.USER_NOT_FOUND)

        try:
            with self.db.engine.begin() as conn:
                row = conn.execute(
                    users.update()
                    .where(users.c.id == uid, users.c.balance >= units)
                    .values(balance=users.c.balance - units, balance_updated_at=utcnow())
                    .returning(
                        users.c.balance,
                        users.c.balance_remainder_wei,
                        users.c.balance_updated_at,
                    )
                ).first()

                if row is None:
                    # Denied: find out why, for the logs only
                    current = conn.execute(
                        select(users.c.balance).where(users.c.id == uid)
                    ).fetchone()
        except Exception as e:
            logger.error("debit_failed", user_id=uid, units=units, error=str(e))
            return DebitResult(status=DebitStatus.INFRASTRUCTURE_ERROR, error=str(e))

        if row is not None:
            logger.info("account_debited", user_id=uid, amount=format_units(units))
            return DebitResult(
                status=DebitStatus.SUCCEEDED,
                account=_row_to_account(row),
            )

        if current is None:
            logger.debug("debit_user_not_found", user_id=uid)
            return DebitResult(status=DebitStatus.USER_NOT_FOUND)

        logger.debug(
            "debit_insufficient_balance",
            user_id=uid,
            balance=format_units(current.balance),
            required=format_units(units),
        )
        return DebitResult(status=DebitStatus.INSUFFICIENT_FUNDS)
