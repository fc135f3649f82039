from __future__ import annotations

from typing import Any, Optional

import pytest

from hyperion_bridge.chain import ChainBlock
from hyperion_bridge.db import LedgerDatabase
from hyperion_bridge.ledger import LedgerTransactor

TREASURY = "0x1111111111111111111111111111111111111111"
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20

ONE_ETHER = 10**18


def make_tx(
    to: Optional[str],
    sender: Optional[str],
    value: int,
    tx_hash: str = "0x" + "ab" * 32,
) -> dict[str, Any]:
    return {"to": to, "from": sender, "value": value, "hash": tx_hash}


class FakeChain:
    """In-memory stand-in for ChainClient."""

    def __init__(self, head: int = 100) -> None:
        self.rpc_url = "http://fake-rpc"
        self.head = head
        self.blocks: dict[int, ChainBlock] = {}
        self.fail_block_number = False
        self.failing_blocks: set[int] = set()
        self.fetched: list[int] = []
        self.chain_id = 133717

    def add_block(self, number: int, transactions: list[Any]) -> None:
        self.blocks[number] = ChainBlock(number=number, transactions=transactions)

    def get_block_number(self) -> int:
        if self.fail_block_number:
            raise ConnectionError("rpc unreachable")
        return self.head

    def get_chain_id(self) -> int:
        if self.fail_block_number:
            raise ConnectionError("rpc unreachable")
        return self.chain_id

    def get_block_with_transactions(self, number: int) -> ChainBlock:
        self.fetched.append(number)
        if number in self.failing_blocks:
            raise TimeoutError(f"timeout fetching block {number}")
        return self.blocks.get(number, ChainBlock(number=number, transactions=[]))

    def check_connectivity(self) -> bool:
        return not self.fail_block_number


@pytest.fixture
def db(tmp_path) -> LedgerDatabase:
    database = LedgerDatabase(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield database
    database.close()


@pytest.fixture
def transactor(db: LedgerDatabase) -> LedgerTransactor:
    return LedgerTransactor(db)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()
