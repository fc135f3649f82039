"""
Hyperion chain access via web3.py.

ChainClient wraps the JSON-RPC calls the watcher needs. BlockPoller turns
block-number polling into new-block notifications, the way a block
subscription would deliver them.
"""

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog
from web3 import Web3

logger = structlog.get_logger()


class ChainConnectionError(Exception):
    """The RPC endpoint could not be reached at startup."""


@dataclass
class ChainBlock:
    """A block with full transaction detail."""

    number: int
    # Mappings with to/from/value/hash; bare hash entries are kept as-is
    transactions: list[Any] = field(default_factory=list)


def to_hex(value: Any) -> str:
    """Render a hash (HexBytes, bytes or str) as 0x-prefixed hex."""
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return Web3.to_hex(value)


class ChainClient:
    """Client for Hyperion JSON-RPC."""

    def __init__(self, rpc_url: str, w3: Optional[Web3] = None):
        self.rpc_url = rpc_url
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))

    def get_block_number(self) -> int:
        """Get current block height."""
        return int(self.w3.eth.block_number)

    def get_chain_id(self) -> int:
        """Get the chain id the endpoint serves."""
        return int(self.w3.eth.chain_id)

    def get_block_with_transactions(self, number: int) -> ChainBlock:
        """Get a block with full transaction objects."""
        block = self.w3.eth.get_block(number, full_transactions=True)
        return ChainBlock(
            number=int(block["number"]),
            transactions=list(block.get("transactions") or []),
        )

    def check_connectivity(self) -> bool:
        """Check if the RPC endpoint is reachable."""
        try:
            self.get_block_number()
            return True
        except Exception:
            return False


BlockCallback = Callable[[int], None]
ErrorCallback = Callable[[Exception], None]


class BlockPoller:
    """
    Emits new block numbers to a callback by polling eth_blockNumber.

    Each poll emits every height above the last one seen, oldest first,
    capped at ``max_catchup`` blocks; older heights in a larger gap are
    skipped. The first poll emits the current head only. Errors from
    polling go to ``on_error`` and polling continues.
    """

    def __init__(
        self,
        chain: ChainClient,
        on_block: BlockCallback,
        on_error: ErrorCallback,
        poll_interval: float = 4.0,
        max_catchup: int = 50,
    ):
        self.chain = chain
        self.on_block = on_block
        self.on_error = on_error
        self.poll_interval = poll_interval
        self.max_catchup = max_catchup
        self.last_seen: Optional[int] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def poll_once(self) -> list[int]:
        """Poll the head once and return the block numbers to emit."""
        head = self.chain.get_block_number()

        if self.last_seen is None:
            self.last_seen = head
            return [head]

        if head <= self.last_seen:
            return []

        start = self.last_seen + 1
        if head - start + 1 > self.max_catchup:
            skipped_to = head - self.max_catchup + 1
            logger.warning(
                "blocks_skipped",
                from_block=start,
                to_block=skipped_to - 1,
                head=head,
            )
            start = skipped_to

        self.last_seen = head
        return list(range(start, head + 1))

    def run(self) -> None:
        """Poll until stopped. Blocks the calling thread."""
        while not self._stop_event.is_set():
            try:
                numbers = self.poll_once()
            except Exception as e:
                self.on_error(e)
                numbers = []

            for number in numbers:
                if self._stop_event.is_set():
                    break
                try:
                    self.on_block(number)
                except Exception as e:
                    self.on_error(e)

            self._stop_event.wait(self.poll_interval)

    def start(self) -> None:
        """Start polling in a background thread."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="block-poller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop polling. Safe to call repeatedly."""
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


def is_transaction_object(tx: Any) -> bool:
    """Full transaction entries are mappings; hash-only entries are not."""
    return isinstance(tx, Mapping)
