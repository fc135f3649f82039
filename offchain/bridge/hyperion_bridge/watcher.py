"""
Deposit watcher - detects native tMETIS transfers to the treasury wallet
and credits the sender's ledger account.

Only transactions that meet ALL criteria are credited:
1. The 'to' address matches the treasury wallet (case-insensitive)
2. There is a 'from' address
3. The transaction carries value (amount > 0)

Anything else is skipped without a log line. A block that cannot be
fetched or a credit that fails is logged and skipped; the watcher keeps
running.
"""

from dataclasses import dataclass
from typing import Any, Optional

import structlog

from .chain import BlockPoller, ChainBlock, ChainClient, ChainConnectionError, is_transaction_object, to_hex
from .ledger import CreditResult, CreditStatus, LedgerTransactor
from .units import format_ether

logger = structlog.get_logger()


@dataclass(frozen=True)
class DepositEvent:
    """A qualifying transfer to the treasury, consumed by one credit call."""

    sender: str
    value_wei: int
    tx_hash: str
    block_number: int


@dataclass
class WatcherStats:
    """Counters since the watcher was created."""

    blocks_scanned: int = 0
    blocks_failed: int = 0
    deposits_detected: int = 0
    deposits_credited: int = 0
    deposits_unmatched: int = 0
    deposits_duplicate: int = 0
    credits_failed: int = 0


def is_treasury_deposit(tx: Any, treasury_address: str) -> bool:
    """Filter predicate for a single block transaction entry."""
    if not is_transaction_object(tx):
        return False

    to = tx.get("to")
    sender = tx.get("from")
    if not to or not sender:
        return False

    if str(to).lower() != treasury_address.lower():
        return False

    return int(tx.get("value") or 0) > 0


class WatchHandle:
    """Running subscription returned by DepositWatcher.start()."""

    def __init__(self, poller: BlockPoller):
        self._poller: Optional[BlockPoller] = poller

    @property
    def is_active(self) -> bool:
        return self._poller is not None and self._poller.is_running

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until the subscription ends or the timeout passes."""
        if self._poller is not None:
            self._poller.join(timeout)

    def unwatch(self) -> None:
        """Stop receiving blocks. Safe to call repeatedly."""
        if self._poller is not None:
            self._poller.stop()
            self._poller = None


class DepositWatcher:
    """
    Watches every new Hyperion block for deposits to the treasury.
    """

    def __init__(
        self,
        chain: ChainClient,
        transactor: LedgerTransactor,
        treasury_address: str,
        poll_interval: float = 4.0,
        max_catchup_blocks: int = 50,
        chain_id: Optional[int] = None,
    ):
        self.chain = chain
        self.chain_id = chain_id
        self.transactor = transactor
        self.treasury_address = treasury_address
        self.poll_interval = poll_interval
        self.max_catchup_blocks = max_catchup_blocks
        self.stats = WatcherStats()
        self._handle: Optional[WatchHandle] = None

    def start(self) -> WatchHandle:
        """
        Probe the RPC endpoint and start watching new blocks.

        Raises:
            ChainConnectionError: if the current block height cannot be read,
                or the endpoint serves a different chain than ``chain_id``
        """
        try:
            block_number = self.chain.get_block_number()
            served_chain_id = self.chain.get_chain_id() if self.chain_id is not None else None
        except Exception as e:
            logger.error("rpc_connection_failed", rpc_url=self.chain.rpc_url, error=str(e))
            raise ChainConnectionError(f"Failed to connect to RPC: {e}") from e

        if served_chain_id is not None and served_chain_id != self.chain_id:
            logger.error(
                "chain_id_mismatch",
                rpc_url=self.chain.rpc_url,
                expected=self.chain_id,
                actual=served_chain_id,
            )
            raise ChainConnectionError(
                f"RPC serves chain {served_chain_id}, expected {self.chain_id}"
            )

        logger.info(
            "rpc_connected",
            rpc_url=self.chain.rpc_url,
            block_number=block_number,
            treasury=self.treasury_address,
        )

        if self._handle is not None:
            return self._handle

        poller = BlockPoller(
            self.chain,
            on_block=self.handle_block,
            on_error=self._on_watch_error,
            poll_interval=self.poll_interval,
            max_catchup=self.max_catchup_blocks,
        )
        poller.start()
        self._handle = WatchHandle(poller)

        logger.info("listener_started", treasury=self.treasury_address, poll_interval=self.poll_interval)
        return self._handle

    def stop(self) -> None:
        """Unsubscribe from new blocks. A no-op when not watching."""
        if self._handle is None:
            return
        self._handle.unwatch()
        self._handle = None
        logger.info("listener_stopping")

    def _on_watch_error(self, error: Exception) -> None:
        logger.error("block_watcher_error", error=str(error))

    def handle_block(self, block_number: int) -> list[DepositEvent]:
        """
        Fetch a block with its transactions and credit every deposit in it.

        Returns the deposits detected. Never raises.
        """
        try:
            block = self.chain.get_block_with_transactions(block_number)
        except Exception as e:
            self.stats.blocks_failed += 1
            logger.error("block_fetch_failed", block_number=block_number, error=str(e))
            return []

        self.stats.blocks_scanned += 1
        if not block.transactions:
            return []

        logger.debug(
            "scanning_block",
            block_number=block.number,
            transactions=len(block.transactions),
        )

        events = self.scan_block(block)
        for event in events:
            self.handle_new_deposit(event)
        return events

    def scan_block(self, block: ChainBlock) -> list[DepositEvent]:
        """Pick the treasury deposits out of a block, in chain order."""
        events: list[DepositEvent] = []
        for tx in block.transactions:
            if not is_treasury_deposit(tx, self.treasury_address):
                continue
            events.append(
                DepositEvent(
                    sender=tx["from"],
                    value_wei=int(tx["value"]),
                    tx_hash=to_hex(tx["hash"]),
                    block_number=block.number,
                )
            )
        return events

    def handle_new_deposit(self, event: DepositEvent) -> Optional[CreditResult]:
        """Credit one deposit. Failures are logged, never raised."""
        self.stats.deposits_detected += 1
        logger.info(
            "deposit_detected",
            sender=event.sender,
            to=self.treasury_address,
            amount=format_ether(event.value_wei),
            tx_hash=event.tx_hash,
            block_number=event.block_number,
        )

        try:
            result = self.transactor.credit(
                event.sender,
                event.value_wei,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
            )
        except Exception as e:
            self.stats.credits_failed += 1
            logger.error(
                "credit_failed",
                sender=event.sender,
                tx_hash=event.tx_hash,
                error=str(e),
            )
            return None

        if result.status == CreditStatus.CREDITED:
            self.stats.deposits_credited += 1
        elif result.status == CreditStatus.DUPLICATE:
            self.stats.deposits_duplicate += 1
        else:
            self.stats.deposits_unmatched += 1
        return result
