"""
Append-only infraction ledger backed by the ChatSafe contract.

An append is only reported as successful once its transaction receipt shows
it was mined with a success status. The client never retries: a failed or
unconfirmed submission is returned once as a :class:`SubmissionError` and
the caller decides what to do with it. The ledger does not deduplicate, so
every call produces a new record.

Sign-and-send runs under a single lock per signer so nonces are handed out
in order; the confirmation wait happens outside the lock so several appends
can be awaiting receipts at once.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, List, Protocol

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted

from chatsafe.datatypes.moderation_datatypes import (
    Infraction,
    LedgerResult,
    RecordReceipt,
    SubmissionError,
)
from chatsafe.ledger.contract_abi import CHATSAFE_ABI
from chatsafe.util.logger import get_logger

logger = get_logger("ledger_client")


class LedgerClient(Protocol):
    """What the pipeline and console need from a ledger."""

    async def append_infraction(self, subject: str, reason: str) -> LedgerResult: ...

    async def list_infractions(self) -> List[Infraction]: ...

    async def reputation(self, subject: str) -> int: ...


class ContractLedgerClient:
    """
    Ledger client that talks to the deployed contract through web3.

    Args:
        w3: Connected AsyncWeb3 instance.
        contract: Contract object bound to :data:`CHATSAFE_ABI`.
        account: Local signing account (``eth_account`` LocalAccount).
        confirmation_timeout: Seconds to wait for a transaction receipt.
    """

    def __init__(
        self,
        w3: Any,
        contract: Any,
        account: Any,
        *,
        confirmation_timeout: float = 120.0,
    ) -> None:
        self._w3 = w3
        self._contract = contract
        self._account = account
        self._confirmation_timeout = confirmation_timeout
        self._submission_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        *,
        confirmation_timeout: float = 120.0,
    ) -> "ContractLedgerClient":
        """Build a client from the RPC URL, contract address and signing key."""
        w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        contract = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=CHATSAFE_ABI)
        account = Account.from_key(private_key)
        logger.info(
            "[LEDGER] Using contract %s as signer %s",
            contract.address,
            account.address,
        )
        return cls(w3, contract, account, confirmation_timeout=confirmation_timeout)

    @property
    def signer_address(self) -> str:
        return self._account.address

    async def append_infraction(self, subject: str, reason: str) -> LedgerResult:
        """Append one record and wait for it to be confirmed.

        Returns:
            RecordReceipt once the transaction is mined successfully, otherwise
            a SubmissionError. When the transaction was broadcast before the
            failure the error carries its hash.
        """
        try:
            offender = Web3.to_checksum_address(subject)
        except (ValueError, TypeError) as exc:
            return SubmissionError(message=f"subject is not a valid address: {exc}")

        try:
            async with self._submission_lock:
                nonce = await self._w3.eth.get_transaction_count(self._account.address, "pending")
                tx = await self._contract.functions.logFlag(offender, reason).build_transaction(
                    {"from": self._account.address, "nonce": nonce}
                )
                signed = self._account.sign_transaction(tx)
                tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as exc:
            logger.error("[LEDGER] Submission for %s failed before broadcast: %s", subject, exc)
            return SubmissionError(message=str(exc) or type(exc).__name__)

        tx_ref = Web3.to_hex(tx_hash)
        logger.debug("[LEDGER] Broadcast %s for %s; waiting for confirmation", tx_ref, subject)

        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._confirmation_timeout
            )
        except TimeExhausted:
            logger.error("[LEDGER] Transaction %s not confirmed within %.0fs", tx_ref, self._confirmation_timeout)
            return SubmissionError(
                message=f"not confirmed within {self._confirmation_timeout:.0f}s",
                transaction_ref=tx_ref,
            )
        except Exception as exc:
            logger.error("[LEDGER] Waiting for %s failed: %s", tx_ref, exc)
            return SubmissionError(message=str(exc) or type(exc).__name__, transaction_ref=tx_ref)

        if receipt.get("status") != 1:
            logger.error("[LEDGER] Transaction %s reverted", tx_ref)
            return SubmissionError(message="transaction reverted", transaction_ref=tx_ref)

        return RecordReceipt(
            transaction_ref=tx_ref,
            confirmed=True,
            block_number=receipt.get("blockNumber"),
        )

    async def list_infractions(self) -> List[Infraction]:
        """Return every record on the ledger in insertion order (newest last)."""
        rows = await self._contract.functions.getReports().call()
        return [
            Infraction(
                subject=str(offender),
                reason=str(reason),
                detected_at=datetime.fromtimestamp(int(timestamp), tz=timezone.utc),
            )
            for offender, reason, timestamp in rows
        ]

    async def reputation(self, subject: str) -> int:
        """Return the number of infractions recorded against ``subject``."""
        return int(await self._contract.functions.reputation(Web3.to_checksum_address(subject)).call())

    async def close(self) -> None:
        provider = getattr(self._w3, "provider", None)
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
