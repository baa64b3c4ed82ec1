import json
import logging
from typing import Optional

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException, RPCNoResultException
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from escrow_marketplace.errors import StateReadError, SubmissionError
from escrow_marketplace.settings import Settings

logger = logging.getLogger("marketplace.rpc")


def open_rpc_client(settings: Settings) -> AsyncClient:
    return AsyncClient(
        settings.rpc_url,
        commitment=Commitment(settings.commitment),
        timeout=settings.rpc_timeout_seconds,
    )


def load_keypair(path: str) -> Keypair:
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if isinstance(raw, list):
        secret = bytes(raw)
    elif isinstance(raw, dict) and "secretKey" in raw:
        secret = bytes(raw["secretKey"])
    else:
        raise ValueError("Unsupported keypair file format")
    return Keypair.from_bytes(secret)


class RpcStateReader:
    """Reads raw account bytes through a Solana JSON-RPC node."""

    def __init__(self, client: AsyncClient, commitment: Optional[Commitment] = None):
        self.client = client
        self.commitment = commitment

    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        try:
            resp = await self.client.get_account_info(address, commitment=self.commitment)
        except Exception as exc:  # noqa: BLE001
            raise StateReadError(f"Failed to fetch account {address}: {exc}") from exc
        if resp.value is None or resp.value.data is None:
            return None
        return bytes(resp.value.data)

    async def get_latest_blockhash(self) -> str:
        try:
            resp = await self.client.get_latest_blockhash(commitment=self.commitment)
        except Exception as exc:  # noqa: BLE001
            raise StateReadError(f"Failed to fetch blockhash: {exc}") from exc
        return str(resp.value.blockhash)


def _transport_failure(exc: SolanaRpcException) -> SubmissionError:
    # solana-py wraps every httpx failure; the original error is the cause.
    cause = exc.__cause__
    if isinstance(cause, httpx.TimeoutException):
        return SubmissionError(f"Timed out submitting transaction: {cause}", SubmissionError.TIMED_OUT)
    return SubmissionError(f"Network error submitting transaction: {cause or exc}", SubmissionError.NETWORK_ERROR)


class KeypairTransport:
    """Signs with a local keypair and submits through the RPC node.

    Submission is attempted once; resending after a partial on-chain success
    could create a record twice.
    """

    def __init__(
        self,
        client: AsyncClient,
        keypair: Keypair,
        skip_preflight: bool = False,
        commitment: Optional[Commitment] = None,
    ):
        self.client = client
        self.keypair = keypair
        self.skip_preflight = skip_preflight
        self.commitment = commitment

    async def send(self, instruction: Instruction, signer: Pubkey) -> str:
        if signer != self.keypair.pubkey():
            raise SubmissionError(
                f"Transport keypair {self.keypair.pubkey()} cannot sign for {signer}", SubmissionError.REJECTED
            )
        try:
            blockhash = (await self.client.get_latest_blockhash(commitment=self.commitment)).value.blockhash
            message = MessageV0.try_compile(signer, [instruction], [], blockhash)
            tx = VersionedTransaction(message, [self.keypair])
            opts = TxOpts(skip_preflight=self.skip_preflight)
            if self.commitment:
                opts = TxOpts(skip_preflight=self.skip_preflight, preflight_commitment=self.commitment)
            resp = await self.client.send_transaction(tx, opts=opts)
        except SolanaRpcException as exc:
            raise _transport_failure(exc) from exc
        except RPCNoResultException as exc:
            raise SubmissionError(f"Transaction rejected: {exc}", SubmissionError.REJECTED) from exc
        except RPCException as exc:
            detail = str(exc)
            reason = SubmissionError.REJECTED
            if "insufficient" in detail.lower():
                reason = SubmissionError.INSUFFICIENT_FUNDS
            raise SubmissionError(f"Transaction rejected: {detail}", reason) from exc
        signature = str(resp.value)
        logger.info("tx_submitted signer=%s signature=%s", signer, signature)
        return signature
