"""
RPC facade over the Solana node for the firearm registry program.

The platform keypair is the only signer; PDAs never sign. Submitted transactions
are never resent automatically: once a signature is broadcast its fate is only
observed (confirmed, failed, or expired with the blockhash window).
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client as SolanaClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from errors import (
    ChainRejectionError,
    ChainUnavailableError,
    ConfirmationTimeoutError,
    MissingConfigurationError,
)
from tx_builder import RegistryConfig, config_pda, parse_registry_config

logger = logging.getLogger("registry.client")

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


def status_level(status: TransactionConfirmationStatus) -> str:
    return str(status).rsplit(".", 1)[-1].lower()


def rpc_error_text(exc: Exception) -> str:
    # SolanaRpcException keeps its text in error_msg, not args
    return getattr(exc, "error_msg", None) or str(exc)


def load_keypair(path: Optional[str]) -> Keypair:
    if not path:
        raise MissingConfigurationError("Missing configuration: PLATFORM_WALLET_KEYPAIR_PATH")
    if not os.path.exists(path):
        raise MissingConfigurationError(f"Platform keypair file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except Exception as exc:  # noqa: BLE001
        raise MissingConfigurationError(f"Failed to read platform keypair: {exc}") from exc
    if isinstance(data, dict) and "secretKey" in data:
        data = data["secretKey"]
    if not isinstance(data, list) or len(data) < 64:
        raise MissingConfigurationError("Invalid keypair JSON (expected array of 64 numbers)")
    try:
        return Keypair.from_bytes(bytes(data[:64]))
    except Exception as exc:  # noqa: BLE001
        raise MissingConfigurationError(f"Failed to parse platform keypair: {exc}") from exc


@dataclass
class ClientContext:
    """Signing key plus RPC handle, built once per app and passed down explicitly."""

    keypair: Keypair
    client: SolanaClient
    commitment: str = "confirmed"
    poll_interval: float = 0.8
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @property
    def authority(self) -> Pubkey:
        return self.keypair.pubkey()


def build_client_context(
    rpc_url: str,
    keypair_path: Optional[str],
    commitment: str = "confirmed",
    poll_interval: float = 0.8,
) -> ClientContext:
    if not rpc_url:
        raise MissingConfigurationError("Missing configuration: SOLANA_RPC")
    if commitment not in COMMITMENT_RANK:
        raise MissingConfigurationError(f"Unsupported commitment level: {commitment}")
    keypair = load_keypair(keypair_path)
    client = SolanaClient(rpc_url, commitment=Commitment(commitment))
    return ClientContext(keypair=keypair, client=client, commitment=commitment, poll_interval=poll_interval)


@dataclass(frozen=True)
class BlockhashInfo:
    blockhash: Hash
    last_valid_block_height: int


class RegistryClient:
    def __init__(self, ctx: ClientContext):
        self.ctx = ctx
        self._commitment = Commitment(ctx.commitment)

    @property
    def authority(self) -> Pubkey:
        return self.ctx.authority

    def get_account(self, address: Pubkey) -> Optional[bytes]:
        try:
            resp = self.ctx.client.get_account_info(address, commitment=self._commitment)
        except (SolanaRpcException, RPCException) as exc:
            raise ChainUnavailableError(f"get_account_info failed for {address}: {rpc_error_text(exc)}") from exc
        if resp.value is None or resp.value.data is None:
            return None
        return bytes(resp.value.data)

    def read_config(self, program_id: Pubkey) -> Optional[RegistryConfig]:
        data = self.get_account(config_pda(program_id))
        if data is None:
            return None
        return parse_registry_config(data)

    def latest_blockhash(self) -> BlockhashInfo:
        try:
            resp = self.ctx.client.get_latest_blockhash(commitment=self._commitment)
        except (SolanaRpcException, RPCException) as exc:
            raise ChainUnavailableError(f"Failed to fetch blockhash: {rpc_error_text(exc)}") from exc
        return BlockhashInfo(
            blockhash=resp.value.blockhash,
            last_valid_block_height=resp.value.last_valid_block_height,
        )

    def sign(self, instructions: List[Instruction], blockhash: Hash) -> VersionedTransaction:
        message = MessageV0.try_compile(self.authority, instructions, [], blockhash)
        return VersionedTransaction(message, [self.ctx.keypair])

    def submit(self, instructions: List[Instruction], blockhash: Hash) -> str:
        tx = self.sign(instructions, blockhash)
        local_sig = str(tx.signatures[0])
        opts = TxOpts(skip_preflight=False, preflight_commitment=self._commitment)
        try:
            resp = self.ctx.client.send_raw_transaction(bytes(tx), opts=opts)
        except RPCException as exc:
            # preflight simulation ran the program and it refused
            raise ChainRejectionError(f"Transaction rejected: {rpc_error_text(exc)}", signature=local_sig) from exc
        except SolanaRpcException as exc:
            logger.warning("submit transport failure sig=%s error=%s", local_sig, rpc_error_text(exc))
            raise ChainUnavailableError(f"Failed to send transaction: {rpc_error_text(exc)}", signature=local_sig) from exc
        sig = str(resp.value)
        logger.info("submitted tx sig=%s", sig)
        return sig

    def _reached(self, status: Optional[TransactionConfirmationStatus]) -> bool:
        if status is None:
            return False
        return COMMITMENT_RANK.get(status_level(status), -1) >= COMMITMENT_RANK[self.ctx.commitment]

    def confirm(self, signature: str, blockhash: BlockhashInfo) -> None:
        sig_obj = Signature.from_string(signature)
        while True:
            try:
                resp = self.ctx.client.get_signature_statuses([sig_obj])
            except (SolanaRpcException, RPCException) as exc:
                raise ChainUnavailableError(f"get_signature_statuses failed: {rpc_error_text(exc)}", signature=signature) from exc
            status = resp.value[0] if resp.value else None
            if status is not None:
                if status.err is not None:
                    raise ChainRejectionError(f"Transaction {signature} failed: {status.err}", signature=signature)
                if self._reached(status.confirmation_status):
                    return
            try:
                height = self.ctx.client.get_block_height(self._commitment).value
            except (SolanaRpcException, RPCException) as exc:
                raise ChainUnavailableError(f"get_block_height failed: {rpc_error_text(exc)}", signature=signature) from exc
            if height > blockhash.last_valid_block_height:
                raise ConfirmationTimeoutError(
                    f"Blockhash {blockhash.blockhash} expired before {self.ctx.commitment} confirmation of {signature}",
                    signature=signature,
                )
            self.ctx.sleep(self.ctx.poll_interval)

    def send_and_confirm(self, instructions: List[Instruction]) -> str:
        info = self.latest_blockhash()
        sig = self.submit(instructions, info.blockhash)
        self.confirm(sig, info)
        return sig

    def signature_succeeded(self, signature: str) -> bool:
        """True when the node reports the signature at the configured commitment without error."""
        try:
            resp = self.ctx.client.get_signature_statuses(
                [Signature.from_string(signature)], search_transaction_history=True
            )
        except (SolanaRpcException, RPCException) as exc:
            raise ChainUnavailableError(f"get_signature_statuses failed: {rpc_error_text(exc)}", signature=signature) from exc
        status = resp.value[0] if resp.value else None
        return status is not None and status.err is None and self._reached(status.confirmation_status)
