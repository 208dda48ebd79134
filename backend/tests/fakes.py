"""In-memory stand-ins for the Solana node and the off-chain collaborators."""

from types import SimpleNamespace
from typing import Dict, List, Optional, Set

from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from mint_orchestrator import MINT_IN_FLIGHT, MINT_PENDING_RECONCILE, InventoryRecord
from tx_builder import config_pda, encode_u64_le, firearm_pda, sighash

CONFIG_TAG = sighash("RegistryConfig")  # any 8 bytes; the client skips it
FIREARM_TAG = sighash("Firearm")


def transport_error(func) -> SolanaRpcException:
    return SolanaRpcException(ConnectionError("connection refused"), func, None, SimpleNamespace())


class FakeSolanaNode:
    """Plays both the RPC node and the firearm registry program."""

    def __init__(self, program_id: Pubkey, handlers: Optional[Set[str]] = None):
        self.program_id = program_id
        self.accepted = {sighash(name): name for name in (handlers or {"initialize", "mint_firearm"})}
        self.accounts: Dict[Pubkey, bytes] = {}
        self.firearms: Dict[int, bytes] = {}
        self.calls: List[str] = []
        self.height = 1_000
        self.statuses: Dict[str, SimpleNamespace] = {}
        self.sent: List[VersionedTransaction] = []
        # failure injection
        self.unavailable = False
        self.fail_on_confirm: Optional[str] = None
        self.never_confirm = False
        self.reject_initialize_as_taken = False

    @property
    def config(self) -> Pubkey:
        return config_pda(self.program_id)

    def seed_config(self, authority: Pubkey, next_id: int = 0) -> None:
        self.accounts[self.config] = CONFIG_TAG + bytes(authority) + encode_u64_le(next_id)

    def next_id(self) -> int:
        data = self.accounts[self.config]
        return int.from_bytes(data[40:48], "little")

    def _check(self, method: str) -> None:
        self.calls.append(method)
        if self.unavailable:
            raise transport_error(getattr(self, method))

    # --- RPC surface used by RegistryClient ---

    def get_account_info(self, pubkey, commitment=None):
        self._check("get_account_info")
        data = self.accounts.get(pubkey)
        return SimpleNamespace(value=None if data is None else SimpleNamespace(data=data))

    def get_latest_blockhash(self, commitment=None):
        self._check("get_latest_blockhash")
        return SimpleNamespace(
            value=SimpleNamespace(blockhash=Hash.new_unique(), last_valid_block_height=self.height + 150)
        )

    def send_raw_transaction(self, raw, opts=None):
        self._check("send_raw_transaction")
        tx = VersionedTransaction.from_bytes(raw)
        self.sent.append(tx)
        keys = list(tx.message.account_keys)
        for ci in tx.message.instructions:
            program = keys[ci.program_id_index]
            if program != self.program_id:
                raise RPCException(f"unexpected program {program}")
            accounts = [keys[i] for i in ci.accounts]
            self._execute(bytes(ci.data), accounts)
        sig = tx.signatures[0]
        if self.never_confirm:
            self.statuses[str(sig)] = None
        elif self.fail_on_confirm:
            self.statuses[str(sig)] = SimpleNamespace(
                err=self.fail_on_confirm, confirmation_status=TransactionConfirmationStatus.Processed
            )
        else:
            self.statuses[str(sig)] = SimpleNamespace(
                err=None, confirmation_status=TransactionConfirmationStatus.Confirmed
            )
        return SimpleNamespace(value=sig)

    def get_signature_statuses(self, signatures, search_transaction_history=False):
        self._check("get_signature_statuses")
        return SimpleNamespace(value=[self.statuses.get(str(sig)) for sig in signatures])

    def get_block_height(self, commitment=None):
        self._check("get_block_height")
        self.height += 100
        return SimpleNamespace(value=self.height)

    # --- program semantics ---

    def _execute(self, data: bytes, accounts: List[Pubkey]) -> None:
        handler = self.accepted.get(data[:8])
        if handler is None:
            raise RPCException("AnchorError: InstructionFallbackNotFound (0x65)")
        if handler == "initialize":
            if self.reject_initialize_as_taken:
                # another request initialized it between our read and our submit
                self.seed_config(accounts[1])
                raise RPCException("Allocate: account already in use")
            if self.config in self.accounts:
                raise RPCException("Allocate: account already in use")
            self.seed_config(accounts[1])
            return
        if self.fail_on_confirm:
            return
        next_id = self.next_id()
        if accounts[1] != firearm_pda(self.program_id, next_id):
            raise RPCException("AnchorError: ConstraintSeeds (0x7d6)")
        if next_id in self.firearms:
            raise RPCException("Allocate: account already in use")
        self.firearms[next_id] = data[8:]
        self.accounts[accounts[1]] = FIREARM_TAG + data[8:]
        self.seed_config(accounts[2], next_id + 1)


class FakeCreditLedger:
    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self.balances: Dict[str, int] = dict(balances or {})
        self.reservations: Dict[str, str] = {}
        self.refunds: List[str] = []
        self.fail_refund = False

    def reserve(self, dealer_id: str, ref: str) -> bool:
        if self.reservations.get(ref) == "reserved":
            return True
        if self.balances.get(dealer_id, 0) <= 0:
            return False
        self.balances[dealer_id] -= 1
        self.reservations[ref] = "reserved"
        return True

    def refund(self, dealer_id: str, ref: str) -> None:
        if self.fail_refund:
            raise RuntimeError("credit ledger offline")
        if self.reservations.get(ref) != "reserved":
            return
        self.reservations[ref] = "refunded"
        self.balances[dealer_id] += 1
        self.refunds.append(ref)


class FakeInventoryStore:
    def __init__(self, records: Optional[List[InventoryRecord]] = None):
        self.records: Dict[int, InventoryRecord] = {r.id: r for r in (records or [])}
        self.minted_calls: List[tuple] = []
        self.fail_commit = False

    def get(self, inventory_id: int) -> Optional[InventoryRecord]:
        return self.records.get(inventory_id)

    def claim(self, inventory_id: int) -> bool:
        record = self.records.get(inventory_id)
        if record is None or record.minted or record.mint_state is not None:
            return False
        record.mint_state = MINT_IN_FLIGHT
        return True

    def release(self, inventory_id: int) -> None:
        record = self.records[inventory_id]
        if record.mint_state == MINT_IN_FLIGHT:
            record.mint_state = None

    def hold(self, inventory_id: int, signature: str, firearm_id: Optional[int] = None) -> None:
        record = self.records[inventory_id]
        record.mint_state = MINT_PENDING_RECONCILE
        record.pending_signature = signature

    def mark_minted(self, inventory_id: int, signature: str, firearm_id: Optional[int] = None) -> None:
        if self.fail_commit:
            raise RuntimeError("database is locked")
        self.minted_calls.append((inventory_id, signature, firearm_id))
        record = self.records[inventory_id]
        record.minted = True
        record.mint_state = None
        record.pending_signature = None
