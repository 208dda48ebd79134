"""
Mint pipeline for on-chain firearm records.

    VALIDATING -> CREDIT_RESERVED -> CONFIG_ENSURED -> ID_ALLOCATED
        -> TX_SUBMITTED -> TX_CONFIRMED -> COMMITTED

The inventory item is claimed before any credit is touched, so one item has at
most one attempt in flight. Any failure after the credit reservation is
compensated by refunding the same idempotency reference and releasing the claim.
A confirmed mint whose inventory commit fails is still refunded, but the item
stays held with the signature until an operator reconciles it.

Known gap: next_id is read and then used without serialization. Two concurrent
mints can read the same id; the loser is only detected when the program rejects
its firearm PDA. Serializing submissions per program needs the program's own
allocation guarantees confirmed first.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

from pydantic import BaseModel
from solders.pubkey import Pubkey

from errors import (
    AlreadyMintedError,
    ChainRejectionError,
    ChainUnavailableError,
    ConsistencyWarning,
    ForbiddenError,
    InsufficientCreditError,
    MintError,
    MintInProgressError,
    NotFoundError,
    ValidationError,
)
from registry_client import RegistryClient
from tx_builder import (
    FirearmFields,
    ProgramAbi,
    acquisition_date_seconds,
    build_initialize_ix,
    build_mint_firearm_ix,
    config_pda,
    firearm_pda,
    handler_name_variants,
    instruction_to_dict,
    parse_firearm_record,
    parse_registry_config,
)

logger = logging.getLogger("registry.mint")

COMMIT_FAILED_MESSAGE = "minted on-chain but commit failed"

# inventory mint_state values
MINT_IN_FLIGHT = "in_flight"
MINT_PENDING_RECONCILE = "pending_reconcile"


class MintStage(str, Enum):
    VALIDATING = "validating"
    CREDIT_RESERVED = "credit_reserved"
    CONFIG_ENSURED = "config_ensured"
    ID_ALLOCATED = "id_allocated"
    TX_SUBMITTED = "tx_submitted"
    TX_CONFIRMED = "tx_confirmed"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class InventoryRecord:
    id: int
    owner_id: str
    make: str
    model: str
    caliber: str
    serial: Optional[str] = None
    date_of_import: Optional[str] = None
    minted: bool = False
    mint_state: Optional[str] = None
    pending_signature: Optional[str] = None


class CreditLedger(Protocol):
    def reserve(self, dealer_id: str, ref: str) -> bool: ...

    def refund(self, dealer_id: str, ref: str) -> None: ...


class InventoryStore(Protocol):
    def get(self, inventory_id: int) -> Optional[InventoryRecord]: ...

    def claim(self, inventory_id: int) -> bool: ...

    def release(self, inventory_id: int) -> None: ...

    def hold(self, inventory_id: int, signature: str, firearm_id: Optional[int] = None) -> None: ...

    def mark_minted(self, inventory_id: int, signature: str, firearm_id: Optional[int] = None) -> None: ...


@dataclass
class MintAttempt:
    inventory_id: int
    dealer_id: str
    ref: str
    stage: MintStage = MintStage.VALIDATING
    config: Optional[Pubkey] = None
    firearm: Optional[Pubkey] = None
    allocated_id: Optional[int] = None
    signature: Optional[str] = None
    init_signature: Optional[str] = None
    handlers_tried: List[str] = field(default_factory=list)


class MintResult(BaseModel):
    ok: bool
    tx_signature: Optional[str] = None
    config: Optional[str] = None
    firearm: Optional[str] = None
    allocated_id: Optional[int] = None
    init_signature: Optional[str] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    http_status: int = 200


def default_ref(inventory_id: int) -> str:
    return f"inv:{inventory_id}:{uuid.uuid4().hex}"


class MintOrchestrator:
    def __init__(
        self,
        registry: RegistryClient,
        program_id: Pubkey,
        abi: ProgramAbi,
        credits: CreditLedger,
        inventory: InventoryStore,
        ref_factory: Callable[[int], str] = default_ref,
    ):
        self.registry = registry
        self.program_id = program_id
        self.abi = abi
        self.credits = credits
        self.inventory = inventory
        self.ref_factory = ref_factory
        self.config = config_pda(program_id)

    # --- pipeline ---

    def mint(self, inventory_id: int, dealer_id: str) -> MintResult:
        attempt = MintAttempt(inventory_id=inventory_id, dealer_id=dealer_id, ref=self.ref_factory(inventory_id))
        try:
            record = self._validate(attempt)
            self._claim(attempt)
        except MintError as exc:
            return self._failure(attempt, exc)

        try:
            self._reserve(attempt)
        except MintError as exc:
            self._release(attempt, exc)
            return self._failure(attempt, exc)
        except Exception as exc:
            self._release(attempt, exc)
            raise

        try:
            self._mint_on_chain(attempt, record)
        except MintError as exc:
            self._compensate(attempt, exc)
            return self._failure(attempt, exc)
        except Exception as exc:
            self._compensate(attempt, exc)
            raise

        try:
            self.inventory.mark_minted(inventory_id, attempt.signature, attempt.allocated_id)
        except Exception as exc:  # noqa: BLE001
            logger.critical(
                "CRITICAL_DESYNC mint: tx %s confirmed for inventory_id=%s dealer=%s firearm_id=%s but commit failed; error=%s",
                attempt.signature,
                inventory_id,
                dealer_id,
                attempt.allocated_id,
                exc,
                exc_info=True,
            )
            self._refund(attempt, exc)
            self._hold(attempt)
            return self._failure(attempt, ConsistencyWarning(COMMIT_FAILED_MESSAGE, attempt.signature))

        self._advance(attempt, MintStage.COMMITTED)
        return MintResult(
            ok=True,
            tx_signature=attempt.signature,
            config=str(attempt.config),
            firearm=str(attempt.firearm),
            allocated_id=attempt.allocated_id,
            init_signature=attempt.init_signature,
        )

    def _advance(self, attempt: MintAttempt, stage: MintStage) -> None:
        attempt.stage = stage
        logger.info("mint stage=%s inventory_id=%s ref=%s", stage.value, attempt.inventory_id, attempt.ref)

    def _validate(self, attempt: MintAttempt) -> InventoryRecord:
        record = self.inventory.get(attempt.inventory_id)
        if record is None:
            raise NotFoundError("Inventory item not found")
        if record.owner_id != attempt.dealer_id:
            raise ForbiddenError("Not your inventory item")
        if record.minted:
            raise AlreadyMintedError("Already minted")
        if record.mint_state == MINT_PENDING_RECONCILE:
            raise MintInProgressError("Minted on-chain, awaiting reconcile")
        return record

    def _claim(self, attempt: MintAttempt) -> None:
        if not self.inventory.claim(attempt.inventory_id):
            raise MintInProgressError("Mint already in progress")

    def _release(self, attempt: MintAttempt, cause: Exception) -> None:
        try:
            self.inventory.release(attempt.inventory_id)
        except Exception as exc:  # noqa: BLE001
            # the item stays claimed; it cannot be minted twice, only not at all
            logger.critical(
                "CRITICAL_DESYNC release failed inventory_id=%s after %s; release_error=%s",
                attempt.inventory_id,
                cause,
                exc,
                exc_info=True,
            )

    def _hold(self, attempt: MintAttempt) -> None:
        try:
            self.inventory.hold(attempt.inventory_id, attempt.signature, attempt.allocated_id)
        except Exception as exc:  # noqa: BLE001
            logger.critical(
                "CRITICAL_DESYNC hold failed inventory_id=%s sig=%s; item left claimed; error=%s",
                attempt.inventory_id,
                attempt.signature,
                exc,
                exc_info=True,
            )

    def _reserve(self, attempt: MintAttempt) -> None:
        if not self.credits.reserve(attempt.dealer_id, attempt.ref):
            raise InsufficientCreditError("Not enough credits")
        self._advance(attempt, MintStage.CREDIT_RESERVED)

    def _mint_on_chain(self, attempt: MintAttempt, record: InventoryRecord) -> None:
        attempt.config = self.config
        attempt.init_signature = self.ensure_initialized()
        self._advance(attempt, MintStage.CONFIG_ENSURED)
        fields = self.firearm_fields(record, attempt.dealer_id)

        failures: List[Tuple[str, ChainRejectionError]] = []
        for handler in handler_name_variants(self.abi.mint_handler, self.abi.allow_alternate_casing):
            if failures:
                logger.warning(
                    "mint handler=%s rejected (%s); retrying once with handler=%s abi=%s",
                    failures[-1][0],
                    failures[-1][1].message,
                    handler,
                    self.abi.version,
                )
            attempt.handlers_tried.append(handler)
            try:
                self._submit_mint(attempt, fields, handler)
                return
            except ChainRejectionError as exc:
                failures.append((handler, exc))
            except ChainUnavailableError as exc:
                if not failures:
                    raise
                detail = "; ".join(f"{name}: {err.message}" for name, err in failures)
                raise type(exc)(f"{exc.message} (after {detail})", signature=exc.signature) from exc
        raise _combined_rejection("mint_firearm", failures)

    def _submit_mint(self, attempt: MintAttempt, fields: FirearmFields, handler: str) -> None:
        attempt.allocated_id = self.allocate_id()
        attempt.firearm = firearm_pda(self.program_id, attempt.allocated_id)
        self._advance(attempt, MintStage.ID_ALLOCATED)
        ix = build_mint_firearm_ix(
            self.program_id,
            self.config,
            attempt.firearm,
            self.registry.authority,
            fields,
            self.abi,
            handler=handler,
        )
        logger.debug("mint ix handler=%s %s", handler, instruction_to_dict(ix))
        info = self.registry.latest_blockhash()
        attempt.signature = self.registry.submit([ix], info.blockhash)
        self._advance(attempt, MintStage.TX_SUBMITTED)
        self.registry.confirm(attempt.signature, info)
        self._advance(attempt, MintStage.TX_CONFIRMED)

    def _compensate(self, attempt: MintAttempt, cause: Exception) -> None:
        self._refund(attempt, cause)
        self._release(attempt, cause)

    def _refund(self, attempt: MintAttempt, cause: Exception) -> None:
        try:
            self.credits.refund(attempt.dealer_id, attempt.ref)
        except Exception as exc:  # noqa: BLE001
            logger.critical(
                "CRITICAL_DESYNC refund failed dealer=%s ref=%s after %s; refund_error=%s",
                attempt.dealer_id,
                attempt.ref,
                cause,
                exc,
                exc_info=True,
            )
            return
        logger.info("credit refunded dealer=%s ref=%s stage=%s", attempt.dealer_id, attempt.ref, attempt.stage.value)

    def _failure(self, attempt: MintAttempt, exc: MintError) -> MintResult:
        attempt.stage = MintStage.FAILED
        logger.warning(
            "mint failed inventory_id=%s dealer=%s kind=%s error=%s",
            attempt.inventory_id,
            attempt.dealer_id,
            exc.kind,
            exc.message,
        )
        return MintResult(
            ok=False,
            tx_signature=getattr(exc, "signature", None),
            config=str(attempt.config) if attempt.config else None,
            firearm=str(attempt.firearm) if attempt.firearm else None,
            allocated_id=attempt.allocated_id,
            error_kind=exc.kind,
            message=exc.message,
            http_status=exc.http_status,
        )

    # --- chain steps ---

    def firearm_fields(self, record: InventoryRecord, owner_id: str) -> FirearmFields:
        acquisition = None
        if self.abi.include_acquisition_date:
            acquisition = acquisition_date_seconds(record.date_of_import)
        return FirearmFields(
            serial=record.serial or "",
            make=record.make,
            model=record.model,
            caliber=record.caliber,
            owner_id=owner_id,
            acquisition_date=acquisition,
        )

    def ensure_initialized(self) -> Optional[str]:
        """Create the registry config if absent. Returns the init signature, or None if it already existed."""
        if self.registry.get_account(self.config) is not None:
            return None
        failures: List[Tuple[str, ChainRejectionError]] = []
        for handler in handler_name_variants(self.abi.initialize_handler, self.abi.allow_alternate_casing):
            if failures:
                logger.warning("initialize handler=%s rejected; retrying once with handler=%s", failures[-1][0], handler)
            ix = build_initialize_ix(self.program_id, self.registry.authority, self.config, handler=handler)
            try:
                sig = self.registry.send_and_confirm([ix])
            except ChainRejectionError as exc:
                # another request may have won the initialize race
                if self.registry.get_account(self.config) is not None:
                    logger.info("registry config already initialized config=%s", self.config)
                    return None
                failures.append((handler, exc))
                continue
            logger.info("registry config initialized config=%s sig=%s", self.config, sig)
            return sig
        raise _combined_rejection("initialize", failures)

    def allocate_id(self) -> int:
        data = self.registry.get_account(self.config)
        if data is None:
            raise ChainRejectionError("Config not initialized yet")
        cfg = parse_registry_config(data)
        if cfg is None:
            raise ChainRejectionError("Config account data too small (wrong program/config PDA?)")
        return cfg.next_id

    # --- operator helpers ---

    def reconcile(self, inventory_id: int, signature: str, firearm_id: int) -> None:
        """
        Commit minted=true for a mint whose chain write succeeded but commit did not.

        The signature must be confirmed without error, and the firearm account at
        firearm_id must exist and carry this item's serial, make, model, caliber
        and owner.
        """
        record = self.inventory.get(inventory_id)
        if record is None:
            raise NotFoundError("Inventory item not found")
        if record.minted:
            raise AlreadyMintedError("Already minted")
        if record.pending_signature and record.pending_signature != signature:
            raise ValidationError(f"Item is held for transaction {record.pending_signature}, not {signature}")
        if not self.registry.signature_succeeded(signature):
            raise ChainRejectionError(f"Transaction {signature} is not confirmed without error", signature=signature)

        data = self.registry.get_account(firearm_pda(self.program_id, firearm_id))
        if data is None:
            raise NotFoundError(f"No firearm record on chain for id {firearm_id}")
        on_chain = parse_firearm_record(data, self.abi)
        expected = self.firearm_fields(record, record.owner_id)
        if on_chain is None or _identity(on_chain) != _identity(expected):
            raise ValidationError(f"Firearm record {firearm_id} does not match inventory item {inventory_id}")

        self.inventory.mark_minted(inventory_id, signature, firearm_id)
        logger.info("reconciled inventory_id=%s sig=%s firearm_id=%s", inventory_id, signature, firearm_id)


def _combined_rejection(instruction: str, failures: List[Tuple[str, ChainRejectionError]]) -> ChainRejectionError:
    detail = "; ".join(f"{handler}: {exc.message}" for handler, exc in failures)
    return ChainRejectionError(
        f"{instruction} rejected for every handler variant ({detail})",
        handlers=[handler for handler, _ in failures],
        signature=failures[-1][1].signature if failures else None,
    )


def _identity(fields: FirearmFields) -> Tuple[str, str, str, str, str]:
    return (fields.serial, fields.make, fields.model, fields.caliber, fields.owner_id)
