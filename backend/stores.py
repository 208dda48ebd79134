"""SQL-backed credit ledger and inventory store used by the mint pipeline."""

import logging
import time
from typing import Optional

from sqlalchemy import insert, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Field, Session, SQLModel, select

from errors import AlreadyMintedError, NotFoundError
from mint_orchestrator import MINT_IN_FLIGHT, MINT_PENDING_RECONCILE, InventoryRecord

logger = logging.getLogger("registry.stores")

RESERVED = "reserved"
REFUNDED = "refunded"


class Inventory(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    serial: Optional[str] = None
    make: str
    model: str
    caliber: str
    date_of_import: Optional[str] = None
    owner_id: str = Field(index=True)
    minted: bool = Field(default=False)
    mint_state: Optional[str] = None  # in_flight | pending_reconcile
    pending_signature: Optional[str] = None
    minted_at: Optional[float] = None
    mint_signature: Optional[str] = None
    firearm_id: Optional[int] = None


class DealerWallet(SQLModel, table=True):
    dealer_id: str = Field(primary_key=True)
    credits: int = Field(default=0)
    updated_at: float = Field(default_factory=lambda: time.time())


class CreditReservation(SQLModel, table=True):
    ref: str = Field(primary_key=True)
    dealer_id: str = Field(index=True)
    status: str = Field(default=RESERVED)
    created_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())


class SqlCreditLedger:
    """One credit per mint; every spend and refund is keyed by an idempotency ref."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def reserve(self, dealer_id: str, ref: str) -> bool:
        try:
            return self._reserve(dealer_id, ref)
        except IntegrityError:
            # concurrent replay of the same ref inserted first
            logger.info("credit reserve raced on ref=%s; re-reading", ref)
            return self._is_reserved(dealer_id, ref)

    def _reserve(self, dealer_id: str, ref: str) -> bool:
        now = time.time()
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(CreditReservation.dealer_id, CreditReservation.status).where(CreditReservation.ref == ref)
            ).first()
            if existing is not None and existing.status == RESERVED:
                return existing.dealer_id == dealer_id
            if existing is not None and existing.dealer_id != dealer_id:
                return False
            spent = conn.execute(
                update(DealerWallet)
                .where(DealerWallet.dealer_id == dealer_id, DealerWallet.credits > 0)
                .values(credits=DealerWallet.credits - 1, updated_at=now)
            )
            if spent.rowcount != 1:
                return False
            if existing is None:
                conn.execute(
                    insert(CreditReservation).values(
                        ref=ref, dealer_id=dealer_id, status=RESERVED, created_at=now, updated_at=now
                    )
                )
            else:
                conn.execute(
                    update(CreditReservation)
                    .where(CreditReservation.ref == ref)
                    .values(status=RESERVED, updated_at=now)
                )
        logger.info("credit reserved dealer=%s ref=%s", dealer_id, ref)
        return True

    def _is_reserved(self, dealer_id: str, ref: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(CreditReservation, ref)
            return row is not None and row.dealer_id == dealer_id and row.status == RESERVED

    def refund(self, dealer_id: str, ref: str) -> None:
        now = time.time()
        with self.engine.begin() as conn:
            flipped = conn.execute(
                update(CreditReservation)
                .where(
                    CreditReservation.ref == ref,
                    CreditReservation.dealer_id == dealer_id,
                    CreditReservation.status == RESERVED,
                )
                .values(status=REFUNDED, updated_at=now)
            )
            if flipped.rowcount != 1:
                logger.info("credit refund no-op dealer=%s ref=%s", dealer_id, ref)
                return
            conn.execute(
                update(DealerWallet)
                .where(DealerWallet.dealer_id == dealer_id)
                .values(credits=DealerWallet.credits + 1, updated_at=now)
            )

    def balance(self, dealer_id: str) -> Optional[int]:
        with Session(self.engine) as session:
            wallet = session.get(DealerWallet, dealer_id)
            return wallet.credits if wallet else None

    def ensure_wallet(self, dealer_id: str) -> int:
        with Session(self.engine) as session:
            wallet = session.get(DealerWallet, dealer_id)
            if wallet:
                return wallet.credits
            wallet = DealerWallet(dealer_id=dealer_id, credits=0)
            session.add(wallet)
            session.commit()
            logger.info("dealer wallet created dealer=%s", dealer_id)
            return 0

    def top_up(self, dealer_id: str, amount: int) -> int:
        if amount <= 0:
            raise ValueError("Top-up amount must be positive")
        with Session(self.engine) as session:
            wallet = session.get(DealerWallet, dealer_id)
            if not wallet:
                raise NotFoundError("Dealer wallet not found (create it first)")
            wallet.credits += amount
            wallet.updated_at = time.time()
            session.add(wallet)
            session.commit()
            logger.info("dealer wallet topped up dealer=%s amount=%s credits=%s", dealer_id, amount, wallet.credits)
            return wallet.credits


class SqlInventoryStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, inventory_id: int) -> Optional[InventoryRecord]:
        with Session(self.engine) as session:
            row = session.get(Inventory, inventory_id)
            if row is None:
                return None
            return InventoryRecord(
                id=row.id,
                owner_id=row.owner_id,
                make=row.make,
                model=row.model,
                caliber=row.caliber,
                serial=row.serial,
                date_of_import=row.date_of_import,
                minted=bool(row.minted),
                mint_state=row.mint_state,
                pending_signature=row.pending_signature,
            )

    def add(self, item: Inventory) -> int:
        with Session(self.engine) as session:
            session.add(item)
            session.commit()
            session.refresh(item)
            return item.id

    def claim(self, inventory_id: int) -> bool:
        """Take the item for one mint attempt. False if minted or already claimed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(Inventory)
                .where(
                    Inventory.id == inventory_id,
                    Inventory.minted == False,  # noqa: E712
                    Inventory.mint_state.is_(None),
                )
                .values(mint_state=MINT_IN_FLIGHT)
            )
        return result.rowcount == 1

    def release(self, inventory_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(Inventory)
                .where(Inventory.id == inventory_id, Inventory.mint_state == MINT_IN_FLIGHT)
                .values(mint_state=None)
            )

    def hold(self, inventory_id: int, signature: str, firearm_id: Optional[int] = None) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(Inventory)
                .where(Inventory.id == inventory_id, Inventory.minted == False)  # noqa: E712
                .values(mint_state=MINT_PENDING_RECONCILE, pending_signature=signature, firearm_id=firearm_id)
            )
        logger.warning("inventory held for reconcile inventory_id=%s sig=%s", inventory_id, signature)

    def mark_minted(self, inventory_id: int, signature: str, firearm_id: Optional[int] = None) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(Inventory)
                .where(Inventory.id == inventory_id, Inventory.minted == False)  # noqa: E712
                .values(
                    minted=True,
                    minted_at=time.time(),
                    mint_signature=signature,
                    firearm_id=firearm_id,
                    mint_state=None,
                    pending_signature=None,
                )
            )
            if result.rowcount == 1:
                return
            exists = conn.execute(select(Inventory.id).where(Inventory.id == inventory_id)).first()
        if exists is None:
            raise NotFoundError("Inventory item not found")
        raise AlreadyMintedError("Already minted")
