import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from fakes import FakeCreditLedger, FakeInventoryStore, FakeSolanaNode
from mint_orchestrator import InventoryRecord, MintOrchestrator
from registry_client import ClientContext, RegistryClient
import stores  # noqa: F401  registers SQLModel tables
from tx_builder import get_program_abi

DEALER = "dealer-7"


@pytest.fixture
def program_id() -> Pubkey:
    return Pubkey.new_unique()


@pytest.fixture
def authority() -> Keypair:
    return Keypair()


@pytest.fixture
def node(program_id) -> FakeSolanaNode:
    return FakeSolanaNode(program_id)


@pytest.fixture
def registry(node, authority) -> RegistryClient:
    ctx = ClientContext(keypair=authority, client=node, commitment="confirmed", poll_interval=0, sleep=lambda _: None)
    return RegistryClient(ctx)


@pytest.fixture
def inventory() -> FakeInventoryStore:
    return FakeInventoryStore(
        [
            InventoryRecord(
                id=42,
                owner_id=DEALER,
                serial="SN1",
                make="Glock",
                model="19",
                caliber="9mm",
                date_of_import="2024-01-15",
            ),
            InventoryRecord(id=43, owner_id="someone-else", serial="SN2", make="CZ", model="75", caliber="9mm"),
            InventoryRecord(id=44, owner_id=DEALER, serial="SN3", make="Ruger", model="10/22", caliber=".22", minted=True),
        ]
    )


@pytest.fixture
def credits() -> FakeCreditLedger:
    return FakeCreditLedger({DEALER: 1})


@pytest.fixture
def orchestrator(registry, program_id, credits, inventory) -> MintOrchestrator:
    return MintOrchestrator(
        registry=registry,
        program_id=program_id,
        abi=get_program_abi("v2"),
        credits=credits,
        inventory=inventory,
        ref_factory=lambda inventory_id: f"inv:{inventory_id}:test",
    )


@pytest.fixture
def engine():
    db_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(db_engine)
    return db_engine
