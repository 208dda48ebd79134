from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from errors import MintError, MissingConfigurationError, NotFoundError
from mint_orchestrator import MintOrchestrator
from registry_client import RegistryClient, build_client_context
from stores import SqlCreditLedger, SqlInventoryStore
from tx_builder import get_program_abi, load_pubkey


class Settings(BaseSettings):
    solana_rpc: Optional[str] = None
    firearm_program_id: Optional[str] = None
    platform_wallet_keypair_path: Optional[str] = None
    database_url: str = "sqlite:///./firearm_registry.db"
    commitment: str = "confirmed"
    confirm_poll_interval_seconds: float = 0.8
    mint_abi_version: str = "v2"  # v1 omits the acquisition date from mint_firearm args
    allow_alternate_casing: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def require_mint_settings(self) -> None:
        missing = [
            env_name
            for env_name, value in (
                ("SOLANA_RPC", self.solana_rpc),
                ("FIREARM_PROGRAM_ID", self.firearm_program_id),
                ("PLATFORM_WALLET_KEYPAIR_PATH", self.platform_wallet_keypair_path),
            )
            if not (value or "").strip()
        ]
        if missing:
            raise MissingConfigurationError(f"Missing configuration: {', '.join(missing)}")


app_settings = Settings()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("registry")

connect_args = {"check_same_thread": False} if app_settings.database_url.startswith("sqlite") else {}
engine = create_engine(app_settings.database_url, connect_args=connect_args)


def build_orchestrator(settings: Settings, db_engine: Engine) -> MintOrchestrator:
    settings.require_mint_settings()
    program_id = load_pubkey(settings.firearm_program_id, "FIREARM_PROGRAM_ID")
    abi = get_program_abi(settings.mint_abi_version, settings.allow_alternate_casing)
    ctx = build_client_context(
        settings.solana_rpc.strip(),
        settings.platform_wallet_keypair_path.strip(),
        commitment=settings.commitment,
        poll_interval=settings.confirm_poll_interval_seconds,
    )
    logger.info(
        "mint orchestrator ready program=%s authority=%s abi=%s commitment=%s",
        program_id,
        ctx.authority,
        abi.version,
        settings.commitment,
    )
    return MintOrchestrator(
        registry=RegistryClient(ctx),
        program_id=program_id,
        abi=abi,
        credits=SqlCreditLedger(db_engine),
        inventory=SqlInventoryStore(db_engine),
    )


def init_db(db_engine: Engine) -> None:
    SQLModel.metadata.create_all(db_engine)


def get_engine() -> Engine:
    return engine


def get_credit_ledger(db_engine: Engine = Depends(get_engine)) -> SqlCreditLedger:
    return SqlCreditLedger(db_engine)


def get_orchestrator(request: Request) -> MintOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        reason = getattr(request.app.state, "config_error", None)
        raise MissingConfigurationError(reason or "Mint orchestrator not configured")
    return orchestrator


app = FastAPI(title="Firearm Registry Mint API", version="0.1.0")
app.state.orchestrator = None
app.state.config_error = None


class MintRequest(BaseModel):
    inventory_id: int = Field(gt=0)
    dealer_id: str = Field(min_length=1)


class TopupRequest(BaseModel):
    dealer_id: str = Field(min_length=1)
    amount: int


class WalletRequest(BaseModel):
    dealer_id: str = Field(min_length=1)


class ReconcileRequest(BaseModel):
    inventory_id: int = Field(gt=0)
    signature: str = Field(min_length=1)
    firearm_id: int = Field(ge=0)


@app.exception_handler(MintError)
async def mint_error_handler(request: Request, exc: MintError):
    body = {"ok": False, "error_kind": exc.kind, "message": exc.message}
    signature = getattr(exc, "signature", None)
    if signature:
        body["tx_signature"] = signature
    return JSONResponse(body, status_code=exc.http_status)


@app.on_event("startup")
def startup_event():
    init_db(engine)
    try:
        app.state.orchestrator = build_orchestrator(app_settings, engine)
        app.state.config_error = None
    except MissingConfigurationError as exc:
        # mint routes answer 500 with this message until the config is fixed
        app.state.orchestrator = None
        app.state.config_error = exc.message
        logger.error("%s", exc.message)


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/dealer/mint")
def mint_firearm(req: MintRequest, orchestrator: MintOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.mint(req.inventory_id, req.dealer_id)
    return JSONResponse(
        result.model_dump(exclude={"http_status"}, exclude_none=True),
        status_code=result.http_status,
    )


@app.post("/dealer/admin/initialize")
def admin_initialize(orchestrator: MintOrchestrator = Depends(get_orchestrator)):
    sig = orchestrator.ensure_initialized()
    return {
        "ok": True,
        "config": str(orchestrator.config),
        "signature": sig,
        "already_initialized": sig is None,
    }


@app.get("/registry/config")
def registry_config(orchestrator: MintOrchestrator = Depends(get_orchestrator)):
    cfg = orchestrator.registry.read_config(orchestrator.program_id)
    if cfg is None:
        raise NotFoundError("Registry config not initialized")
    return {
        "ok": True,
        "config": str(orchestrator.config),
        "authority": str(cfg.authority),
        "next_id": cfg.next_id,
    }


@app.post("/dealer/admin/topup")
def admin_topup(req: TopupRequest, ledger: SqlCreditLedger = Depends(get_credit_ledger)):
    # TODO: gate behind the admin role once auth sessions reach this service
    try:
        credits = ledger.top_up(req.dealer_id, req.amount)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "dealer_id": req.dealer_id, "credits": credits}


@app.post("/dealer/wallet")
def dealer_wallet(req: WalletRequest, ledger: SqlCreditLedger = Depends(get_credit_ledger)):
    credits = ledger.ensure_wallet(req.dealer_id)
    return {"ok": True, "dealer_id": req.dealer_id, "credits": credits}


@app.post("/dealer/admin/reconcile")
def admin_reconcile(req: ReconcileRequest, orchestrator: MintOrchestrator = Depends(get_orchestrator)):
    orchestrator.reconcile(req.inventory_id, req.signature, req.firearm_id)
    return {"ok": True, "inventory_id": req.inventory_id, "tx_signature": req.signature}
