import base64
import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, NamedTuple, Optional

from borsh_construct import CStruct, I64, String, U32, U64
from construct import ConstructError
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from errors import MissingConfigurationError

SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
CONFIG_SEED = b"config"
FIREARM_SEED = b"firearm"
ACCOUNT_TAG_SIZE = 8  # Anchor account discriminator
REGISTRY_CONFIG_SIZE = ACCOUNT_TAG_SIZE + 32 + 8

U32_MAX = 2**32 - 1
U64_MAX = 2**64 - 1
I64_MIN = -(2**63)
I64_MAX = 2**63 - 1

MintFirearmV1Layout = CStruct(
    "serial" / String,
    "make" / String,
    "model" / String,
    "caliber" / String,
    "owner_id" / String,
)
MintFirearmV2Layout = CStruct(
    "serial" / String,
    "make" / String,
    "model" / String,
    "caliber" / String,
    "date_brought_in" / I64,
    "owner_id" / String,
)


def load_pubkey(value: Optional[str], name: str) -> Pubkey:
    if not value:
        raise MissingConfigurationError(f"Missing configuration: {name}")
    try:
        return Pubkey.from_string(value.strip())
    except Exception as exc:  # noqa: BLE001
        raise MissingConfigurationError(f"{name} is not a valid pubkey: {exc}") from exc


# --- wire primitives ---


def _check_range(value: int, low: int, high: int, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{label} expects an int, got {type(value).__name__}")
    if value < low or value > high:
        raise ValueError(f"{label} out of range: {value}")
    return value


def encode_string(value: str) -> bytes:
    return String.build(value)


def encode_u32_le(value: int) -> bytes:
    return U32.build(_check_range(value, 0, U32_MAX, "u32"))


def encode_i64_le(value: int) -> bytes:
    return I64.build(_check_range(value, I64_MIN, I64_MAX, "i64"))


def encode_u64_le(value: int) -> bytes:
    return U64.build(_check_range(value, 0, U64_MAX, "u64"))


# --- discriminators ---


def sighash(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def handler_name_variants(name: str, allow_alternate: bool = True) -> List[str]:
    """Canonical snake_case name first, then the camelCase spelling if it differs."""
    variants = [name]
    alternate = snake_to_camel(name)
    if allow_alternate and alternate != name:
        variants.append(alternate)
    return variants


# --- program contract ---


@dataclass(frozen=True)
class ProgramAbi:
    version: str
    initialize_handler: str = "initialize"
    mint_handler: str = "mint_firearm"
    include_acquisition_date: bool = True
    allow_alternate_casing: bool = True


PROGRAM_ABIS: Dict[str, ProgramAbi] = {
    "v1": ProgramAbi(version="v1", include_acquisition_date=False),
    "v2": ProgramAbi(version="v2", include_acquisition_date=True),
}


def get_program_abi(version: str, allow_alternate_casing: bool = True) -> ProgramAbi:
    abi = PROGRAM_ABIS.get(version)
    if abi is None:
        raise MissingConfigurationError(
            f"Unknown mint ABI version {version!r}; expected one of {sorted(PROGRAM_ABIS)}"
        )
    if abi.allow_alternate_casing != allow_alternate_casing:
        abi = ProgramAbi(
            version=abi.version,
            initialize_handler=abi.initialize_handler,
            mint_handler=abi.mint_handler,
            include_acquisition_date=abi.include_acquisition_date,
            allow_alternate_casing=allow_alternate_casing,
        )
    return abi


@dataclass(frozen=True)
class FirearmFields:
    serial: str
    make: str
    model: str
    caliber: str
    owner_id: str
    acquisition_date: Optional[int] = None  # unix seconds


def acquisition_date_seconds(value: Optional[str]) -> int:
    """ISO date or datetime to unix seconds; anything unparsable becomes 0."""
    if not value:
        return 0
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


# --- PDAs ---


def config_pda(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([CONFIG_SEED], program_id)[0]


def firearm_pda(program_id: Pubkey, firearm_id: int) -> Pubkey:
    return Pubkey.find_program_address([FIREARM_SEED, encode_u64_le(firearm_id)], program_id)[0]


# --- instructions ---


def encode_initialize(handler: str = "initialize") -> bytes:
    return sighash(handler)


def encode_mint_firearm_args(fields: FirearmFields, abi: ProgramAbi) -> bytes:
    if abi.include_acquisition_date:
        date_value = fields.acquisition_date or 0
        _check_range(date_value, I64_MIN, I64_MAX, "i64")
        return MintFirearmV2Layout.build(
            {
                "serial": fields.serial,
                "make": fields.make,
                "model": fields.model,
                "caliber": fields.caliber,
                "date_brought_in": date_value,
                "owner_id": fields.owner_id,
            }
        )
    return MintFirearmV1Layout.build(
        {
            "serial": fields.serial,
            "make": fields.make,
            "model": fields.model,
            "caliber": fields.caliber,
            "owner_id": fields.owner_id,
        }
    )


def encode_mint_firearm(fields: FirearmFields, abi: ProgramAbi, handler: Optional[str] = None) -> bytes:
    return sighash(handler or abi.mint_handler) + encode_mint_firearm_args(fields, abi)


def build_initialize_ix(
    program_id: Pubkey,
    authority: Pubkey,
    config: Pubkey,
    handler: str = "initialize",
) -> Instruction:
    # config is a PDA and never signs
    accounts = [
        AccountMeta(pubkey=config, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=True),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=program_id, data=encode_initialize(handler), accounts=accounts)


def build_mint_firearm_ix(
    program_id: Pubkey,
    config: Pubkey,
    firearm: Pubkey,
    authority: Pubkey,
    fields: FirearmFields,
    abi: ProgramAbi,
    handler: Optional[str] = None,
) -> Instruction:
    accounts = [
        AccountMeta(pubkey=config, is_signer=False, is_writable=True),
        AccountMeta(pubkey=firearm, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=True),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=program_id, data=encode_mint_firearm(fields, abi, handler), accounts=accounts)


# --- account decoding ---


class RegistryConfig(NamedTuple):
    authority: Pubkey
    next_id: int


def parse_registry_config(data: bytes) -> Optional[RegistryConfig]:
    if len(data) < REGISTRY_CONFIG_SIZE:
        return None
    offset = ACCOUNT_TAG_SIZE
    authority = Pubkey.from_bytes(data[offset : offset + 32])
    offset += 32
    next_id = int.from_bytes(data[offset : offset + 8], "little")
    return RegistryConfig(authority=authority, next_id=next_id)


def parse_firearm_record(data: bytes, abi: ProgramAbi) -> Optional[FirearmFields]:
    """Decode a firearm account: 8-byte tag, then the mint_firearm args in the ABI layout."""
    layout = MintFirearmV2Layout if abi.include_acquisition_date else MintFirearmV1Layout
    try:
        parsed = layout.parse(data[ACCOUNT_TAG_SIZE:])
    except (ConstructError, UnicodeDecodeError):
        return None
    return FirearmFields(
        serial=parsed.serial,
        make=parsed.make,
        model=parsed.model,
        caliber=parsed.caliber,
        owner_id=parsed.owner_id,
        acquisition_date=parsed.date_brought_in if abi.include_acquisition_date else None,
    )


def instruction_to_dict(ix: Instruction) -> dict:
    return {
        "program_id": str(ix.program_id),
        "keys": [
            {
                "pubkey": str(k.pubkey),
                "is_signer": k.is_signer,
                "is_writable": k.is_writable,
            }
            for k in ix.accounts
        ],
        "data": base64.b64encode(ix.data).decode(),
    }
