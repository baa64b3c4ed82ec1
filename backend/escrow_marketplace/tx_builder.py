import base64
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from borsh_construct import CStruct, U64, U8, Vec
from construct import ConstructError
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from escrow_marketplace.errors import DerivationError, EncodingOverflow
from escrow_marketplace.settings import get_settings

AddressLike = Union[Pubkey, str]


def load_pubkey(value: Optional[str], env_name: str) -> Pubkey:
    if not value:
        raise RuntimeError(f"{env_name} must be set to a valid program id")
    try:
        return Pubkey.from_string(value)
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(f"{env_name} is not a valid pubkey: {exc}") from exc


PROGRAM_ID = load_pubkey(get_settings().program_id, "PROGRAM_ID")
SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
SYSVAR_RENT_PUBKEY = Pubkey.from_string("SysvarRent111111111111111111111111111111111")

GLOBAL_STATE_SEED = b"global"
SELLER_SEED = b"seller"
BUYER_SEED = b"buyer"
LOGISTICS_PROVIDER_SEED = b"logistics"
TRADE_SEED = b"trade"
PURCHASE_SEED = b"purchase"

PRODUCT_NAME_LEN = 32
U64_MAX = 2**64 - 1


def to_pubkey(value: AddressLike) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(value)


# --- Address derivation -----------------------------------------------------


class AccountKind(str, Enum):
    GLOBAL_STATE = "global_state"
    SELLER = "seller"
    BUYER = "buyer"
    LOGISTICS_PROVIDER = "logistics_provider"
    TRADE = "trade"
    PURCHASE = "purchase"


# Seed literal followed by the dynamic seeds each record kind takes, in order.
SEED_SCHEMA: Dict[AccountKind, Tuple[bytes, Tuple[str, ...]]] = {
    AccountKind.GLOBAL_STATE: (GLOBAL_STATE_SEED, ()),
    AccountKind.SELLER: (SELLER_SEED, ("owner",)),
    AccountKind.BUYER: (BUYER_SEED, ("owner",)),
    AccountKind.LOGISTICS_PROVIDER: (LOGISTICS_PROVIDER_SEED, ("owner",)),
    AccountKind.TRADE: (TRADE_SEED, ("counter", "owner")),
    AccountKind.PURCHASE: (PURCHASE_SEED, ("counter", "owner")),
}


def counter_seed(value: int) -> bytes:
    if isinstance(value, bool) or not isinstance(value, int):
        raise DerivationError(f"Counter seed must be an integer, got {value!r}")
    try:
        return value.to_bytes(8, "little")
    except OverflowError as exc:
        raise DerivationError(f"Counter seed {value} does not fit in u64") from exc


def derive(kind: Union[AccountKind, str], *seeds: Any, program_id: Optional[Pubkey] = None) -> Pubkey:
    """Compute the program-derived address of a marketplace record.

    ``seeds`` are the dynamic seeds for ``kind``: nothing for the global
    state, the owner for identity records, and ``(counter, owner)`` for
    trades and purchases.
    """
    try:
        kind = AccountKind(kind)
    except ValueError as exc:
        raise DerivationError(f"Unknown account kind {kind!r}") from exc
    literal, names = SEED_SCHEMA[kind]
    if len(seeds) != len(names):
        raise DerivationError(f"{kind.value} expects seeds {names}, got {len(seeds)} value(s)")

    parts: List[bytes] = [literal]
    for name, value in zip(names, seeds):
        if name == "counter":
            parts.append(counter_seed(value))
            continue
        try:
            parts.append(bytes(to_pubkey(value)))
        except Exception as exc:  # noqa: BLE001
            raise DerivationError(f"Invalid {name} address for {kind.value}: {exc}") from exc
    try:
        return Pubkey.find_program_address(parts, program_id or PROGRAM_ID)[0]
    except Exception as exc:  # noqa: BLE001
        raise DerivationError(f"Failed to derive {kind.value} address: {exc}") from exc


def global_state_pda(program_id: Optional[Pubkey] = None) -> Pubkey:
    return derive(AccountKind.GLOBAL_STATE, program_id=program_id)


def seller_pda(owner: AddressLike, program_id: Optional[Pubkey] = None) -> Pubkey:
    return derive(AccountKind.SELLER, owner, program_id=program_id)


def buyer_pda(owner: AddressLike, program_id: Optional[Pubkey] = None) -> Pubkey:
    return derive(AccountKind.BUYER, owner, program_id=program_id)


def logistics_provider_pda(owner: AddressLike, program_id: Optional[Pubkey] = None) -> Pubkey:
    return derive(AccountKind.LOGISTICS_PROVIDER, owner, program_id=program_id)


def trade_pda(trade_id: int, seller: AddressLike, program_id: Optional[Pubkey] = None) -> Pubkey:
    return derive(AccountKind.TRADE, trade_id, seller, program_id=program_id)


def purchase_pda(purchase_id: int, buyer: AddressLike, program_id: Optional[Pubkey] = None) -> Pubkey:
    return derive(AccountKind.PURCHASE, purchase_id, buyer, program_id=program_id)


# --- Instruction payloads ---------------------------------------------------


class Operation(IntEnum):
    INITIALIZE = 0
    REGISTER_LOGISTICS_PROVIDER = 1
    REGISTER_SELLER = 2
    REGISTER_BUYER = 3
    CREATE_TRADE = 4
    BUY_TRADE = 5
    CONFIRM_DELIVERY_AND_PURCHASE = 6


CreateTradeLayout = CStruct(
    "product_name" / U8[PRODUCT_NAME_LEN],
    "product_cost" / U64,
    "logistics_costs" / Vec(U64),
    "logistics_providers" / Vec(U8[32]),
    "total_quantity" / U64,
)
BuyTradeLayout = CStruct(
    "trade_id" / U64,
    "quantity" / U64,
    "logistics_provider" / U8[32],
)
ConfirmDeliveryLayout = CStruct("purchase_id" / U64)

INSTRUCTION_LAYOUTS: Dict[Operation, CStruct] = {
    Operation.INITIALIZE: CStruct(),
    Operation.REGISTER_LOGISTICS_PROVIDER: CStruct(),
    Operation.REGISTER_SELLER: CStruct(),
    Operation.REGISTER_BUYER: CStruct(),
    Operation.CREATE_TRADE: CreateTradeLayout,
    Operation.BUY_TRADE: BuyTradeLayout,
    Operation.CONFIRM_DELIVERY_AND_PURCHASE: ConfirmDeliveryLayout,
}

# Fields the layouts store as raw 32-byte arrays.
ADDRESS_FIELDS = {"logistics_provider"}
ADDRESS_LIST_FIELDS = {"logistics_providers"}
TEXT_FIELDS = {"product_name"}


def encode_product_name(name: str) -> bytes:
    raw = name.encode("utf-8")[:PRODUCT_NAME_LEN]
    return raw.ljust(PRODUCT_NAME_LEN, b"\x00")


def decode_product_name(raw: bytes) -> str:
    return bytes(raw).rstrip(b"\x00").decode("utf-8", errors="ignore")


def _address_bytes(value: AddressLike) -> List[int]:
    try:
        return list(bytes(to_pubkey(value)))
    except Exception as exc:  # noqa: BLE001
        raise EncodingOverflow(f"Invalid address {value!r}: {exc}") from exc


def _to_layout_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    values = dict(fields)
    for name in TEXT_FIELDS & values.keys():
        values[name] = list(encode_product_name(values[name]))
    for name in ADDRESS_FIELDS & values.keys():
        values[name] = _address_bytes(values[name])
    for name in ADDRESS_LIST_FIELDS & values.keys():
        values[name] = [_address_bytes(v) for v in values[name]]
    return values


def _from_layout_values(parsed: Dict[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for name, value in parsed.items():
        if name.startswith("_"):
            continue
        if name in TEXT_FIELDS:
            value = decode_product_name(bytes(value))
        elif name in ADDRESS_FIELDS:
            value = Pubkey.from_bytes(bytes(value))
        elif name in ADDRESS_LIST_FIELDS:
            value = [Pubkey.from_bytes(bytes(v)) for v in value]
        elif isinstance(value, list):
            value = list(value)
        fields[name] = value
    return fields


def encode(operation: Union[Operation, int], fields: Optional[Dict[str, Any]] = None) -> bytes:
    """Serialize ``fields`` for ``operation``: discriminator byte then the borsh payload."""
    operation = Operation(operation)
    layout = INSTRUCTION_LAYOUTS[operation]
    try:
        payload = layout.build(_to_layout_values(fields or {}))
    except (ConstructError, AttributeError, KeyError, TypeError, ValueError) as exc:
        raise EncodingOverflow(f"{operation.name} fields do not fit the instruction layout: {exc}") from exc
    return bytes([operation]) + payload


def decode_instruction(data: bytes) -> Tuple[Operation, Dict[str, Any]]:
    if not data:
        raise EncodingOverflow("Instruction data is empty")
    try:
        operation = Operation(data[0])
    except ValueError as exc:
        raise EncodingOverflow(f"Unknown instruction discriminator {data[0]}") from exc
    layout = INSTRUCTION_LAYOUTS[operation]
    payload = bytes(data[1:])
    try:
        parsed = layout.parse(payload)
    except ConstructError as exc:
        raise EncodingOverflow(f"Truncated {operation.name} payload: {exc}") from exc
    if len(layout.build(parsed)) != len(payload):
        raise EncodingOverflow(f"Trailing bytes after {operation.name} payload")
    return operation, _from_layout_values(parsed)


def encode_initialize() -> bytes:
    return encode(Operation.INITIALIZE)


def encode_register_logistics_provider() -> bytes:
    return encode(Operation.REGISTER_LOGISTICS_PROVIDER)


def encode_register_seller() -> bytes:
    return encode(Operation.REGISTER_SELLER)


def encode_register_buyer() -> bytes:
    return encode(Operation.REGISTER_BUYER)


def encode_create_trade(
    product_name: str,
    product_cost: int,
    logistics_costs: Sequence[int],
    logistics_providers: Sequence[AddressLike],
    total_quantity: int,
) -> bytes:
    return encode(
        Operation.CREATE_TRADE,
        {
            "product_name": product_name,
            "product_cost": product_cost,
            "logistics_costs": list(logistics_costs),
            "logistics_providers": list(logistics_providers),
            "total_quantity": total_quantity,
        },
    )


def encode_buy_trade(trade_id: int, quantity: int, logistics_provider: AddressLike) -> bytes:
    return encode(
        Operation.BUY_TRADE,
        {"trade_id": trade_id, "quantity": quantity, "logistics_provider": logistics_provider},
    )


def encode_confirm_delivery(purchase_id: int) -> bytes:
    return encode(Operation.CONFIRM_DELIVERY_AND_PURCHASE, {"purchase_id": purchase_id})


# --- Account lists ----------------------------------------------------------


@dataclass
class AccountContext:
    owner: Pubkey
    global_state: Optional[Pubkey] = None
    identity: Optional[Pubkey] = None
    trade: Optional[Pubkey] = None
    purchase: Optional[Pubkey] = None
    seller_wallet: Optional[Pubkey] = None


_SYSTEM = ("system_program", False, False)
_RENT = ("rent_sysvar", False, False)
_REGISTER = [("identity", False, True), ("global_state", False, True), ("owner", True, True), _SYSTEM, _RENT]

# (role, is_signer, is_writable) in the order the program reads its accounts.
ACCOUNT_SCHEMA: Dict[Operation, List[Tuple[str, bool, bool]]] = {
    Operation.INITIALIZE: [("global_state", False, True), ("owner", True, True), _SYSTEM, _RENT],
    Operation.REGISTER_LOGISTICS_PROVIDER: _REGISTER,
    Operation.REGISTER_SELLER: _REGISTER,
    Operation.REGISTER_BUYER: _REGISTER,
    Operation.CREATE_TRADE: [
        ("trade", False, True),
        ("identity", False, True),
        ("global_state", False, True),
        ("owner", True, True),
        _SYSTEM,
        _RENT,
    ],
    Operation.BUY_TRADE: [
        ("purchase", False, True),
        ("trade", False, True),
        ("identity", False, True),
        ("global_state", False, True),
        ("owner", True, True),
        ("seller_wallet", False, True),
        _SYSTEM,
        _RENT,
    ],
    Operation.CONFIRM_DELIVERY_AND_PURCHASE: [
        ("purchase", False, True),
        ("identity", False, False),
        ("owner", True, False),
    ],
}

_FIXED_ACCOUNTS = {"system_program": SYS_PROGRAM_ID, "rent_sysvar": SYSVAR_RENT_PUBKEY}


def build_accounts(operation: Union[Operation, int], context: AccountContext) -> List[AccountMeta]:
    operation = Operation(operation)
    accounts: List[AccountMeta] = []
    for role, is_signer, is_writable in ACCOUNT_SCHEMA[operation]:
        pubkey = _FIXED_ACCOUNTS[role] if role in _FIXED_ACCOUNTS else getattr(context, role)
        if pubkey is None:
            raise ValueError(f"{operation.name} requires the {role} account")
        accounts.append(AccountMeta(pubkey=pubkey, is_signer=is_signer, is_writable=is_writable))
    return accounts


def build_initialize_ix(owner: Pubkey, program_id: Optional[Pubkey] = None) -> Instruction:
    program_id = program_id or PROGRAM_ID
    ctx = AccountContext(owner=owner, global_state=global_state_pda(program_id))
    accounts = build_accounts(Operation.INITIALIZE, ctx)
    return Instruction(program_id=program_id, data=encode_initialize(), accounts=accounts)


def _build_register_ix(operation: Operation, identity: Pubkey, owner: Pubkey, program_id: Pubkey) -> Instruction:
    ctx = AccountContext(owner=owner, identity=identity, global_state=global_state_pda(program_id))
    return Instruction(program_id=program_id, data=encode(operation), accounts=build_accounts(operation, ctx))


def build_register_seller_ix(owner: Pubkey, program_id: Optional[Pubkey] = None) -> Instruction:
    program_id = program_id or PROGRAM_ID
    return _build_register_ix(Operation.REGISTER_SELLER, seller_pda(owner, program_id), owner, program_id)


def build_register_buyer_ix(owner: Pubkey, program_id: Optional[Pubkey] = None) -> Instruction:
    program_id = program_id or PROGRAM_ID
    return _build_register_ix(Operation.REGISTER_BUYER, buyer_pda(owner, program_id), owner, program_id)


def build_register_logistics_provider_ix(owner: Pubkey, program_id: Optional[Pubkey] = None) -> Instruction:
    program_id = program_id or PROGRAM_ID
    return _build_register_ix(
        Operation.REGISTER_LOGISTICS_PROVIDER, logistics_provider_pda(owner, program_id), owner, program_id
    )


def build_create_trade_ix(
    seller: Pubkey,
    trade_id: int,
    product_name: str,
    product_cost: int,
    logistics_costs: Sequence[int],
    logistics_providers: Sequence[AddressLike],
    total_quantity: int,
    program_id: Optional[Pubkey] = None,
) -> Instruction:
    program_id = program_id or PROGRAM_ID
    ctx = AccountContext(
        owner=seller,
        trade=trade_pda(trade_id, seller, program_id),
        identity=seller_pda(seller, program_id),
        global_state=global_state_pda(program_id),
    )
    data = encode_create_trade(product_name, product_cost, logistics_costs, logistics_providers, total_quantity)
    return Instruction(program_id=program_id, data=data, accounts=build_accounts(Operation.CREATE_TRADE, ctx))


def build_buy_trade_ix(
    buyer: Pubkey,
    seller: Pubkey,
    trade_id: int,
    purchase_id: int,
    quantity: int,
    logistics_provider: AddressLike,
    program_id: Optional[Pubkey] = None,
) -> Instruction:
    program_id = program_id or PROGRAM_ID
    ctx = AccountContext(
        owner=buyer,
        purchase=purchase_pda(purchase_id, buyer, program_id),
        trade=trade_pda(trade_id, seller, program_id),
        identity=buyer_pda(buyer, program_id),
        global_state=global_state_pda(program_id),
        seller_wallet=seller,
    )
    data = encode_buy_trade(trade_id, quantity, logistics_provider)
    return Instruction(program_id=program_id, data=data, accounts=build_accounts(Operation.BUY_TRADE, ctx))


def build_confirm_delivery_ix(
    logistics_provider: Pubkey,
    buyer: Pubkey,
    purchase_id: int,
    program_id: Optional[Pubkey] = None,
) -> Instruction:
    program_id = program_id or PROGRAM_ID
    ctx = AccountContext(
        owner=logistics_provider,
        purchase=purchase_pda(purchase_id, buyer, program_id),
        identity=logistics_provider_pda(logistics_provider, program_id),
    )
    accounts = build_accounts(Operation.CONFIRM_DELIVERY_AND_PURCHASE, ctx)
    return Instruction(program_id=program_id, data=encode_confirm_delivery(purchase_id), accounts=accounts)


# --- Wallet hand-off --------------------------------------------------------


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


def message_from_instructions(ixs: List[Instruction], payer: Pubkey, blockhash: str) -> str:
    message = MessageV0.try_compile(payer, ixs, [], Hash.from_string(blockhash))
    return base64.b64encode(bytes(message)).decode()


def versioned_tx_b64(payer: Pubkey, blockhash: str, ixs: List[Instruction]) -> str:
    # Unsigned transaction; the wallet fills in the signature slots.
    message = MessageV0.try_compile(payer, ixs, [], Hash.from_string(blockhash))
    signatures = [Signature.default() for _ in range(message.header.num_required_signatures)]
    return base64.b64encode(bytes(VersionedTransaction.populate(message, signatures))).decode()
