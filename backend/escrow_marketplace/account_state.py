"""Decoding of marketplace records read back from the ledger.

The program stores records as plain borsh structs with no leading account
discriminator. Accounts may be allocated larger than the struct; trailing
bytes are ignored.
"""
from dataclasses import dataclass
from enum import Enum
from typing import List

from borsh_construct import Bool, CStruct, U64, U8, Vec
from construct import ConstructError
from solders.pubkey import Pubkey

from escrow_marketplace.errors import StateReadError
from escrow_marketplace.tx_builder import decode_product_name

GlobalStateLayout = CStruct(
    "authority" / U8[32],
    "trade_counter" / U64,
    "purchase_counter" / U64,
)
TradeAccountLayout = CStruct(
    "trade_id" / U64,
    "seller" / U8[32],
    "product_name" / U8[32],
    "product_cost" / U64,
    "logistics_costs" / Vec(U64),
    "logistics_providers" / Vec(U8[32]),
    "total_quantity" / U64,
    "remaining_quantity" / U64,
    "is_active" / Bool,
)
PurchaseAccountLayout = CStruct(
    "purchase_id" / U64,
    "trade_id" / U64,
    "buyer" / U8[32],
    "quantity" / U64,
    "total_amount" / U64,
    "logistics_provider" / U8[32],
    "delivery_confirmed" / Bool,
)


class TradeStatus(str, Enum):
    ACTIVE = "active"
    SOLD_OUT = "sold_out"
    CLOSED = "closed"


class PurchaseStatus(str, Enum):
    AWAITING_DELIVERY = "awaiting_delivery"
    DELIVERED = "delivered"


@dataclass
class GlobalState:
    authority: Pubkey
    trade_counter: int
    purchase_counter: int

    # The program bumps a counter before assigning it to the new record.
    @property
    def next_trade_id(self) -> int:
        return self.trade_counter + 1

    @property
    def next_purchase_id(self) -> int:
        return self.purchase_counter + 1


@dataclass
class TradeAccount:
    trade_id: int
    seller: Pubkey
    product_name: str
    product_cost: int
    logistics_costs: List[int]
    logistics_providers: List[Pubkey]
    total_quantity: int
    remaining_quantity: int
    is_active: bool

    @property
    def status(self) -> TradeStatus:
        if self.remaining_quantity == 0:
            return TradeStatus.SOLD_OUT
        if not self.is_active:
            return TradeStatus.CLOSED
        return TradeStatus.ACTIVE

    def logistics_cost_for(self, provider: Pubkey) -> int:
        return self.logistics_costs[self.logistics_providers.index(provider)]


@dataclass
class PurchaseAccount:
    purchase_id: int
    trade_id: int
    buyer: Pubkey
    quantity: int
    total_amount: int
    logistics_provider: Pubkey
    delivery_confirmed: bool

    @property
    def status(self) -> PurchaseStatus:
        return PurchaseStatus.DELIVERED if self.delivery_confirmed else PurchaseStatus.AWAITING_DELIVERY


def _parse(layout: CStruct, data: bytes, label: str):
    try:
        return layout.parse(bytes(data))
    except ConstructError as exc:
        raise StateReadError(f"Unable to parse {label} account ({len(data)} bytes): {exc}") from exc


def parse_global_state(data: bytes) -> GlobalState:
    raw = _parse(GlobalStateLayout, data, "global state")
    return GlobalState(
        authority=Pubkey.from_bytes(bytes(raw.authority)),
        trade_counter=raw.trade_counter,
        purchase_counter=raw.purchase_counter,
    )


def parse_trade_account(data: bytes) -> TradeAccount:
    raw = _parse(TradeAccountLayout, data, "trade")
    return TradeAccount(
        trade_id=raw.trade_id,
        seller=Pubkey.from_bytes(bytes(raw.seller)),
        product_name=decode_product_name(bytes(raw.product_name)),
        product_cost=raw.product_cost,
        logistics_costs=list(raw.logistics_costs),
        logistics_providers=[Pubkey.from_bytes(bytes(p)) for p in raw.logistics_providers],
        total_quantity=raw.total_quantity,
        remaining_quantity=raw.remaining_quantity,
        is_active=raw.is_active,
    )


def parse_purchase_account(data: bytes) -> PurchaseAccount:
    raw = _parse(PurchaseAccountLayout, data, "purchase")
    return PurchaseAccount(
        purchase_id=raw.purchase_id,
        trade_id=raw.trade_id,
        buyer=Pubkey.from_bytes(bytes(raw.buyer)),
        quantity=raw.quantity,
        total_amount=raw.total_amount,
        logistics_provider=Pubkey.from_bytes(bytes(raw.logistics_provider)),
        delivery_confirmed=raw.delivery_confirmed,
    )
