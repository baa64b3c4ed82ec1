"""Public entry point for marketplace operations.

``MarketplaceClient`` validates parameters, reads the live counters it needs,
derives addresses, and hands the finished instruction to a ``Transport``.
The ``prepare_*`` coroutines stop before submission and raise typed errors;
the operation coroutines submit and always return an ``OperationResult``.
"""
import logging
from dataclasses import dataclass, field
from typing import Awaitable, List, Optional, Protocol

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from escrow_marketplace.account_state import (
    GlobalState,
    PurchaseAccount,
    TradeAccount,
    parse_global_state,
    parse_purchase_account,
    parse_trade_account,
)
from escrow_marketplace.errors import MarketplaceError, StateReadError, ValidationError
from escrow_marketplace.tx_builder import (
    PROGRAM_ID,
    U64_MAX,
    AddressLike,
    Operation,
    build_buy_trade_ix,
    build_confirm_delivery_ix,
    build_create_trade_ix,
    build_initialize_ix,
    build_register_buyer_ix,
    build_register_logistics_provider_ix,
    build_register_seller_ix,
    global_state_pda,
    purchase_pda,
    to_pubkey,
    trade_pda,
)
from escrow_marketplace.validation import PurchaseParams, TradeParams, validate_purchase_params, validate_trade_params

logger = logging.getLogger("marketplace.client")


class StateReader(Protocol):
    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        ...


class Transport(Protocol):
    async def send(self, instruction: Instruction, signer: Pubkey) -> str:
        ...


@dataclass
class PreparedInstruction:
    operation: Operation
    instruction: Instruction
    signer: Pubkey
    record_id: Optional[int] = None
    address: Optional[Pubkey] = None


@dataclass
class OperationResult:
    ok: bool
    signature: Optional[str] = None
    record_id: Optional[int] = None
    address: Optional[Pubkey] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, prepared: PreparedInstruction, signature: str) -> "OperationResult":
        return cls(ok=True, signature=signature, record_id=prepared.record_id, address=prepared.address)

    @classmethod
    def failure(cls, exc: MarketplaceError) -> "OperationResult":
        return cls(
            ok=False,
            error=exc.message,
            error_kind=exc.kind,
            reason=getattr(exc, "reason", None),
            errors=list(getattr(exc, "errors", [exc.message])),
        )


def _signer(caller: Optional[AddressLike]) -> Pubkey:
    if caller is None:
        raise ValidationError(["Wallet not connected"])
    try:
        return to_pubkey(caller)
    except Exception:  # noqa: BLE001
        raise ValidationError([f"Caller {caller!r} is not a valid address"]) from None


class MarketplaceClient:
    def __init__(self, state_reader: StateReader, transport: Transport, program_id: Optional[Pubkey] = None):
        self.state_reader = state_reader
        self.transport = transport
        self.program_id = program_id or PROGRAM_ID
        self.loading = False
        self.last_error: Optional[str] = None

    # --- state reads ---

    async def fetch_global_state(self) -> GlobalState:
        data = await self.state_reader.get_account_data(global_state_pda(self.program_id))
        if data is None:
            raise StateReadError("Global state not initialized", not_found=True)
        return parse_global_state(data)

    async def fetch_trade(self, trade_id: int, seller: AddressLike) -> TradeAccount:
        data = await self.state_reader.get_account_data(trade_pda(trade_id, seller, self.program_id))
        if data is None:
            raise StateReadError(f"Trade {trade_id} not found for seller {seller}", not_found=True)
        return parse_trade_account(data)

    async def fetch_purchase(self, purchase_id: int, buyer: AddressLike) -> PurchaseAccount:
        data = await self.state_reader.get_account_data(purchase_pda(purchase_id, buyer, self.program_id))
        if data is None:
            raise StateReadError(f"Purchase {purchase_id} not found for buyer {buyer}", not_found=True)
        return parse_purchase_account(data)

    # --- instruction preparation ---

    async def prepare_initialize(self, caller: AddressLike) -> PreparedInstruction:
        owner = _signer(caller)
        ix = build_initialize_ix(owner, self.program_id)
        return PreparedInstruction(Operation.INITIALIZE, ix, owner, address=ix.accounts[0].pubkey)

    async def prepare_register_seller(self, caller: AddressLike) -> PreparedInstruction:
        owner = _signer(caller)
        ix = build_register_seller_ix(owner, self.program_id)
        return PreparedInstruction(Operation.REGISTER_SELLER, ix, owner, address=ix.accounts[0].pubkey)

    async def prepare_register_buyer(self, caller: AddressLike) -> PreparedInstruction:
        owner = _signer(caller)
        ix = build_register_buyer_ix(owner, self.program_id)
        return PreparedInstruction(Operation.REGISTER_BUYER, ix, owner, address=ix.accounts[0].pubkey)

    async def prepare_register_logistics_provider(self, caller: AddressLike) -> PreparedInstruction:
        owner = _signer(caller)
        ix = build_register_logistics_provider_ix(owner, self.program_id)
        return PreparedInstruction(Operation.REGISTER_LOGISTICS_PROVIDER, ix, owner, address=ix.accounts[0].pubkey)

    async def prepare_create_trade(self, caller: AddressLike, params: TradeParams) -> PreparedInstruction:
        seller = _signer(caller)
        result = validate_trade_params(params)
        if not result.valid:
            raise ValidationError(result.errors)
        state = await self.fetch_global_state()
        trade_id = state.next_trade_id
        ix = build_create_trade_ix(
            seller=seller,
            trade_id=trade_id,
            product_name=params.product_name,
            product_cost=params.product_cost,
            logistics_costs=params.logistics_costs,
            logistics_providers=params.logistics_providers,
            total_quantity=params.total_quantity,
            program_id=self.program_id,
        )
        return PreparedInstruction(Operation.CREATE_TRADE, ix, seller, record_id=trade_id, address=ix.accounts[0].pubkey)

    async def prepare_buy_trade(self, caller: AddressLike, params: PurchaseParams) -> PreparedInstruction:
        buyer = _signer(caller)
        result = validate_purchase_params(params)
        if not result.valid:
            raise ValidationError(result.errors)
        seller = to_pubkey(params.seller)
        trade = await self.fetch_trade(params.trade_id, seller)
        result = validate_purchase_params(params, trade)
        if not result.valid:
            raise ValidationError(result.errors)
        state = await self.fetch_global_state()
        purchase_id = state.next_purchase_id
        ix = build_buy_trade_ix(
            buyer=buyer,
            seller=seller,
            trade_id=params.trade_id,
            purchase_id=purchase_id,
            quantity=params.quantity,
            logistics_provider=params.logistics_provider,
            program_id=self.program_id,
        )
        return PreparedInstruction(Operation.BUY_TRADE, ix, buyer, record_id=purchase_id, address=ix.accounts[0].pubkey)

    async def prepare_confirm_delivery(
        self, caller: AddressLike, purchase_id: int, buyer: AddressLike
    ) -> PreparedInstruction:
        provider = _signer(caller)
        errors: List[str] = []
        if isinstance(purchase_id, bool) or not isinstance(purchase_id, int) or not 0 <= purchase_id <= U64_MAX:
            errors.append("Purchase id must be a non-negative integer within u64")
        try:
            buyer_key = to_pubkey(buyer)
        except Exception:  # noqa: BLE001
            errors.append("Buyer is not a valid address")
        if errors:
            raise ValidationError(errors)

        purchase = await self.fetch_purchase(purchase_id, buyer_key)
        if purchase.delivery_confirmed:
            raise ValidationError([f"Purchase {purchase_id} delivery is already confirmed"])
        if purchase.logistics_provider != provider:
            raise ValidationError(
                [f"Purchase {purchase_id} is assigned to logistics provider {purchase.logistics_provider}"]
            )
        ix = build_confirm_delivery_ix(provider, buyer_key, purchase_id, self.program_id)
        return PreparedInstruction(
            Operation.CONFIRM_DELIVERY_AND_PURCHASE, ix, provider, record_id=purchase_id, address=ix.accounts[0].pubkey
        )

    # --- submission ---

    async def _run(self, label: str, prepare: Awaitable[PreparedInstruction]) -> OperationResult:
        self.loading = True
        self.last_error = None
        try:
            prepared = await prepare
            signature = await self.transport.send(prepared.instruction, prepared.signer)
        except MarketplaceError as exc:
            self.last_error = exc.message
            logger.warning("%s_failed kind=%s error=%s", label, exc.kind, exc.message)
            return OperationResult.failure(exc)
        except Exception as exc:  # noqa: BLE001
            self.last_error = str(exc) or "An error occurred"
            logger.exception("%s_failed_unexpected", label)
            return OperationResult(ok=False, error=self.last_error, error_kind="unexpected", errors=[self.last_error])
        finally:
            self.loading = False
        logger.info(
            "%s_submitted signature=%s record_id=%s address=%s", label, signature, prepared.record_id, prepared.address
        )
        return OperationResult.success(prepared, signature)

    async def initialize(self, caller: AddressLike) -> OperationResult:
        return await self._run("initialize", self.prepare_initialize(caller))

    async def register_seller(self, caller: AddressLike) -> OperationResult:
        return await self._run("register_seller", self.prepare_register_seller(caller))

    async def register_buyer(self, caller: AddressLike) -> OperationResult:
        return await self._run("register_buyer", self.prepare_register_buyer(caller))

    async def register_logistics_provider(self, caller: AddressLike) -> OperationResult:
        return await self._run("register_logistics_provider", self.prepare_register_logistics_provider(caller))

    async def create_trade(self, caller: AddressLike, params: TradeParams) -> OperationResult:
        return await self._run("create_trade", self.prepare_create_trade(caller, params))

    async def buy_trade(self, caller: AddressLike, params: PurchaseParams) -> OperationResult:
        return await self._run("buy_trade", self.prepare_buy_trade(caller, params))

    async def confirm_delivery(self, caller: AddressLike, purchase_id: int, buyer: AddressLike) -> OperationResult:
        return await self._run("confirm_delivery", self.prepare_confirm_delivery(caller, purchase_id, buyer))
