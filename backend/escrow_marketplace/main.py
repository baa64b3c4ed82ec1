from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from solana.rpc.commitment import Commitment
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from escrow_marketplace.account_state import PurchaseAccount, TradeAccount
from escrow_marketplace.errors import (
    EncodingOverflow,
    MarketplaceError,
    StateReadError,
    SubmissionError,
    ValidationError,
)
from escrow_marketplace.orchestrator import MarketplaceClient, PreparedInstruction
from escrow_marketplace.rpc import RpcStateReader, open_rpc_client
from escrow_marketplace.settings import get_settings
from escrow_marketplace.tx_builder import (
    PROGRAM_ID,
    global_state_pda,
    instruction_to_dict,
    message_from_instructions,
    purchase_pda,
    trade_pda,
    versioned_tx_b64,
)
from escrow_marketplace.validation import PurchaseParams, TradeParams

settings = get_settings()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("marketplace")

rpc_client = open_rpc_client(settings)


class BuildOnlyTransport:
    """The HTTP surface returns unsigned transactions; the wallet submits them."""

    async def send(self, instruction: Instruction, signer: Pubkey) -> str:
        raise SubmissionError("This service does not submit transactions", SubmissionError.REJECTED)


def get_state_reader() -> RpcStateReader:
    return RpcStateReader(rpc_client, Commitment(settings.commitment))


def get_marketplace(reader: RpcStateReader = Depends(get_state_reader)) -> MarketplaceClient:
    return MarketplaceClient(reader, BuildOnlyTransport())


app = FastAPI(title="Escrow Marketplace API", version="0.1.0")


@app.on_event("shutdown")
async def close_rpc_client():
    await rpc_client.close()


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(_request, exc: MarketplaceError):
    if isinstance(exc, (ValidationError, EncodingOverflow)):
        status = 400
    elif isinstance(exc, StateReadError):
        status = 404 if exc.not_found else 502
    else:
        status = 502
    logger.warning("request_failed kind=%s error=%s", exc.kind, exc.message)
    return JSONResponse(
        status_code=status,
        content={"detail": exc.message, "kind": exc.kind, "errors": getattr(exc, "errors", [exc.message])},
    )


class WalletRequest(BaseModel):
    wallet: str


class CreateTradeRequest(BaseModel):
    wallet: str
    product_name: str
    product_cost: int
    logistics_costs: List[int]
    logistics_providers: List[str]
    total_quantity: int


class BuyTradeRequest(BaseModel):
    wallet: str
    trade_id: int
    seller: str
    quantity: int
    logistics_provider: str


class ConfirmDeliveryRequest(BaseModel):
    wallet: str
    purchase_id: int
    buyer: str


class KeyMeta(BaseModel):
    pubkey: str
    is_signer: bool
    is_writable: bool


class InstructionMeta(BaseModel):
    program_id: str
    keys: List[KeyMeta]
    data: str


class TxResponse(BaseModel):
    operation: str
    tx_v0_b64: str
    message_b64: str
    recent_blockhash: str
    instructions: List[InstructionMeta] = []
    record_id: Optional[int] = None
    address: Optional[str] = None


class GlobalStateView(BaseModel):
    address: str
    authority: str
    trade_counter: int
    purchase_counter: int
    next_trade_id: int
    next_purchase_id: int


class TradeView(BaseModel):
    address: str
    trade_id: int
    seller: str
    product_name: str
    product_cost: int
    logistics_costs: List[int]
    logistics_providers: List[str]
    total_quantity: int
    remaining_quantity: int
    status: str


class PurchaseView(BaseModel):
    address: str
    purchase_id: int
    trade_id: int
    buyer: str
    quantity: int
    total_amount: int
    logistics_provider: str
    status: str


def parse_wallet(value: str, label: str = "wallet") -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=f"Invalid {label}: {exc}") from exc


async def tx_response(prepared: PreparedInstruction, reader: RpcStateReader) -> TxResponse:
    blockhash = await reader.get_latest_blockhash()
    instructions = [prepared.instruction]
    return TxResponse(
        operation=prepared.operation.name.lower(),
        tx_v0_b64=versioned_tx_b64(prepared.signer, blockhash, instructions),
        message_b64=message_from_instructions(instructions, prepared.signer, blockhash),
        recent_blockhash=blockhash,
        instructions=[InstructionMeta(**instruction_to_dict(ix)) for ix in instructions],
        record_id=prepared.record_id,
        address=str(prepared.address) if prepared.address is not None else None,
    )


def trade_view(trade: TradeAccount, address: Pubkey) -> TradeView:
    return TradeView(
        address=str(address),
        trade_id=trade.trade_id,
        seller=str(trade.seller),
        product_name=trade.product_name,
        product_cost=trade.product_cost,
        logistics_costs=trade.logistics_costs,
        logistics_providers=[str(p) for p in trade.logistics_providers],
        total_quantity=trade.total_quantity,
        remaining_quantity=trade.remaining_quantity,
        status=trade.status.value,
    )


def purchase_view(purchase: PurchaseAccount, address: Pubkey) -> PurchaseView:
    return PurchaseView(
        address=str(address),
        purchase_id=purchase.purchase_id,
        trade_id=purchase.trade_id,
        buyer=str(purchase.buyer),
        quantity=purchase.quantity,
        total_amount=purchase.total_amount,
        logistics_provider=str(purchase.logistics_provider),
        status=purchase.status.value,
    )


@app.get("/health")
def health():
    return {"status": "ok", "program_id": str(PROGRAM_ID)}


@app.get("/state/global", response_model=GlobalStateView)
async def global_state(client: MarketplaceClient = Depends(get_marketplace)):
    state = await client.fetch_global_state()
    return GlobalStateView(
        address=str(global_state_pda(client.program_id)),
        authority=str(state.authority),
        trade_counter=state.trade_counter,
        purchase_counter=state.purchase_counter,
        next_trade_id=state.next_trade_id,
        next_purchase_id=state.next_purchase_id,
    )


@app.get("/state/trade/{seller}/{trade_id}", response_model=TradeView)
async def trade_state(seller: str, trade_id: int, client: MarketplaceClient = Depends(get_marketplace)):
    seller_key = parse_wallet(seller, "seller")
    trade = await client.fetch_trade(trade_id, seller_key)
    return trade_view(trade, trade_pda(trade_id, seller_key, client.program_id))


@app.get("/state/purchase/{buyer}/{purchase_id}", response_model=PurchaseView)
async def purchase_state(buyer: str, purchase_id: int, client: MarketplaceClient = Depends(get_marketplace)):
    buyer_key = parse_wallet(buyer, "buyer")
    purchase = await client.fetch_purchase(purchase_id, buyer_key)
    return purchase_view(purchase, purchase_pda(purchase_id, buyer_key, client.program_id))


@app.post("/tx/initialize/build", response_model=TxResponse)
async def build_initialize(
    req: WalletRequest,
    client: MarketplaceClient = Depends(get_marketplace),
    reader: RpcStateReader = Depends(get_state_reader),
):
    prepared = await client.prepare_initialize(parse_wallet(req.wallet))
    return await tx_response(prepared, reader)


@app.post("/tx/register/{role}/build", response_model=TxResponse)
async def build_register(
    role: str,
    req: WalletRequest,
    client: MarketplaceClient = Depends(get_marketplace),
    reader: RpcStateReader = Depends(get_state_reader),
):
    wallet = parse_wallet(req.wallet)
    if role == "seller":
        prepared = await client.prepare_register_seller(wallet)
    elif role == "buyer":
        prepared = await client.prepare_register_buyer(wallet)
    elif role == "logistics":
        prepared = await client.prepare_register_logistics_provider(wallet)
    else:
        raise HTTPException(status_code=404, detail=f"Unknown role: {role}")
    return await tx_response(prepared, reader)


@app.post("/tx/trade/build", response_model=TxResponse)
async def build_create_trade(
    req: CreateTradeRequest,
    client: MarketplaceClient = Depends(get_marketplace),
    reader: RpcStateReader = Depends(get_state_reader),
):
    params = TradeParams(
        product_name=req.product_name,
        product_cost=req.product_cost,
        logistics_costs=req.logistics_costs,
        logistics_providers=req.logistics_providers,
        total_quantity=req.total_quantity,
    )
    prepared = await client.prepare_create_trade(parse_wallet(req.wallet), params)
    logger.info("trade_build seller=%s trade_id=%s", req.wallet, prepared.record_id)
    return await tx_response(prepared, reader)


@app.post("/tx/purchase/build", response_model=TxResponse)
async def build_buy_trade(
    req: BuyTradeRequest,
    client: MarketplaceClient = Depends(get_marketplace),
    reader: RpcStateReader = Depends(get_state_reader),
):
    params = PurchaseParams(
        trade_id=req.trade_id,
        seller=req.seller,
        quantity=req.quantity,
        logistics_provider=req.logistics_provider,
    )
    prepared = await client.prepare_buy_trade(parse_wallet(req.wallet), params)
    logger.info("purchase_build buyer=%s trade_id=%s purchase_id=%s", req.wallet, req.trade_id, prepared.record_id)
    return await tx_response(prepared, reader)


@app.post("/tx/delivery/build", response_model=TxResponse)
async def build_confirm_delivery(
    req: ConfirmDeliveryRequest,
    client: MarketplaceClient = Depends(get_marketplace),
    reader: RpcStateReader = Depends(get_state_reader),
):
    prepared = await client.prepare_confirm_delivery(parse_wallet(req.wallet), req.purchase_id, req.buyer)
    return await tx_response(prepared, reader)
