"""
Shared fixtures for the marketplace test suite.

``FakeLedger`` plays both external collaborators: it serves raw account
bytes like the RPC node and executes submitted instructions the way the
on-chain program does, so end-to-end flows exercise real addresses.
"""
import os
from typing import Dict, List, Optional, Tuple

from solders.keypair import Keypair

os.environ.setdefault("PROGRAM_ID", str(Keypair().pubkey()))

import pytest  # noqa: E402
from solders.instruction import Instruction  # noqa: E402
from solders.pubkey import Pubkey  # noqa: E402

from escrow_marketplace.account_state import (  # noqa: E402
    GlobalStateLayout,
    PurchaseAccountLayout,
    TradeAccountLayout,
    parse_global_state,
    parse_purchase_account,
    parse_trade_account,
)
from escrow_marketplace.errors import SubmissionError  # noqa: E402
from escrow_marketplace.tx_builder import (  # noqa: E402
    PROGRAM_ID,
    Operation,
    buyer_pda,
    decode_instruction,
    encode_product_name,
    global_state_pda,
    logistics_provider_pda,
    purchase_pda,
    seller_pda,
    trade_pda,
)

BLOCKHASH = "11111111111111111111111111111111"


def pytest_configure(config):
    config.addinivalue_line("markers", "e2e: end-to-end flows against the fake ledger")


def global_state_bytes(authority: Pubkey, trade_counter: int, purchase_counter: int) -> bytes:
    return GlobalStateLayout.build(
        {
            "authority": list(bytes(authority)),
            "trade_counter": trade_counter,
            "purchase_counter": purchase_counter,
        }
    )


def trade_bytes(
    trade_id: int,
    seller: Pubkey,
    product_name: str,
    product_cost: int,
    logistics_costs: List[int],
    logistics_providers: List[Pubkey],
    total_quantity: int,
    remaining_quantity: Optional[int] = None,
    is_active: bool = True,
) -> bytes:
    return TradeAccountLayout.build(
        {
            "trade_id": trade_id,
            "seller": list(bytes(seller)),
            "product_name": list(encode_product_name(product_name)),
            "product_cost": product_cost,
            "logistics_costs": logistics_costs,
            "logistics_providers": [list(bytes(p)) for p in logistics_providers],
            "total_quantity": total_quantity,
            "remaining_quantity": total_quantity if remaining_quantity is None else remaining_quantity,
            "is_active": is_active,
        }
    )


def purchase_bytes(
    purchase_id: int,
    trade_id: int,
    buyer: Pubkey,
    quantity: int,
    total_amount: int,
    logistics_provider: Pubkey,
    delivery_confirmed: bool = False,
) -> bytes:
    return PurchaseAccountLayout.build(
        {
            "purchase_id": purchase_id,
            "trade_id": trade_id,
            "buyer": list(bytes(buyer)),
            "quantity": quantity,
            "total_amount": total_amount,
            "logistics_provider": list(bytes(logistics_provider)),
            "delivery_confirmed": delivery_confirmed,
        }
    )


class FakeLedger:
    def __init__(self, program_id: Pubkey = PROGRAM_ID):
        self.program_id = program_id
        self.accounts: Dict[Pubkey, bytes] = {}
        self.sent: List[Tuple[Operation, Instruction]] = []
        self.reads: List[Pubkey] = []
        self.fail_with: Optional[SubmissionError] = None

    # StateReader
    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        self.reads.append(address)
        return self.accounts.get(address)

    async def get_latest_blockhash(self) -> str:
        return BLOCKHASH

    # Transport
    async def send(self, instruction: Instruction, signer: Pubkey) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        if instruction.program_id != self.program_id:
            raise SubmissionError("Incorrect program id")
        signers = [m.pubkey for m in instruction.accounts if m.is_signer]
        if signers != [signer]:
            raise SubmissionError("Missing required signature")
        operation, fields = decode_instruction(bytes(instruction.data))
        keys = [m.pubkey for m in instruction.accounts]
        getattr(self, f"_exec_{operation.name.lower()}")(signer, keys, fields)
        self.sent.append((operation, instruction))
        return f"sig-{len(self.sent)}"

    def _expect(self, actual: Pubkey, expected: Pubkey, label: str) -> None:
        if actual != expected:
            raise SubmissionError(f"Account mismatch for {label}")

    def _create(self, address: Pubkey, data: bytes) -> None:
        if address in self.accounts:
            raise SubmissionError(f"Account {address} already in use")
        self.accounts[address] = data

    def _global(self):
        address = global_state_pda(self.program_id)
        if address not in self.accounts:
            raise SubmissionError("Global state not initialized")
        return address, parse_global_state(self.accounts[address])

    def _exec_initialize(self, signer, keys, fields):
        self._expect(keys[0], global_state_pda(self.program_id), "global_state")
        self._create(keys[0], global_state_bytes(signer, 0, 0))

    def _register(self, expected: Pubkey, signer, keys):
        self._expect(keys[0], expected, "identity")
        self._global()
        self._create(keys[0], bytes(signer))

    def _exec_register_seller(self, signer, keys, fields):
        self._register(seller_pda(signer, self.program_id), signer, keys)

    def _exec_register_buyer(self, signer, keys, fields):
        self._register(buyer_pda(signer, self.program_id), signer, keys)

    def _exec_register_logistics_provider(self, signer, keys, fields):
        self._register(logistics_provider_pda(signer, self.program_id), signer, keys)

    def _exec_create_trade(self, signer, keys, fields):
        global_address, state = self._global()
        trade_id = state.trade_counter + 1
        self._expect(keys[0], trade_pda(trade_id, signer, self.program_id), "trade")
        if seller_pda(signer, self.program_id) not in self.accounts:
            raise SubmissionError("Seller not registered")
        self._create(
            keys[0],
            trade_bytes(
                trade_id,
                signer,
                fields["product_name"],
                fields["product_cost"],
                fields["logistics_costs"],
                fields["logistics_providers"],
                fields["total_quantity"],
            ),
        )
        self.accounts[global_address] = global_state_bytes(state.authority, trade_id, state.purchase_counter)

    def _exec_buy_trade(self, signer, keys, fields):
        global_address, state = self._global()
        purchase_id = state.purchase_counter + 1
        self._expect(keys[0], purchase_pda(purchase_id, signer, self.program_id), "purchase")
        seller = keys[5]
        self._expect(keys[1], trade_pda(fields["trade_id"], seller, self.program_id), "trade")
        if buyer_pda(signer, self.program_id) not in self.accounts:
            raise SubmissionError("Buyer not registered")
        trade = parse_trade_account(self.accounts[keys[1]])
        if fields["quantity"] > trade.remaining_quantity:
            raise SubmissionError("Insufficient quantity")
        provider = fields["logistics_provider"]
        total = trade.product_cost * fields["quantity"] + trade.logistics_cost_for(provider)
        self._create(
            keys[0],
            purchase_bytes(purchase_id, trade.trade_id, signer, fields["quantity"], total, provider),
        )
        self.accounts[keys[1]] = trade_bytes(
            trade.trade_id,
            trade.seller,
            trade.product_name,
            trade.product_cost,
            trade.logistics_costs,
            trade.logistics_providers,
            trade.total_quantity,
            remaining_quantity=trade.remaining_quantity - fields["quantity"],
        )
        self.accounts[global_address] = global_state_bytes(state.authority, state.trade_counter, purchase_id)

    def _exec_confirm_delivery_and_purchase(self, signer, keys, fields):
        self._expect(keys[1], logistics_provider_pda(signer, self.program_id), "logistics_provider")
        if keys[1] not in self.accounts or keys[0] not in self.accounts:
            raise SubmissionError("Account not found")
        purchase = parse_purchase_account(self.accounts[keys[0]])
        if purchase.purchase_id != fields["purchase_id"] or purchase.delivery_confirmed:
            raise SubmissionError("Invalid purchase state")
        self.accounts[keys[0]] = purchase_bytes(
            purchase.purchase_id,
            purchase.trade_id,
            purchase.buyer,
            purchase.quantity,
            purchase.total_amount,
            purchase.logistics_provider,
            delivery_confirmed=True,
        )


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def seller() -> Pubkey:
    return Keypair().pubkey()


@pytest.fixture
def buyer() -> Pubkey:
    return Keypair().pubkey()


@pytest.fixture
def provider() -> Pubkey:
    return Keypair().pubkey()
