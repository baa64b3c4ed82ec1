import base64

import pytest
from fastapi.testclient import TestClient
from solders.transaction import VersionedTransaction

from escrow_marketplace.main import app, get_state_reader
from escrow_marketplace.tx_builder import PROGRAM_ID, global_state_pda, purchase_pda, seller_pda, trade_pda

from conftest import BLOCKHASH, global_state_bytes, trade_bytes


@pytest.fixture
def api(ledger):
    app.dependency_overrides[get_state_reader] = lambda: ledger
    yield TestClient(app)
    app.dependency_overrides.clear()


def seed_marketplace(ledger, authority, trades=0, purchases=0):
    ledger.accounts[global_state_pda()] = global_state_bytes(authority, trades, purchases)


def test_health(api):
    resp = api.get("/health")
    assert resp.status_code == 200
    assert resp.json()["program_id"] == str(PROGRAM_ID)


def test_global_state_missing(api):
    resp = api.get("/state/global")
    assert resp.status_code == 404
    assert resp.json()["kind"] == "state_read"


def test_global_state(api, ledger, seller):
    seed_marketplace(ledger, seller, trades=4, purchases=2)
    body = api.get("/state/global").json()
    assert body["trade_counter"] == 4
    assert body["next_trade_id"] == 5
    assert body["next_purchase_id"] == 3
    assert body["address"] == str(global_state_pda())


def test_build_initialize(api, seller):
    resp = api.post("/tx/initialize/build", json={"wallet": str(seller)})
    assert resp.status_code == 200
    body = resp.json()
    assert body["operation"] == "initialize"
    assert body["recent_blockhash"] == BLOCKHASH
    assert body["instructions"][0]["keys"][1] == {"pubkey": str(seller), "is_signer": True, "is_writable": True}
    tx = VersionedTransaction.from_bytes(base64.b64decode(body["tx_v0_b64"]))
    assert tx.message.account_keys[0] == seller


def test_build_register_roles(api, seller):
    resp = api.post("/tx/register/seller/build", json={"wallet": str(seller)})
    assert resp.status_code == 200
    assert resp.json()["address"] == str(seller_pda(seller))
    assert api.post("/tx/register/admin/build", json={"wallet": str(seller)}).status_code == 404


def test_build_create_trade_uses_next_id(api, ledger, seller, provider):
    seed_marketplace(ledger, seller, trades=4)
    resp = api.post(
        "/tx/trade/build",
        json={
            "wallet": str(seller),
            "product_name": "Widget",
            "product_cost": 100,
            "logistics_costs": [10],
            "logistics_providers": [str(provider)],
            "total_quantity": 5,
        },
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["record_id"] == 5
    assert body["instructions"][0]["keys"][0]["pubkey"] == str(trade_pda(5, seller))
    assert base64.b64decode(body["instructions"][0]["data"])[0] == 4


def test_build_create_trade_invalid(api, seller, provider):
    resp = api.post(
        "/tx/trade/build",
        json={
            "wallet": str(seller),
            "product_name": "Widget",
            "product_cost": 100,
            "logistics_costs": [10, 20],
            "logistics_providers": [str(provider)],
            "total_quantity": 5,
        },
    )
    assert resp.status_code == 400
    assert resp.json()["kind"] == "validation"
    assert len(resp.json()["errors"]) == 1


def test_build_purchase(api, ledger, seller, buyer, provider):
    seed_marketplace(ledger, seller, trades=1, purchases=6)
    ledger.accounts[trade_pda(1, seller)] = trade_bytes(1, seller, "Widget", 100, [10], [provider], 5)
    resp = api.post(
        "/tx/purchase/build",
        json={
            "wallet": str(buyer),
            "trade_id": 1,
            "seller": str(seller),
            "quantity": 2,
            "logistics_provider": str(provider),
        },
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["record_id"] == 7
    assert body["address"] == str(purchase_pda(7, buyer))


def test_trade_state_view(api, ledger, seller, provider):
    ledger.accounts[trade_pda(1, seller)] = trade_bytes(1, seller, "Widget", 100, [10], [provider], 5, 0)
    body = api.get(f"/state/trade/{seller}/1").json()
    assert body["status"] == "sold_out"
    assert body["logistics_providers"] == [str(provider)]


def test_invalid_wallet(api):
    resp = api.post("/tx/initialize/build", json={"wallet": "nope"})
    assert resp.status_code == 400


def test_derivation_failure_is_bad_gateway(api, seller):
    resp = api.get(f"/state/trade/{seller}/{2 ** 64}")
    assert resp.status_code == 502
    assert resp.json()["kind"] == "derivation"
