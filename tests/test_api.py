"""HTTP API (FastAPI TestClient)。lifespan を通すため with ブロックで使う。"""

import fakeredis
import pytest
from conftest import FakeGateway, sign, webhook_body
from fastapi.testclient import TestClient

from storefront import main
from storefront.config import Settings
from storefront.main import create_app
from storefront.orders.models import Provider

BAG = {
    "name": "Classic Tote",
    "description": "Everyday leather tote",
    "category": "Tote",
    "brand": "Atelier",
    "variants": [
        {"size": "Medium", "color": "Black", "price": "50.00", "stock": 5, "sku": "TOTE-M-BLK"}
    ],
}

ADDRESS = {
    "street": "1 Market St",
    "city": "Lagos",
    "state": "Lagos",
    "country": "NG",
    "zip_code": "100001",
}


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(tmp_path, gateway):
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        client_url="http://shop.test",
        log_level="WARNING",
    )
    app = create_app(
        settings,
        gateways={Provider.STRIPE: gateway},
        redis=fakeredis.FakeAsyncRedis(decode_responses=True),
    )
    with TestClient(app) as client:
        yield client


@pytest.fixture
def bag_id(client):
    resp = client.post("/commands/bags", json=BAG)
    assert resp.status_code == 201
    return resp.json()["id"]


def checkout(client, bag_id, quantity=2):
    return client.post(
        "/commands/checkout",
        json={
            "items": [
                {"bag_id": bag_id, "size": "Medium", "color": "Black", "quantity": quantity}
            ],
            "shipping_address": ADDRESS,
            "provider": "stripe",
            "contact_email": "buyer@example.com",
        },
    )


def stock(client, bag_id):
    return client.get(f"/queries/bags/{bag_id}").json()["variants"][0]["stock"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "bag-storefront"}


def test_checkout_then_webhook_then_refund(client, bag_id):
    resp = checkout(client, bag_id)
    assert resp.status_code == 201
    placed = resp.json()
    assert placed["redirect_url"].startswith("https://pay.example.test/")
    order_id = placed["order_id"]

    order = client.get(f"/queries/orders/{order_id}").json()
    assert order["payment_info"]["status"] == "pending"
    assert order["total_amount"] == "100.00"
    assert stock(client, bag_id) == 5

    body = webhook_body("succeeded", placed["external_reference"], "100.00")
    for _ in range(2):
        resp = client.post(
            "/webhooks/stripe", content=body, headers={"x-test-signature": sign(body)}
        )
        assert resp.status_code == 200
        assert resp.json()["received"] is True

    order = client.get(f"/queries/orders/{order_id}").json()
    assert order["payment_info"]["status"] == "completed"
    assert stock(client, bag_id) == 3

    resp = client.post(f"/commands/orders/{order_id}/refund", json={"reason": "strap broke"})
    assert resp.status_code == 200
    assert resp.json()["refund_info"]["status"] == "requested"


def test_insufficient_stock_is_409(client, bag_id):
    resp = checkout(client, bag_id, quantity=10)

    assert resp.status_code == 409
    assert "Insufficient stock" in resp.json()["error"]
    assert client.get("/queries/orders").json() == []


def test_invalid_checkout_payload_is_422(client, bag_id):
    resp = client.post(
        "/commands/checkout",
        json={"items": [], "shipping_address": ADDRESS, "provider": "stripe",
              "contact_email": "not-an-email"},
    )

    assert resp.status_code == 422


def test_bad_signature_is_400(client, bag_id):
    placed = checkout(client, bag_id).json()
    body = webhook_body("succeeded", placed["external_reference"], "100.00")

    resp = client.post("/webhooks/stripe", content=body, headers={"x-test-signature": "nope"})

    assert resp.status_code == 400
    order = client.get(f"/queries/orders/{placed['order_id']}").json()
    assert order["payment_info"]["status"] == "pending"


def test_unknown_provider_is_400(client):
    resp = client.post("/webhooks/paypal", content=b"{}")

    assert resp.status_code == 400


def test_unmatched_webhook_is_acknowledged(client):
    body = webhook_body("succeeded", "cs_test_nobody", "10.00")

    resp = client.post("/webhooks/stripe", content=body, headers={"x-test-signature": sign(body)})

    assert resp.status_code == 200
    assert resp.json()["result"] == "unmatched"
    issues = client.get("/queries/reconciliation/issues").json()
    assert [i["kind"] for i in issues] == ["unmatched_reference"]


def test_verify_endpoint_reports_status(client, bag_id):
    placed = checkout(client, bag_id).json()

    resp = client.get(f"/payments/stripe/verify/{placed['external_reference']}")

    assert resp.status_code == 200
    assert resp.json()["verified"] is False
    assert resp.json()["payment_status"] == "pending"
    assert client.get("/payments/stripe/verify/cs_missing").status_code == 404


def test_refund_on_unpaid_order_is_409(client, bag_id):
    placed = checkout(client, bag_id).json()

    resp = client.post(
        f"/commands/orders/{placed['order_id']}/refund", json={"reason": "changed my mind"}
    )

    assert resp.status_code == 409
    assert resp.json() == {"error": "Cannot request refund for incomplete payment"}


def test_fulfillment_endpoint(client, bag_id):
    placed = checkout(client, bag_id).json()
    url = f"/commands/orders/{placed['order_id']}/fulfillment"

    assert client.post(url, json={"order_status": "shipped"}).status_code == 409

    body = webhook_body("succeeded", placed["external_reference"], "100.00")
    client.post("/webhooks/stripe", content=body, headers={"x-test-signature": sign(body)})
    resp = client.post(
        url,
        json={"order_status": "shipped", "tracking": {"carrier": "DHL", "tracking_number": "1"}},
    )

    assert resp.status_code == 200
    assert resp.json()["order_status"] == "shipped"
    assert resp.json()["tracking_info"]["carrier"] == "DHL"


def test_retry_stock_with_nothing_pending(client):
    assert client.post("/commands/reconciliation/retry-stock").json() == {
        "retried": 0,
        "outcomes": [],
    }


def test_order_stats_and_events(client, bag_id):
    placed = checkout(client, bag_id).json()

    stats = client.get("/queries/orders/stats").json()
    events = client.get(f"/events/{placed['order_id']}").json()

    assert stats == [{"order_status": "pending", "count": 1, "total_amount": 100.0}]
    assert [e["event_type"] for e in events] == ["OrderCreated", "PaymentInitiated"]
    assert len(client.get("/events").json()) == 3


def test_order_stats_filtered_by_email(client, bag_id):
    checkout(client, bag_id)

    mine = client.get("/queries/orders/stats", params={"contact_email": "buyer@example.com"})
    other = client.get("/queries/orders/stats", params={"contact_email": "c@example.com"})

    assert mine.json() == [{"order_status": "pending", "count": 1, "total_amount": 100.0}]
    assert other.json() == []


def test_run_serves_the_app_with_uvicorn(monkeypatch):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.delenv("HOST", raising=False)
    monkeypatch.setenv("PORT", "9000")

    main.run()

    assert calls == [("storefront.main:app", {"host": "0.0.0.0", "port": 9000})]
