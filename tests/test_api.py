"""HTTP surface: auth, permissions, error envelope and the main happy paths."""

from decimal import Decimal

import pytest

from app.core.config import settings

from tests.conftest import OTHER_TENANT

API = settings.API_V1_STR
ALL_PERMS = (
    "pharmacy.sales.create",
    "pharmacy.sales.view",
    "pharmacy.sales.approve",
    "pharmacy.sales.cancel",
    "pharmacy.inventory.view",
    "pharmacy.inventory.adjust",
    "pharmacy.credit.view",
    "pharmacy.po.manage",
    "pharmacy.po.approve",
    "pharmacy.grn.manage",
)


@pytest.fixture
def seeded(db, patient, store, make_product, add_stock):
    product = make_product(mrp="10.00")
    add_stock(store, product, "B1", 5)
    add_stock(store, product, "B2", 10)
    ids = {"patient_id": patient.id, "store_id": store.id, "product_id": product.id}
    # the client shares the single in-memory connection
    db.commit()
    db.close()
    return ids


@pytest.fixture
def auth(token):
    def _auth(perms=ALL_PERMS, **kw):
        return {"Authorization": f"Bearer {token(perms=perms, **kw)}"}
    return _auth


def _sale_body(seeded, qty="3", discount="0"):
    return {
        "patient_id": seeded["patient_id"],
        "store_id": seeded["store_id"],
        "items": [{"product_id": seeded["product_id"], "quantity": qty, "discount": discount}],
    }


def test_root(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["version"] == "v1"


def test_missing_token(client):
    r = client.get(f"{API}/pharmacy/sales/1")
    assert r.status_code == 401
    assert r.json() == {"ok": False, "error": {"msg": "Missing token", "code": "HTTP_401", "details": None}}


def test_bad_token(client):
    r = client.get(f"{API}/pharmacy/sales/1", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401
    assert r.json()["error"]["msg"] == "Invalid token"


def test_missing_permission(client, auth):
    r = client.get(f"{API}/pharmacy/sales/1", headers=auth(perms=("pharmacy.inventory.view",)))
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "HTTP_403"


def test_admin_bypasses_permissions(client, auth):
    r = client.get(f"{API}/pharmacy/sales/1", headers=auth(perms=(), admin=True))
    assert r.status_code == 404


def test_domain_error_envelope(client, auth):
    r = client.get(f"{API}/pharmacy/sales/12345", headers=auth())
    assert r.status_code == 404
    body = r.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "SALE_NOT_FOUND"


def test_validation_envelope(client, auth, seeded):
    r = client.post(f"{API}/pharmacy/op-sales", json=_sale_body(seeded, qty="0"), headers=auth())
    assert r.status_code == 422
    err = r.json()["error"]
    assert err["code"] == "VALIDATION_ERROR"
    assert err["details"][0]["loc"][-1] == "quantity"


def test_op_sale_flow(client, auth, seeded):
    r = client.post(f"{API}/pharmacy/op-sales", json=_sale_body(seeded, qty="7"), headers=auth())
    assert r.status_code == 201, r.text
    sale = r.json()
    assert sale["status"] == "COMPLETED"
    assert sale["sale_type"] == "OP"
    assert Decimal(sale["net_amount"]) == Decimal("70.00")
    assert [(i["batch_number"], Decimal(i["quantity"])) for i in sale["items"]] == [
        ("B1", Decimal("5")),
        ("B2", Decimal("2")),
    ]

    r = client.get(f"{API}/pharmacy/sales/{sale['id']}", headers=auth())
    assert r.status_code == 200
    assert r.json()["sale_number"] == sale["sale_number"]

    r = client.get(
        f"{API}/pharmacy/inventory/availability",
        params={"store_id": seeded["store_id"], "product_id": seeded["product_id"]},
        headers=auth(),
    )
    assert r.status_code == 200
    assert Decimal(r.json()["total_available"]) == Decimal("8")

    r = client.get(f"{API}/pharmacy/inventory/stock", params={"store_id": seeded["store_id"]}, headers=auth())
    assert r.status_code == 200
    assert [(row["batch_number"], Decimal(row["available_qty"])) for row in r.json()] == [("B2", Decimal("8"))]


def test_pending_sale_approve_and_stale_version(client, auth, seeded):
    r = client.post(f"{API}/pharmacy/op-sales", json=_sale_body(seeded, qty="2", discount="2.00"), headers=auth())
    assert r.status_code == 201, r.text
    sale = r.json()
    assert sale["status"] == "PENDING_APPROVAL"

    r = client.post(f"{API}/pharmacy/sales/{sale['id']}/approve", json={"version": 9}, headers=auth())
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "VERSION_CONFLICT"

    r = client.post(f"{API}/pharmacy/sales/{sale['id']}/approve", json={"version": sale["version"]}, headers=auth())
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "COMPLETED"


def test_insufficient_stock_is_reported(client, auth, seeded):
    r = client.post(f"{API}/pharmacy/op-sales", json=_sale_body(seeded, qty="16"), headers=auth())
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INSUFFICIENT_STOCK"


def test_cancel_sale(client, auth, seeded):
    sale = client.post(f"{API}/pharmacy/op-sales", json=_sale_body(seeded), headers=auth()).json()

    r = client.post(f"{API}/pharmacy/sales/{sale['id']}/cancel", json={"version": sale["version"]}, headers=auth())
    assert r.status_code == 200
    assert r.json() == {"success": True}

    r = client.get(f"{API}/pharmacy/sales/{sale['id']}", headers=auth())
    assert r.json()["status"] == "CANCELLED"


def test_manual_ledger_entry(client, auth, seeded):
    body = {
        "store_id": seeded["store_id"],
        "product_id": seeded["product_id"],
        "batch_number": " B1 ",
        "transaction_type": "ADJUSTMENT",
        "quantity_change": "-2",
        "notes": "breakage",
    }
    r = client.post(f"{API}/pharmacy/inventory/ledger", json=body, headers=auth())
    assert r.status_code == 201, r.text
    assert r.json()["batch_number"] == "B1"

    body["transaction_type"] = "SALE_OUT"
    r = client.post(f"{API}/pharmacy/inventory/ledger", json=body, headers=auth())
    assert r.status_code == 422


def test_credit_balance(client, auth, seeded):
    body = _sale_body(seeded, qty="2")
    body["credit_allowed"] = True
    assert client.post(f"{API}/pharmacy/op-sales", json=body, headers=auth()).status_code == 201

    r = client.get(f"{API}/pharmacy/credit-ledger/{seeded['patient_id']}/balance", headers=auth())
    assert r.status_code == 200
    assert Decimal(r.json()["balance"]) == Decimal("20.00")


def test_purchase_order_and_receipt(client, auth, seeded):
    po = client.post(f"{API}/pharmacy/purchase-orders", json={
        "store_id": seeded["store_id"],
        "items": [{"product_id": seeded["product_id"], "quantity_ordered": "10", "unit_cost": "4"}],
    }, headers=auth())
    assert po.status_code == 201, po.text
    po = po.json()
    assert Decimal(po["grand_total"]) == Decimal("40.00")

    r = client.post(f"{API}/pharmacy/purchase-orders/{po['id']}/approve", json={"version": 1}, headers=auth())
    assert r.json()["status"] == "APPROVED"

    r = client.post(f"{API}/pharmacy/grn", json={
        "purchase_order_id": po["id"],
        "store_id": seeded["store_id"],
        "items": [{
            "product_id": seeded["product_id"],
            "batch_number": "B9",
            "expiry_date": "2028-01-31",
            "quantity_received": "10",
        }],
    }, headers=auth())
    assert r.status_code == 201, r.text
    assert r.json()["status"] == "RECEIVED"

    r = client.get(f"{API}/pharmacy/purchase-orders/{po['id']}", headers=auth(perms=(), admin=True))
    assert r.json()["status"] == "RECEIVED"


def test_other_tenant_sees_nothing(client, token, seeded):
    headers = {"Authorization": f"Bearer {token(tenant_id=OTHER_TENANT, admin=True)}"}
    r = client.get(
        f"{API}/pharmacy/inventory/availability",
        params={"store_id": seeded["store_id"], "product_id": seeded["product_id"]},
        headers=headers,
    )
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "STORE_NOT_FOUND"


def test_purchase_order_edit_and_delete(client, auth, seeded):
    po = client.post(f"{API}/pharmacy/purchase-orders", json={
        "store_id": seeded["store_id"],
        "items": [{"product_id": seeded["product_id"], "quantity_ordered": "10", "unit_cost": "4"}],
    }, headers=auth()).json()

    r = client.put(f"{API}/pharmacy/purchase-orders/{po['id']}", json={
        "version": 1,
        "items": [{"product_id": seeded["product_id"], "quantity_ordered": "5", "unit_cost": "4"}],
    }, headers=auth())
    assert r.status_code == 200, r.text
    assert Decimal(r.json()["grand_total"]) == Decimal("20.00")
    assert r.json()["version"] == 2

    r = client.request("DELETE", f"{API}/pharmacy/purchase-orders/{po['id']}", json={"version": 2}, headers=auth())
    assert r.status_code == 200
    assert r.json() == {"success": True}

    r = client.get(f"{API}/pharmacy/purchase-orders/{po['id']}", headers=auth(perms=(), admin=True))
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "PO_NOT_FOUND"
