"""HTTP-level tests: routing, identity header, error envelope and a full run."""
import uuid
from decimal import Decimal

import pytest

from opsledger.schemas.manifest import DeliveryOutcomeCreate, ManifestCreate
from opsledger.services.manifest_service import ManifestService


API = "/api/v1"


@pytest.fixture
def headers(user_id):
    return {"X-User-Id": str(user_id)}


class TestPlumbing:

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == "connected"

    async def test_root(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["docs"] == "/docs"

    async def test_missing_user_header(self, client, make_variant):
        variant = await make_variant(stock=5)

        response = await client.post(
            f"{API}/inventory/adjustments",
            json={"variant_id": str(variant.id), "quantity_delta": 1, "reason": "Found"},
        )

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"

    async def test_malformed_user_header(self, client):
        response = await client.post(
            f"{API}/packing/orders/{uuid.uuid4()}/pack", headers={"X-User-Id": "not-a-uuid"}
        )

        assert response.status_code == 401

    async def test_request_validation_envelope(self, client, headers):
        response = await client.post(f"{API}/inventory/adjustments", json={"quantity_delta": 1}, headers=headers)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert {"variant_id", "reason"} <= set(error["fields"])

    async def test_insufficient_stock_envelope(self, client, headers, make_variant):
        variant = await make_variant(stock=5)

        response = await client.post(
            f"{API}/inventory/adjustments",
            json={"variant_id": str(variant.id), "quantity_delta": -6, "reason": "Shrinkage"},
            headers=headers,
        )

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "INSUFFICIENT_STOCK"
        assert error["details"]["available"] == 5
        assert "timestamp" in error

    async def test_not_found_envelope(self, client):
        response = await client.get(f"{API}/manifests/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"


class TestInventoryRoutes:

    async def test_adjust_then_list_and_reconcile(self, client, headers, make_variant, user_id):
        variant = await make_variant(stock=3)
        variant_id = str(variant.id)

        response = await client.post(
            f"{API}/inventory/adjustments",
            json={"variant_id": variant_id, "quantity_delta": 4, "reason": "Recount"},
            headers=headers,
        )
        assert response.status_code == 201
        body = response.json()
        assert (body["stock_before"], body["stock_after"]) == (3, 7)
        assert body["movement"]["created_by"] == str(user_id)

        response = await client.get(f"{API}/inventory/movements", params={"variant_id": variant_id})
        assert response.json()["total"] == 2

        response = await client.get(f"{API}/inventory/variants/{variant_id}/reconcile")
        assert response.status_code == 200
        assert response.json()["in_sync"] is True


class TestDispatchFlow:

    async def test_purchase_pack_deliver_settle(
        self, client, headers, make_variant, make_vendor, make_rider, make_order
    ):
        variant = await make_variant()
        vendor = await make_vendor()
        rider = await make_rider()
        order = await make_order([(variant, 2)], total_amount=Decimal("640"))
        variant_id, vendor_id, rider_id, order_id = str(variant.id), str(vendor.id), str(rider.id), str(order.id)

        response = await client.post(
            f"{API}/purchases",
            json={
                "vendor_id": vendor_id,
                "items": [{"variant_id": variant_id, "quantity": 10, "unit_cost": "120.00"}],
                "invoice_number": "INV-9",
            },
            headers=headers,
        )
        assert response.status_code == 201
        purchase = response.json()
        assert purchase["stock_applied"] == 1
        assert Decimal(purchase["purchase"]["total_amount"]) == Decimal("1200")

        response = await client.post(f"{API}/packing/orders/{order_id}/pack", headers=headers)
        assert response.status_code == 200
        assert response.json()["lines"][0]["stock_after"] == 8

        response = await client.post(f"{API}/packing/orders/{order_id}/pack", headers=headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_STATE_TRANSITION"

        response = await client.post(
            f"{API}/manifests", json={"rider_id": rider_id, "order_ids": [order_id]}, headers=headers
        )
        assert response.status_code == 201
        manifest_id = response.json()["id"]

        response = await client.post(f"{API}/manifests/{manifest_id}/dispatch", headers=headers)
        assert response.json()["status"] == "OUT_FOR_DELIVERY"

        response = await client.post(
            f"{API}/manifests/{manifest_id}/outcomes",
            json={"order_id": order_id, "outcome": "delivered"},
            headers=headers,
        )
        assert response.status_code == 200
        assert Decimal(response.json()["total_cod_collected"]) == Decimal("640")

        response = await client.post(
            f"{API}/manifests/{manifest_id}/outcomes",
            json={"order_id": order_id, "outcome": "DELIVERED"},
            headers=headers,
        )
        assert response.status_code == 409

        response = await client.get(f"{API}/settlements/riders")
        assert [Decimal(r["current_cash_balance"]) for r in response.json()] == [Decimal("640")]

        response = await client.post(
            f"{API}/manifests/{manifest_id}/settle", json={"cash_received": "640"}, headers=headers
        )
        assert response.status_code == 200
        settled = response.json()
        assert settled["status"] == "SETTLED"
        assert Decimal(settled["settlement_variance"]) == 0

        response = await client.get(f"{API}/settlements/riders/{rider_id}")
        history = response.json()
        assert history["total"] == 1
        assert history["items"][0]["manifest_id"] == manifest_id

        response = await client.get(f"{API}/settlements/riders/{rider_id}/balance-log")
        assert sorted(entry["change_type"] for entry in response.json()["items"]) == [
            "COD_COLLECTION",
            "SETTLEMENT",
        ]

    async def test_settlement_over_balance(self, client, headers, make_rider):
        rider = await make_rider(balance=Decimal("100"))

        response = await client.post(
            f"{API}/settlements", json={"rider_id": str(rider.id), "amount": "150"}, headers=headers
        )

        assert response.status_code == 400
        assert response.json()["error"]["fields"]["amount"]


class TestReadRoutes:

    async def test_sorting_floor(self, client, make_variant, make_packed_order):
        variant = await make_variant(stock=10)
        order = await make_packed_order([(variant, 2)], total_amount=Decimal("450"))

        response = await client.get(f"{API}/manifests/dispatch-queue", params={"city": "pun"})
        assert response.status_code == 200
        queue = response.json()
        assert queue["total"] == 1
        assert queue["items"][0]["id"] == str(order.id)
        assert queue["items"][0]["item_count"] == 1

        response = await client.get(f"{API}/manifests/zones")
        assert response.status_code == 200
        [zone] = response.json()
        assert (zone["city"], zone["order_count"]) == ("Pune", 1)
        assert Decimal(zone["total_cod"]) == Decimal("450")

    async def test_customer_return_round_trip(self, client, headers, db, make_variant, make_rider, make_packed_order):
        variant = await make_variant(stock=10)
        rider = await make_rider()
        order = await make_packed_order([(variant, 1)])
        service = ManifestService(db)
        manifest = await service.create_manifest(ManifestCreate(rider_id=rider.id, order_ids=[order.id]))
        await service.dispatch_manifest(manifest.id)
        await service.record_delivery_outcome(
            manifest.id, DeliveryOutcomeCreate(order_id=order.id, outcome="DELIVERED")
        )
        order_id, variant_id = str(order.id), str(variant.id)

        response = await client.post(
            f"{API}/returns/orders/{order_id}/initiate", json={"reason": "Changed mind"}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "RETURN_INITIATED"

        response = await client.post(f"{API}/returns/orders/{order_id}/initiate", headers=headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_STATE_TRANSITION"

        response = await client.post(
            f"{API}/returns/orders/{order_id}",
            json={"items": [{"variant_id": variant_id, "quantity": 1, "condition": "good"}]},
            headers=headers,
        )
        assert response.status_code == 201
        return_id = response.json()["id"]

        response = await client.get(f"{API}/returns/{return_id}")
        assert response.json()["order_id"] == order_id

        response = await client.get(f"{API}/returns/orders/{order_id}")
        assert [r["id"] for r in response.json()] == [return_id]

        response = await client.get(f"{API}/returns", params={"rider_id": str(rider.id)})
        assert response.json()["total"] == 1

        response = await client.get(f"{API}/returns/stats")
        assert response.json()["good_units_today"] == 1

        response = await client.get(f"{API}/returns/{uuid.uuid4()}")
        assert response.status_code == 404

    async def test_settlement_list_and_lookup(self, client, headers, make_rider):
        rider = await make_rider(balance=Decimal("300"))
        rider_id = str(rider.id)

        response = await client.post(
            f"{API}/settlements", json={"rider_id": rider_id, "amount": "120"}, headers=headers
        )
        settlement_id = response.json()["id"]

        response = await client.get(f"{API}/settlements", params={"status": "PENDING"})
        assert response.status_code == 200
        listing = response.json()
        assert listing["total"] == 1
        assert listing["items"][0]["id"] == settlement_id

        response = await client.get(f"{API}/settlements/{settlement_id}")
        assert response.status_code == 200
        assert Decimal(response.json()["balance_after"]) == Decimal("180")
