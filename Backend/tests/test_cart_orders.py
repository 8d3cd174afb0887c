"""
Cart, checkout and order cancellation through the storefront API.

Run with:
    pytest Backend/tests/test_cart_orders.py -v
"""
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from biggbuzz.models import (
    ComplianceEvent,
    ComplianceEventType,
    Order,
    Product,
    Subscriber,
    TokenTransaction,
    TokenTransactionType,
)
from biggbuzz.security import create_subscriber_token

from conftest import SECOND_ADULT_ID, make_subscriber

ADDRESS = {
    "street": "12 Long Street",
    "city": "Cape Town",
    "province": "Western Cape",
    "postalCode": "8001",
}


def bearer(subscriber: Subscriber) -> dict:
    return {"Authorization": f"Bearer {create_subscriber_token(subscriber.id, subscriber.phone_number)}"}


async def fill_cart(client: AsyncClient, headers: dict, product, second_product) -> None:
    response = await client.post("/api/cart", json={"productId": product.id, "quantity": 2}, headers=headers)
    assert response.status_code == 200
    response = await client.post(
        "/api/cart", json={"productId": second_product.id, "quantity": 1}, headers=headers
    )
    assert response.status_code == 200


# ============================================================================
# CART
# ============================================================================

@pytest.mark.asyncio
async def test_empty_cart_is_created_on_first_read(client: AsyncClient, subscriber_headers):
    """
    Test: GET /api/cart for a new subscriber => empty cart with zero summary
    """
    response = await client.get("/api/cart", headers=subscriber_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["cart"]["items"] == []
    assert data["summary"] == {"itemCount": 0, "subtotal": 0.0, "tax": 0.0, "total": 0.0}


@pytest.mark.asyncio
async def test_adding_same_product_merges_lines(client: AsyncClient, subscriber_headers, product):
    """
    Test: POST /api/cart twice for one product => one line, summed quantity
    """
    await client.post("/api/cart", json={"productId": product.id, "quantity": 2}, headers=subscriber_headers)
    response = await client.post(
        "/api/cart", json={"productId": product.id, "quantity": 1}, headers=subscriber_headers
    )

    data = response.json()
    assert len(data["cart"]["items"]) == 1
    assert data["cart"]["items"][0]["quantity"] == 3
    assert data["summary"] == {"itemCount": 3, "subtotal": 300.0, "tax": 30.0, "total": 330.0}


@pytest.mark.asyncio
async def test_variants_are_separate_lines(client: AsyncClient, subscriber_headers, product):
    """
    Test: different variants => separate lines; equal variants in any key order merge
    """
    await client.post(
        "/api/cart",
        json={"productId": product.id, "variant": {"size": "3.5g", "grind": "coarse"}},
        headers=subscriber_headers,
    )
    await client.post(
        "/api/cart",
        json={"productId": product.id, "variant": {"grind": "coarse", "size": "3.5g"}},
        headers=subscriber_headers,
    )
    response = await client.post(
        "/api/cart", json={"productId": product.id, "variant": {"size": "7g"}}, headers=subscriber_headers
    )

    items = response.json()["cart"]["items"]
    assert len(items) == 2
    assert items[0]["quantity"] == 2
    assert items[0]["variant"] == {"grind": "coarse", "size": "3.5g"}
    assert items[1]["variant"] == {"size": "7g"}


@pytest.mark.asyncio
async def test_add_more_than_stock(client: AsyncClient, subscriber_headers, product):
    """
    Test: POST /api/cart beyond available stock => 400 INSUFFICIENT_STOCK
    """
    response = await client.post(
        "/api/cart", json={"productId": product.id, "quantity": 11}, headers=subscriber_headers
    )

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "INSUFFICIENT_STOCK"
    assert body["details"]["available"] == 10


@pytest.mark.asyncio
async def test_variants_count_against_the_same_stock(client: AsyncClient, subscriber_headers, product):
    """
    Test: 6 x size a then 5 x size b of a 10-unit product => second add 400 INSUFFICIENT_STOCK
    """
    first = await client.post(
        "/api/cart",
        json={"productId": product.id, "quantity": 6, "variant": {"size": "a"}},
        headers=subscriber_headers,
    )
    assert first.status_code == 200

    second = await client.post(
        "/api/cart",
        json={"productId": product.id, "quantity": 5, "variant": {"size": "b"}},
        headers=subscriber_headers,
    )

    assert second.status_code == 400
    assert second.json()["error"] == "INSUFFICIENT_STOCK"
    cart = (await client.get("/api/cart", headers=subscriber_headers)).json()
    assert [i["quantity"] for i in cart["cart"]["items"]] == [6]


@pytest.mark.asyncio
async def test_update_counts_other_variant_lines(client: AsyncClient, subscriber_headers, product):
    """
    Test: PUT /api/cart/items/{id} is checked against the product total across variants
    """
    await client.post(
        "/api/cart",
        json={"productId": product.id, "quantity": 4, "variant": {"size": "a"}},
        headers=subscriber_headers,
    )
    added = await client.post(
        "/api/cart",
        json={"productId": product.id, "quantity": 1, "variant": {"size": "b"}},
        headers=subscriber_headers,
    )
    item_id = next(i["id"] for i in added.json()["cart"]["items"] if i["variant"] == {"size": "b"})

    too_many = await client.put(
        f"/api/cart/items/{item_id}", json={"quantity": 7}, headers=subscriber_headers
    )
    assert too_many.status_code == 400
    assert too_many.json()["error"] == "INSUFFICIENT_STOCK"

    exactly = await client.put(
        f"/api/cart/items/{item_id}", json={"quantity": 6}, headers=subscriber_headers
    )
    assert exactly.status_code == 200
    assert exactly.json()["summary"]["itemCount"] == 10


@pytest.mark.asyncio
async def test_add_unknown_or_inactive_product(client: AsyncClient, subscriber_headers, session_factory, product):
    """
    Test: POST /api/cart for a missing or deactivated product => 404
    """
    missing = await client.post("/api/cart", json={"productId": "nope"}, headers=subscriber_headers)
    assert missing.status_code == 404

    async with session_factory() as session:
        stored = await session.get(Product, product.id)
        stored.is_active = False
        await session.commit()

    inactive = await client.post("/api/cart", json={"productId": product.id}, headers=subscriber_headers)
    assert inactive.status_code == 404


@pytest.mark.asyncio
async def test_update_remove_and_clear(client: AsyncClient, subscriber_headers, product, second_product):
    """
    Test: PUT /items/{id}, DELETE /items/{id}, DELETE /api/cart
    """
    await fill_cart(client, subscriber_headers, product, second_product)
    cart = (await client.get("/api/cart", headers=subscriber_headers)).json()["cart"]
    first, second = cart["items"]

    updated = await client.put(
        f"/api/cart/items/{first['id']}", json={"quantity": 5}, headers=subscriber_headers
    )
    assert updated.status_code == 200
    assert updated.json()["summary"]["subtotal"] == 520.0

    too_many = await client.put(
        f"/api/cart/items/{second['id']}", json={"quantity": 6}, headers=subscriber_headers
    )
    assert too_many.status_code == 400

    removed = await client.delete(f"/api/cart/items/{second['id']}", headers=subscriber_headers)
    assert [i["id"] for i in removed.json()["cart"]["items"]] == [first["id"]]

    cleared = await client.delete("/api/cart", headers=subscriber_headers)
    assert cleared.status_code == 200
    assert (await client.get("/api/cart", headers=subscriber_headers)).json()["cart"]["items"] == []


@pytest.mark.asyncio
async def test_cannot_touch_another_subscribers_cart_item(
    client: AsyncClient, session_factory, subscriber_headers, product
):
    """
    Test: PUT /api/cart/items/{id} on someone else's item => 404
    """
    added = await client.post("/api/cart", json={"productId": product.id}, headers=subscriber_headers)
    item_id = added.json()["cart"]["items"][0]["id"]

    other = await make_subscriber(session_factory, sa_id=SECOND_ADULT_ID, phone="+27831234567")
    response = await client.put(f"/api/cart/items/{item_id}", json={"quantity": 2}, headers=bearer(other))
    assert response.status_code == 404


# ============================================================================
# CHECKOUT
# ============================================================================

@pytest.mark.asyncio
async def test_checkout_with_tokens(
    client: AsyncClient, session_factory, subscriber, subscriber_headers, product, second_product
):
    """
    Test: POST /api/orders => 201, tokens debited, stock reduced, cart emptied
    """
    await fill_cart(client, subscriber_headers, product, second_product)

    response = await client.post(
        "/api/orders",
        json={"deliveryAddress": ADDRESS, "deliveryMethod": "STANDARD", "notes": "Ring twice"},
        headers=subscriber_headers,
    )

    assert response.status_code == 201
    data = response.json()
    order = data["order"]
    assert order["status"] == "PENDING"
    assert order["subtotal"] == 220.0
    assert order["tax"] == 22.0
    assert order["deliveryFee"] == 25.0
    assert order["total"] == 267.0
    assert order["orderNumber"].startswith("ORD-")
    assert order["deliveryAddress"]["country"] == "South Africa"
    assert {i["productName"]: i["quantity"] for i in order["items"]} == {
        "Blue Dream": 2,
        "Strawberry Gummies": 1,
    }
    assert data["newBalance"] == 733.0

    cart = (await client.get("/api/cart", headers=subscriber_headers)).json()
    assert cart["cart"]["items"] == []

    async with session_factory() as session:
        assert (await session.get(Product, product.id)).stock_quantity == 8
        assert (await session.get(Product, second_product.id)).stock_quantity == 4
        purchase = (await session.execute(select(TokenTransaction))).scalar_one()
        assert purchase.type == TokenTransactionType.PURCHASE
        assert purchase.amount == Decimal("-267.00")
        assert purchase.order_id == order["id"]
        assert purchase.balance_before == Decimal("1000.00")
        assert purchase.balance_after == Decimal("733.00")

        event_types = {
            e.event_type for e in (await session.execute(select(ComplianceEvent))).scalars().all()
        }
        assert {ComplianceEventType.ORDER_PLACED, ComplianceEventType.PAYMENT_PROCESSED} <= event_types


@pytest.mark.asyncio
async def test_checkout_empty_cart(client: AsyncClient, subscriber_headers):
    """
    Test: POST /api/orders with nothing in the cart => 400 EMPTY_CART
    """
    response = await client.post("/api/orders", json={"deliveryAddress": ADDRESS}, headers=subscriber_headers)

    assert response.status_code == 400
    assert response.json()["error"] == "EMPTY_CART"


@pytest.mark.asyncio
async def test_checkout_insufficient_balance(client: AsyncClient, session_factory, product):
    """
    Test: POST /api/orders costing more than the balance => 400, nothing changes
    """
    poor = await make_subscriber(session_factory, balance="10.00")
    headers = bearer(poor)
    await client.post("/api/cart", json={"productId": product.id}, headers=headers)

    response = await client.post("/api/orders", json={"deliveryAddress": ADDRESS}, headers=headers)

    assert response.status_code == 400
    assert response.json()["error"] == "INSUFFICIENT_BALANCE"
    async with session_factory() as session:
        assert (await session.execute(select(Order))).first() is None
        assert (await session.get(Product, product.id)).stock_quantity == 10
        assert (await session.get(Subscriber, poor.id)).token_balance == Decimal("10.00")


@pytest.mark.asyncio
async def test_checkout_sums_variant_lines_against_stock(
    client: AsyncClient, session_factory, subscriber, subscriber_headers, product
):
    """
    Test: stock falls to 8 after 6 + 4 units were carted as two variants => checkout 400, nothing sold
    """
    for variant, quantity in (({"size": "a"}, 6), ({"size": "b"}, 4)):
        added = await client.post(
            "/api/cart",
            json={"productId": product.id, "quantity": quantity, "variant": variant},
            headers=subscriber_headers,
        )
        assert added.status_code == 200

    async with session_factory() as session:
        stored = await session.get(Product, product.id)
        stored.stock_quantity = 8
        await session.commit()

    response = await client.post("/api/orders", json={"deliveryAddress": ADDRESS}, headers=subscriber_headers)

    assert response.status_code == 400
    assert response.json()["error"] == "INSUFFICIENT_STOCK"
    assert response.json()["details"]["available"] == 8
    async with session_factory() as session:
        assert (await session.execute(select(Order))).first() is None
        stored = await session.get(Product, product.id)
        assert stored.stock_quantity == 8
        assert stored.in_stock is True
        assert (await session.get(Subscriber, subscriber.id)).token_balance == Decimal("1000.00")


@pytest.mark.asyncio
async def test_checkout_then_cancel_keeps_stock_exact(
    client: AsyncClient, session_factory, subscriber_headers, product
):
    """
    Test: cash checkout of both variant lines up to full stock, cancel => stock back to exactly 10
    """
    for variant, quantity in (({"size": "a"}, 6), ({"size": "b"}, 4)):
        await client.post(
            "/api/cart",
            json={"productId": product.id, "quantity": quantity, "variant": variant},
            headers=subscriber_headers,
        )

    placed = await client.post(
        "/api/orders",
        json={"deliveryAddress": ADDRESS, "paymentMethod": "CASH_ON_DELIVERY"},
        headers=subscriber_headers,
    )
    assert placed.status_code == 201
    async with session_factory() as session:
        stored = await session.get(Product, product.id)
        assert stored.stock_quantity == 0
        assert stored.in_stock is False

    order_id = placed.json()["order"]["id"]
    cancelled = await client.delete(f"/api/orders/{order_id}", headers=subscriber_headers)
    assert cancelled.status_code == 200
    async with session_factory() as session:
        stored = await session.get(Product, product.id)
        assert stored.stock_quantity == 10
        assert stored.in_stock is True


@pytest.mark.asyncio
async def test_cash_on_delivery_does_not_touch_tokens(client: AsyncClient, session_factory, product):
    """
    Test: CASH_ON_DELIVERY checkout with an empty balance => 201, no ledger row
    """
    broke = await make_subscriber(session_factory, balance="0.00")
    headers = bearer(broke)
    await client.post("/api/cart", json={"productId": product.id}, headers=headers)

    response = await client.post(
        "/api/orders",
        json={"deliveryAddress": ADDRESS, "deliveryMethod": "PICKUP", "paymentMethod": "CASH_ON_DELIVERY"},
        headers=headers,
    )

    assert response.status_code == 201
    assert response.json()["order"]["total"] == 110.0
    assert response.json()["newBalance"] == 0.0
    async with session_factory() as session:
        assert (await session.execute(select(TokenTransaction))).first() is None


@pytest.mark.asyncio
async def test_checkout_rejects_bad_postal_code(client: AsyncClient, subscriber_headers, product):
    """
    Test: postal code that is not 4 digits => 400 VALIDATION_ERROR
    """
    await client.post("/api/cart", json={"productId": product.id}, headers=subscriber_headers)
    response = await client.post(
        "/api/orders",
        json={"deliveryAddress": {**ADDRESS, "postalCode": "80011"}},
        headers=subscriber_headers,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"


# ============================================================================
# ORDER HISTORY AND CANCELLATION
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_pending_order_refunds_and_restocks(
    client: AsyncClient, session_factory, subscriber, subscriber_headers, product, second_product
):
    """
    Test: DELETE /api/orders/{id} => CANCELLED, tokens refunded, stock restored
    """
    await fill_cart(client, subscriber_headers, product, second_product)
    placed = await client.post("/api/orders", json={"deliveryAddress": ADDRESS}, headers=subscriber_headers)
    order_id = placed.json()["order"]["id"]

    response = await client.delete(f"/api/orders/{order_id}", headers=subscriber_headers)
    assert response.status_code == 200
    assert response.json()["order"]["status"] == "CANCELLED"

    again = await client.delete(f"/api/orders/{order_id}", headers=subscriber_headers)
    assert again.status_code == 400
    assert again.json()["error"] == "INVALID_STATUS_TRANSITION"

    detail = (await client.get(f"/api/orders/{order_id}", headers=subscriber_headers)).json()["order"]
    assert [h["toStatus"] for h in detail["statusHistory"]] == ["PENDING", "CANCELLED"]
    assert detail["statusHistory"][1]["fromStatus"] == "PENDING"
    assert [t["type"] for t in detail["tokenTransactions"]] == ["PURCHASE", "REFUND"]

    async with session_factory() as session:
        assert (await session.get(Subscriber, subscriber.id)).token_balance == Decimal("1000.00")
        assert (await session.get(Product, product.id)).stock_quantity == 10
        assert (await session.get(Product, second_product.id)).stock_quantity == 5


@pytest.mark.asyncio
async def test_orders_are_private(client: AsyncClient, session_factory, subscriber_headers, product):
    """
    Test: another subscriber cannot read or cancel my order => 404
    """
    await client.post("/api/cart", json={"productId": product.id}, headers=subscriber_headers)
    placed = await client.post("/api/orders", json={"deliveryAddress": ADDRESS}, headers=subscriber_headers)
    order_id = placed.json()["order"]["id"]

    other = bearer(await make_subscriber(session_factory, sa_id=SECOND_ADULT_ID, phone="+27831234567"))
    assert (await client.get(f"/api/orders/{order_id}", headers=other)).status_code == 404
    assert (await client.delete(f"/api/orders/{order_id}", headers=other)).status_code == 404
    assert (await client.get("/api/orders", headers=other)).json()["orders"] == []


@pytest.mark.asyncio
async def test_list_orders_filters_and_paginates(client: AsyncClient, subscriber_headers, product):
    """
    Test: GET /api/orders?status=... with pagination metadata
    """
    ids = []
    for _ in range(3):
        await client.post("/api/cart", json={"productId": product.id}, headers=subscriber_headers)
        placed = await client.post("/api/orders", json={"deliveryAddress": ADDRESS}, headers=subscriber_headers)
        ids.append(placed.json()["order"]["id"])
    await client.delete(f"/api/orders/{ids[0]}", headers=subscriber_headers)

    pending = await client.get("/api/orders?status=PENDING&limit=1", headers=subscriber_headers)
    data = pending.json()
    assert len(data["orders"]) == 1
    assert data["pagination"] == {
        "page": 1,
        "limit": 1,
        "total": 2,
        "totalPages": 2,
        "hasNext": True,
        "hasPrev": False,
    }

    cancelled = await client.get("/api/orders?status=CANCELLED", headers=subscriber_headers)
    assert [o["id"] for o in cancelled.json()["orders"]] == [ids[0]]
