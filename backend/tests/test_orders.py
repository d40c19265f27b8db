import uuid
import pytest
from sqlalchemy import select, func, update
from models import Product, Order, Payment, Notification, UserRole, OrderStatus, PaymentStatus
from routers.orders import orders as orders_router
from routers.orders.helpers import can_transition, reserve_stock, ORDER_TRANSITIONS
from conftest import auth_headers


async def _product_quantity(db_session, product_id):
    result = await db_session.execute(select(Product.quantity).where(Product.id == product_id))
    return result.scalar()


@pytest.mark.asyncio
async def test_place_order_freezes_price_and_reserves_stock(make_user, make_product, place_order, db_session):
    farmer = await make_user(role=UserRole.FARMER)
    buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer, price=12.5, quantity=10)

    response = await place_order(buyer, product, quantity=4)

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "PENDING"
    assert data["total_amount"] == 50.0
    assert data["seller_id"] == str(farmer.id)
    assert data["items"][0]["price"] == 12.5
    assert data["items"][0]["subtotal"] == 50.0
    assert await _product_quantity(db_session, product.id) == 6

    notifications = await db_session.execute(select(Notification).where(Notification.user_id == farmer.id))
    assert [n.title for n in notifications.scalars().all()] == ["New Order"]


@pytest.mark.asyncio
async def test_unavailable_product_is_rejected(make_user, make_product, place_order, db_session):
    farmer = await make_user(role=UserRole.FARMER)
    buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer, title="Shea Butter", is_available=False)

    response = await place_order(buyer, product)

    assert response.status_code == 400
    assert response.json()["error"] == "Product 'Shea Butter' is not available"
    count = await db_session.execute(select(func.count(Order.id)))
    assert count.scalar() == 0


@pytest.mark.asyncio
async def test_unapproved_product_is_rejected(make_user, make_product, place_order):
    farmer = await make_user(role=UserRole.FARMER)
    buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer, is_approved=False)

    response = await place_order(buyer, product)

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_last_unit_cannot_be_sold_twice(make_user, make_product, place_order, db_session):
    farmer = await make_user(role=UserRole.FARMER)
    first_buyer = await make_user(role=UserRole.BUYER)
    second_buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer, title="Goat", quantity=1, unit="head")

    first = await place_order(first_buyer, product, quantity=1)
    second = await place_order(second_buyer, product, quantity=1)

    assert first.status_code == 201
    assert second.status_code == 400
    assert second.json()["error"].startswith("Insufficient quantity for 'Goat'")
    assert await _product_quantity(db_session, product.id) == 0


@pytest.mark.asyncio
async def test_reserve_stock_refuses_after_another_writer(make_user, make_product, session_factory, db_session):
    farmer = await make_user(role=UserRole.FARMER)
    product = await make_product(farmer, title="Goat", quantity=1, unit="head")

    async with session_factory() as first_writer:
        assert await reserve_stock(first_writer, product.id, 1) is True
        await first_writer.commit()

    async with session_factory() as second_writer:
        assert await reserve_stock(second_writer, product.id, 1) is False
        await second_writer.rollback()

    assert await _product_quantity(db_session, product.id) == 0


@pytest.mark.asyncio
async def test_order_rejected_when_stock_is_taken_after_checks(
    make_user, make_product, place_order, session_factory, db_session, monkeypatch
):
    farmer = await make_user(role=UserRole.FARMER)
    buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer, title="Goat", quantity=1, unit="head")

    async def competing_reserve(db, product_id, quantity):
        async with session_factory() as competitor:
            await competitor.execute(
                update(Product).where(Product.id == product_id).values(quantity=Product.quantity - 1)
            )
            await competitor.commit()
        return await reserve_stock(db, product_id, quantity)

    monkeypatch.setattr(orders_router, "reserve_stock", competing_reserve)

    response = await place_order(buyer, product, quantity=1)

    assert response.status_code == 400
    assert response.json()["error"] == "Insufficient quantity for Goat"
    assert await _product_quantity(db_session, product.id) == 0
    orders = await db_session.execute(select(func.count(Order.id)))
    assert orders.scalar() == 0


@pytest.mark.asyncio
async def test_items_from_two_sellers_are_rejected(client, make_user, make_product):
    farmer = await make_user(role=UserRole.FARMER)
    supplier = await make_user(role=UserRole.SUPPLIER)
    buyer = await make_user(role=UserRole.BUYER)
    yams = await make_product(farmer, title="Yams")
    fertilizer = await make_product(supplier, title="NPK Fertilizer")

    response = await client.post(
        "/api/orders/",
        json={
            "items": [
                {"product_id": str(yams.id), "quantity": 1},
                {"product_id": str(fertilizer.id), "quantity": 1},
            ],
            "delivery_address": "12 Market Street",
            "delivery_city": "Accra",
            "delivery_region": "Greater Accra",
        },
        headers=auth_headers(buyer)
    )

    assert response.status_code == 400
    assert response.json()["error"] == "All items in an order must come from the same seller"


@pytest.mark.asyncio
async def test_seller_cannot_place_orders(make_user, make_product, place_order):
    farmer = await make_user(role=UserRole.FARMER)
    other_farmer = await make_user(role=UserRole.FARMER)
    product = await make_product(farmer)

    response = await place_order(other_farmer, product)

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_buyer_cancel_restores_stock(client, make_user, make_product, place_order, db_session):
    farmer = await make_user(role=UserRole.FARMER)
    buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer, quantity=5)
    order_id = (await place_order(buyer, product, quantity=3)).json()["data"]["id"]

    response = await client.patch(f"/api/orders/{order_id}/cancel", headers=auth_headers(buyer))

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "CANCELLED"
    assert response.json()["data"]["cancelled_at"] is not None
    assert await _product_quantity(db_session, product.id) == 5


@pytest.mark.asyncio
async def test_paid_order_cannot_be_cancelled(client, make_user, make_product, place_order, session_factory):
    farmer = await make_user(role=UserRole.FARMER)
    buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer)
    order = (await place_order(buyer, product)).json()["data"]

    async with session_factory() as session:
        session.add(Payment(
            order_id=uuid.UUID(order["id"]),
            amount=order["total_amount"],
            method="MOBILE_MONEY",
            status=PaymentStatus.COMPLETED.value,
            reference="AGRO-PAID-0001"
        ))
        await session.commit()

    response = await client.patch(f"/api/orders/{order['id']}/cancel", headers=auth_headers(buyer))

    assert response.status_code == 400
    assert response.json()["error"] == "Cannot cancel paid order. Please request refund."


@pytest.mark.asyncio
async def test_seller_status_changes_follow_transition_table(client, make_user, make_product, place_order):
    farmer = await make_user(role=UserRole.FARMER)
    buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer)
    order_id = (await place_order(buyer, product)).json()["data"]["id"]
    headers = auth_headers(farmer)

    skipped = await client.patch(f"/api/orders/{order_id}/status", json={"status": "DELIVERED"}, headers=headers)
    assert skipped.status_code == 400
    assert skipped.json()["error"] == "Cannot change order status from PENDING to DELIVERED"

    for next_status in ("CONFIRMED", "IN_TRANSIT", "DELIVERED"):
        response = await client.patch(f"/api/orders/{order_id}/status", json={"status": next_status}, headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["status"] == next_status

    cancel_delivered = await client.patch(f"/api/orders/{order_id}/status", json={"status": "CANCELLED"}, headers=headers)
    assert cancel_delivered.status_code == 400


@pytest.mark.asyncio
async def test_other_seller_cannot_change_status(client, make_user, make_product, place_order):
    farmer = await make_user(role=UserRole.FARMER)
    other_farmer = await make_user(role=UserRole.FARMER)
    buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer)
    order_id = (await place_order(buyer, product)).json()["data"]["id"]

    response = await client.patch(
        f"/api/orders/{order_id}/status",
        json={"status": "CONFIRMED"},
        headers=auth_headers(other_farmer)
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_order_visible_to_parties_only(client, make_user, make_product, place_order):
    farmer = await make_user(role=UserRole.FARMER)
    buyer = await make_user(role=UserRole.BUYER)
    outsider = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer)
    order_id = (await place_order(buyer, product)).json()["data"]["id"]

    assert (await client.get(f"/api/orders/{order_id}", headers=auth_headers(buyer))).status_code == 200
    assert (await client.get(f"/api/orders/{order_id}", headers=auth_headers(farmer))).status_code == 200
    assert (await client.get(f"/api/orders/{order_id}", headers=auth_headers(outsider))).status_code == 403


@pytest.mark.asyncio
async def test_order_listings_for_buyer_and_seller(client, make_user, make_product, place_order):
    farmer = await make_user(role=UserRole.FARMER)
    buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer)
    await place_order(buyer, product)
    await place_order(buyer, product)

    mine = await client.get("/api/orders/my-orders", headers=auth_headers(buyer))
    assert mine.json()["data"]["pagination"]["total"] == 2

    incoming = await client.get("/api/orders/seller/my-orders", params={"status": "PENDING"}, headers=auth_headers(farmer))
    assert incoming.json()["data"]["pagination"]["total"] == 2
    assert incoming.json()["data"]["orders"][0]["buyer"]["name"] == "Ama Mensah"


def test_transition_table():
    assert can_transition(OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value)
    assert can_transition(OrderStatus.CONFIRMED.value, OrderStatus.CANCELLED.value)
    assert not can_transition(OrderStatus.PENDING.value, OrderStatus.IN_TRANSIT.value)
    assert not can_transition(OrderStatus.IN_TRANSIT.value, OrderStatus.CANCELLED.value)
    assert ORDER_TRANSITIONS[OrderStatus.DELIVERED.value] == set()
    assert ORDER_TRANSITIONS[OrderStatus.CANCELLED.value] == set()
