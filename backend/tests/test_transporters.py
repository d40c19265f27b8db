import uuid
import pytest
from sqlalchemy import select
from models import Order, Notification, UserRole
from utils.geo import calculate_distance, calculate_delivery_fee, MINIMUM_DELIVERY_FEE
from conftest import auth_headers

ACCRA = (5.6037, -0.1870)
TEMA = (5.6698, -0.0166)
KUMASI = (6.6885, -1.6244)


def test_haversine_distance():
    assert calculate_distance(*ACCRA, *ACCRA) == 0
    assert 195 < calculate_distance(*ACCRA, *KUMASI) < 205
    assert calculate_distance(*ACCRA, *TEMA) == pytest.approx(calculate_distance(*TEMA, *ACCRA))


def test_delivery_fee_has_minimum():
    assert calculate_delivery_fee(0.5) == MINIMUM_DELIVERY_FEE
    assert calculate_delivery_fee(10) == 20.0
    assert calculate_delivery_fee(10, base_price=3.5) == 35.0


@pytest.mark.asyncio
async def test_calculate_fee_endpoint(client, make_transporter):
    _, transporter = await make_transporter(base_price=3.0)

    default_rate = await client.post("/api/transporters/calculate-fee", json={
        "pickup_lat": ACCRA[0], "pickup_lng": ACCRA[1],
        "dropoff_lat": ACCRA[0], "dropoff_lng": ACCRA[1],
    })
    assert default_rate.status_code == 200
    assert default_rate.json()["data"] == {"distance_km": 0.0, "base_price": 2.0, "fee": 5.0}

    own_rate = await client.post("/api/transporters/calculate-fee", json={
        "pickup_lat": ACCRA[0], "pickup_lng": ACCRA[1],
        "dropoff_lat": TEMA[0], "dropoff_lng": TEMA[1],
        "transporter_id": str(transporter.id),
    })
    data = own_rate.json()["data"]
    assert data["base_price"] == 3.0
    assert data["fee"] == round(calculate_distance(*ACCRA, *TEMA) * 3.0, 2)

    unknown = await client.post("/api/transporters/calculate-fee", json={
        "pickup_lat": 0, "pickup_lng": 0, "dropoff_lat": 1, "dropoff_lng": 1,
        "transporter_id": str(uuid.uuid4()),
    })
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_available_transporters_within_radius(client, make_transporter):
    await make_transporter(current_lat=TEMA[0], current_lng=TEMA[1], company_name="Tema Movers")
    await make_transporter(current_lat=ACCRA[0], current_lng=ACCRA[1], company_name="Accra Express")
    await make_transporter(current_lat=KUMASI[0], current_lng=KUMASI[1], company_name="Kumasi Freight")
    await make_transporter(is_verified=False, current_lat=ACCRA[0], current_lng=ACCRA[1], company_name="Unverified")

    response = await client.get("/api/transporters/available", params={"lat": ACCRA[0], "lng": ACCRA[1]})

    assert response.status_code == 200
    data = response.json()["data"]
    assert [t["company_name"] for t in data] == ["Accra Express", "Tema Movers"]
    assert data[0]["distance_km"] == 0.0
    assert data[0]["name"] == "Kofi Boateng"


@pytest.mark.asyncio
async def test_available_transporters_by_region(client, make_transporter):
    await make_transporter(company_name="Northern Haulage", service_regions=["Northern"])
    await make_transporter(company_name="Coastal Haulage", service_regions=["Central", "Western"])

    response = await client.get("/api/transporters/available", params={"region": "Western"})

    assert [t["company_name"] for t in response.json()["data"]] == ["Coastal Haulage"]


@pytest.mark.asyncio
async def test_profile_and_vehicle_management(client, make_user):
    user = await make_user(role=UserRole.TRANSPORTER)
    headers = auth_headers(user)

    missing = await client.get("/api/transporters/profile", headers=headers)
    assert missing.status_code == 404

    created = await client.post(
        "/api/transporters/profile",
        json={"company_name": "Volta Logistics", "base_price": 2.5, "service_regions": ["Volta"]},
        headers=headers
    )
    assert created.status_code == 201
    assert created.json()["data"]["is_verified"] is False

    duplicate = await client.post("/api/transporters/profile", json={}, headers=headers)
    assert duplicate.status_code == 400

    vehicle = await client.post(
        "/api/transporters/vehicles",
        json={"type": "truck", "plate_number": " gr-1234-20 ", "capacity": 5000},
        headers=headers
    )
    assert vehicle.status_code == 201
    assert vehicle.json()["data"]["plate_number"] == "GR-1234-20"

    same_plate = await client.post(
        "/api/transporters/vehicles",
        json={"type": "van", "plate_number": "GR-1234-20", "capacity": 800},
        headers=headers
    )
    assert same_plate.status_code == 400

    profile = await client.get("/api/transporters/profile", headers=headers)
    assert len(profile.json()["data"]["vehicles"]) == 1
    assert profile.json()["data"]["recent_deliveries"] == []


@pytest.mark.asyncio
async def test_buyer_cannot_manage_transport(client, make_user):
    buyer = await make_user(role=UserRole.BUYER)

    response = await client.post("/api/transporters/profile", json={}, headers=auth_headers(buyer))

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_delivery_flow_drives_order_status(
    client, make_user, make_product, make_transporter, place_order, db_session
):
    farmer = await make_user(role=UserRole.FARMER, latitude=ACCRA[0], longitude=ACCRA[1])
    buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer)
    transporter_user, transporter = await make_transporter(base_price=2.0)
    headers = auth_headers(transporter_user)

    order_id = (await place_order(buyer, product, delivery_lat=TEMA[0], delivery_lng=TEMA[1])).json()["data"]["id"]

    too_early = await client.post("/api/transporters/deliveries", json={"order_id": order_id}, headers=headers)
    assert too_early.status_code == 400

    await client.patch(f"/api/orders/{order_id}/status", json={"status": "CONFIRMED"}, headers=auth_headers(farmer))

    claimed = await client.post("/api/transporters/deliveries", json={"order_id": order_id}, headers=headers)
    assert claimed.status_code == 201
    delivery = claimed.json()["data"]
    assert delivery["status"] == "ASSIGNED"
    assert delivery["fee"] == calculate_delivery_fee(calculate_distance(*ACCRA, *TEMA), 2.0)

    second_claim = await client.post("/api/transporters/deliveries", json={"order_id": order_id}, headers=headers)
    assert second_claim.status_code == 400

    skipped = await client.patch(
        f"/api/transporters/deliveries/{delivery['id']}/status",
        json={"status": "DELIVERED"},
        headers=headers
    )
    assert skipped.status_code == 400

    picked = await client.patch(
        f"/api/transporters/deliveries/{delivery['id']}/status",
        json={"status": "PICKED_UP"},
        headers=headers
    )
    assert picked.json()["data"]["picked_up_at"] is not None
    order_status = (await db_session.execute(select(Order.status).where(Order.id == uuid.UUID(order_id)))).scalar()
    assert order_status == "IN_TRANSIT"

    delivered = await client.patch(
        f"/api/transporters/deliveries/{delivery['id']}/status",
        json={"status": "DELIVERED"},
        headers=headers
    )
    assert delivered.json()["data"]["status"] == "DELIVERED"

    order = await client.get(f"/api/orders/{order_id}", headers=auth_headers(transporter_user))
    assert order.json()["data"]["status"] == "DELIVERED"
    assert order.json()["data"]["delivery"]["status"] == "DELIVERED"

    buyer_updates = await db_session.execute(
        select(Notification.title).where(Notification.user_id == buyer.id, Notification.title == "Delivery Update")
    )
    assert len(buyer_updates.all()) == 2


@pytest.mark.asyncio
async def test_delivery_fee_without_locations_is_minimum(
    client, make_user, make_product, make_transporter, place_order
):
    farmer = await make_user(role=UserRole.FARMER)
    buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer)
    transporter_user, _ = await make_transporter()

    order_id = (await place_order(buyer, product)).json()["data"]["id"]
    await client.patch(f"/api/orders/{order_id}/status", json={"status": "CONFIRMED"}, headers=auth_headers(farmer))

    claimed = await client.post(
        "/api/transporters/deliveries",
        json={"order_id": order_id},
        headers=auth_headers(transporter_user)
    )

    assert claimed.json()["data"]["fee"] == MINIMUM_DELIVERY_FEE
    assert claimed.json()["data"]["distance_km"] is None
