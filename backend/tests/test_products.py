import pytest
from sqlalchemy import select
from models import Product, UserRole
from conftest import auth_headers

PRODUCT_PAYLOAD = {
    "title": "Organic Yams",
    "description": "Puna yams from Techiman",
    "category": "CROPS",
    "price": 45.0,
    "quantity": 30,
    "unit": "tuber",
    "region": "Bono East",
}


@pytest.mark.asyncio
async def test_farmer_creates_unapproved_product(client, make_user):
    farmer = await make_user(role=UserRole.FARMER)

    response = await client.post("/api/products/", json=PRODUCT_PAYLOAD, headers=auth_headers(farmer))

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["is_approved"] is False
    assert data["seller_id"] == str(farmer.id)
    assert data["seller"]["name"] == "Ama Mensah"
    assert data["images"] == []


@pytest.mark.asyncio
async def test_buyer_cannot_create_product(client, make_user):
    buyer = await make_user(role=UserRole.BUYER)

    response = await client.post("/api/products/", json=PRODUCT_PAYLOAD, headers=auth_headers(buyer))

    assert response.status_code == 403
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_create_rejects_non_positive_price(client, make_user):
    farmer = await make_user(role=UserRole.FARMER)

    response = await client.post(
        "/api/products/",
        json={**PRODUCT_PAYLOAD, "price": 0},
        headers=auth_headers(farmer)
    )

    assert response.status_code == 400
    assert response.json()["error"].startswith("price:")


@pytest.mark.asyncio
async def test_public_list_hides_unapproved_and_deleted(client, make_user, make_product):
    farmer = await make_user(role=UserRole.FARMER)
    visible = await make_product(farmer, title="Plantain")
    await make_product(farmer, title="Pending Cassava", is_approved=False)
    await make_product(farmer, title="Old Maize", deleted_at=visible.created_at)

    response = await client.get("/api/products/")

    assert response.status_code == 200
    data = response.json()["data"]
    assert [p["title"] for p in data["products"]] == ["Plantain"]
    assert data["pagination"] == {"page": 1, "limit": 20, "total": 1, "pages": 1}


@pytest.mark.asyncio
async def test_list_filters_by_search_and_price(client, make_user, make_product):
    farmer = await make_user(role=UserRole.FARMER)
    await make_product(farmer, title="Cheap Onions", price=5.0)
    await make_product(farmer, title="Premium Onions", price=80.0)
    await make_product(farmer, title="Garden Eggs", price=10.0)

    response = await client.get("/api/products/", params={"search": "onion", "max_price": 50, "sort": "price_asc"})

    titles = [p["title"] for p in response.json()["data"]["products"]]
    assert titles == ["Cheap Onions"]


@pytest.mark.asyncio
async def test_unapproved_product_visible_only_to_owner(client, make_user, make_product):
    farmer = await make_user(role=UserRole.FARMER)
    stranger = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer, is_approved=False)

    anonymous = await client.get(f"/api/products/{product.id}")
    assert anonymous.status_code == 404

    other = await client.get(f"/api/products/{product.id}", headers=auth_headers(stranger))
    assert other.status_code == 404

    owner = await client.get(f"/api/products/{product.id}", headers=auth_headers(farmer))
    assert owner.status_code == 200
    assert owner.json()["data"]["views"] == 0


@pytest.mark.asyncio
async def test_view_count_increments_for_visitors(client, make_user, make_product):
    farmer = await make_user(role=UserRole.FARMER)
    product = await make_product(farmer)

    await client.get(f"/api/products/{product.id}")
    response = await client.get(f"/api/products/{product.id}")

    assert response.json()["data"]["views"] == 2


@pytest.mark.asyncio
async def test_update_by_non_owner_returns_404(client, make_user, make_product):
    owner = await make_user(role=UserRole.FARMER)
    other_seller = await make_user(role=UserRole.SUPPLIER)
    product = await make_product(owner)

    response = await client.patch(
        f"/api/products/{product.id}",
        json={"price": 1.0},
        headers=auth_headers(other_seller)
    )

    assert response.status_code == 404
    assert response.json()["error"] == "Product not found or unauthorized"


@pytest.mark.asyncio
async def test_price_edit_sends_product_back_to_moderation(client, make_user, make_product, db_session):
    farmer = await make_user(role=UserRole.FARMER)
    product = await make_product(farmer)

    stock_only = await client.patch(
        f"/api/products/{product.id}",
        json={"quantity": 7},
        headers=auth_headers(farmer)
    )
    assert stock_only.json()["data"]["is_approved"] is True

    repriced = await client.patch(
        f"/api/products/{product.id}",
        json={"price": 15.0},
        headers=auth_headers(farmer)
    )
    assert repriced.status_code == 200
    assert repriced.json()["data"]["is_approved"] is False


@pytest.mark.asyncio
async def test_empty_update_is_rejected(client, make_user, make_product):
    farmer = await make_user(role=UserRole.FARMER)
    product = await make_product(farmer)

    response = await client.patch(f"/api/products/{product.id}", json={}, headers=auth_headers(farmer))

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_delete_is_soft(client, make_user, make_product, db_session):
    farmer = await make_user(role=UserRole.FARMER)
    product = await make_product(farmer)

    response = await client.delete(f"/api/products/{product.id}", headers=auth_headers(farmer))
    assert response.status_code == 200

    row = (await db_session.execute(select(Product).where(Product.id == product.id))).scalar_one()
    assert row.deleted_at is not None
    assert row.is_available is False

    gone = await client.get(f"/api/products/{product.id}")
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_my_listings_include_pending(client, make_user, make_product):
    farmer = await make_user(role=UserRole.FARMER)
    await make_product(farmer, title="Approved Pepper")
    await make_product(farmer, title="Pending Pepper", is_approved=False)

    response = await client.get("/api/products/my/listings", headers=auth_headers(farmer))

    assert response.status_code == 200
    assert response.json()["data"]["pagination"]["total"] == 2
