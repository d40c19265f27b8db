import pytest
from sqlalchemy import select
from models import AdminLog, Review, Notification, UserRole, NotificationType
from routers.admin.helpers import mask_secret
from conftest import auth_headers, TEST_PASSWORD


@pytest.mark.asyncio
async def test_admin_routes_require_admin_role(client, make_user):
    farmer = await make_user(role=UserRole.FARMER)

    response = await client.get("/api/admin/users", headers=auth_headers(farmer))

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_cannot_modify_self(client, make_user):
    admin = await make_user(role=UserRole.ADMIN)

    role = await client.patch(f"/api/admin/users/{admin.id}/role", json={"role": "BUYER"}, headers=auth_headers(admin))
    suspend = await client.patch(f"/api/admin/users/{admin.id}/suspend", json={"is_suspended": True}, headers=auth_headers(admin))

    assert role.status_code == 400
    assert suspend.status_code == 400
    assert role.json()["error"] == "You cannot modify your own account"


@pytest.mark.asyncio
async def test_suspension_is_logged_and_blocks_login(client, make_user, db_session):
    admin = await make_user(role=UserRole.ADMIN)
    farmer = await make_user(role=UserRole.FARMER, email="suspect@agro.gh")

    response = await client.patch(
        f"/api/admin/users/{farmer.id}/suspend",
        json={"is_suspended": True, "reason": "Fake listings"},
        headers=auth_headers(admin)
    )
    assert response.status_code == 200
    assert response.json()["data"]["is_suspended"] is True

    log = (await db_session.execute(select(AdminLog))).scalar_one()
    assert log.action == "SUSPEND_USER"
    assert log.entity_id == str(farmer.id)
    assert log.before["is_suspended"] is False
    assert log.after == {"role": "FARMER", "is_suspended": True, "is_active": True, "reason": "Fake listings"}

    login = await client.post("/api/auth/login", json={"email": "suspect@agro.gh", "password": TEST_PASSWORD})
    assert login.status_code == 403

    existing_token = await client.get("/api/users/me", headers=auth_headers(farmer))
    assert existing_token.status_code == 403


@pytest.mark.asyncio
async def test_role_change_and_user_search(client, make_user):
    admin = await make_user(role=UserRole.ADMIN)
    user = await make_user(role=UserRole.BUYER, first_name="Afua", last_name="Sarpong")

    changed = await client.patch(
        f"/api/admin/users/{user.id}/role",
        json={"role": "SUPPLIER"},
        headers=auth_headers(admin)
    )
    assert changed.json()["data"]["role"] == "SUPPLIER"

    found = await client.get("/api/admin/users", params={"search": "sarp"}, headers=auth_headers(admin))
    assert [u["id"] for u in found.json()["data"]["users"]] == [str(user.id)]


@pytest.mark.asyncio
async def test_product_approval_makes_listing_public(client, make_user, make_product, db_session):
    admin = await make_user(role=UserRole.ADMIN)
    farmer = await make_user(role=UserRole.FARMER)
    product = await make_product(farmer, title="Cocoa Beans", is_approved=False)

    pending = await client.get("/api/admin/products", params={"is_approved": False}, headers=auth_headers(admin))
    assert [p["title"] for p in pending.json()["data"]["products"]] == ["Cocoa Beans"]

    approved = await client.patch(
        f"/api/admin/products/{product.id}/approve",
        json={"is_approved": True},
        headers=auth_headers(admin)
    )
    assert approved.status_code == 200

    public = await client.get("/api/products/")
    assert [p["title"] for p in public.json()["data"]["products"]] == ["Cocoa Beans"]

    notification = (await db_session.execute(
        select(Notification).where(Notification.user_id == farmer.id)
    )).scalar_one()
    assert notification.type == NotificationType.SYSTEM.value
    assert notification.title == "Product Approved"


@pytest.mark.asyncio
async def test_review_approval_updates_transporter_rating(client, make_user, make_transporter, session_factory):
    admin = await make_user(role=UserRole.ADMIN)
    reviewer = await make_user()
    transporter_user, transporter = await make_transporter()

    async with session_factory() as session:
        review = Review(reviewer_id=reviewer.id, reviewee_id=transporter_user.id, rating=4)
        session.add(review)
        await session.commit()

    response = await client.patch(
        f"/api/admin/reviews/{review.id}/approve",
        json={"is_approved": True},
        headers=auth_headers(admin)
    )
    assert response.json()["data"]["is_approved"] is True

    verified = await client.patch(
        f"/api/admin/transporters/{transporter.id}/verify",
        json={"is_verified": True},
        headers=auth_headers(admin)
    )
    assert verified.json()["data"]["rating"] == 4.0
    assert verified.json()["data"]["is_verified"] is True


@pytest.mark.asyncio
async def test_api_keys_are_masked_and_never_logged(client, make_user, db_session):
    admin = await make_user(role=UserRole.ADMIN)
    secret = "sk_live_0123456789abcdefghij"

    created = await client.post(
        "/api/admin/api-keys",
        json={"name": "Paystack live", "service": "paystack", "key_type": "secret", "value": secret},
        headers=auth_headers(admin)
    )
    assert created.status_code == 201
    assert created.json()["data"]["value"] == "sk_live_01..."

    rotated = await client.patch(
        f"/api/admin/api-keys/{created.json()['data']['id']}",
        json={"value": "sk_live_rotated_value_999"},
        headers=auth_headers(admin)
    )
    assert rotated.json()["data"]["value"] == mask_secret("sk_live_rotated_value_999")

    listed = await client.get("/api/admin/api-keys", headers=auth_headers(admin))
    assert [k["value"] for k in listed.json()["data"]] == ["sk_live_ro..."]

    logs = (await db_session.execute(select(AdminLog).order_by(AdminLog.created_at))).scalars().all()
    assert [log.action for log in logs] == ["CREATE_API_KEY", "UPDATE_API_KEY"]
    assert logs[1].after["value_rotated"] is True
    for log in logs:
        assert "sk_live" not in str(log.before) + str(log.after)


@pytest.mark.asyncio
async def test_analytics_counts(client, make_user, make_product, place_order):
    admin = await make_user(role=UserRole.ADMIN)
    farmer = await make_user(role=UserRole.FARMER)
    buyer = await make_user(role=UserRole.BUYER)
    product = await make_product(farmer)
    await place_order(buyer, product)

    response = await client.get("/api/admin/analytics", headers=auth_headers(admin))

    data = response.json()["data"]
    assert data["total_users"] == 3
    assert data["total_orders"] == 1
    assert data["total_revenue"] == 0.0
    assert data["orders_by_status"] == {"PENDING": 1}
    assert data["users_by_role"] == {"ADMIN": 1, "FARMER": 1, "BUYER": 1}


@pytest.mark.asyncio
async def test_categories(client, make_user):
    admin = await make_user(role=UserRole.ADMIN)

    created = await client.post("/api/admin/categories", json={"name": "Grains"}, headers=auth_headers(admin))
    assert created.status_code == 201

    duplicate = await client.post("/api/admin/categories", json={"name": "Grains"}, headers=auth_headers(admin))
    assert duplicate.status_code == 400

    public = await client.get("/api/products/categories")
    assert [c["name"] for c in public.json()["data"]] == ["Grains"]


def test_mask_secret():
    assert mask_secret("pk_test_abcdefghijkl") == "pk_test_ab..."
