from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from config import get_db
from models import (
    User, Profile, Product, Order, Payment, Review, Transporter, ApiKey, AdminLog, Category,
    OrderStatus, PaymentStatus, NotificationType
)
from dependencies.rbac import require_admin, require_admin_write
from routers.notifications.helpers import notify, push_notifications
from routers.orders.helpers import order_query, serialize_orders
from routers.orders.schemas import OrderListResponse
from routers.products.products import build_product_response
from routers.products.schemas import ProductListResponse, CategoryCreate, CategoryUpdate, CategoryResponse
from routers.users.helpers import get_profile_map
from utils.response_helpers import (
    ApiResponse,
    success_response,
    safe_model_validate,
    safe_model_validate_list,
    build_pagination,
)
from .schemas import (
    UserListItem,
    UserListResponse,
    RoleUpdate,
    SuspendUpdate,
    ApprovalUpdate,
    VerificationUpdate,
    AdminReviewResponse,
    AdminReviewListResponse,
    AdminTransporterResponse,
    AnalyticsResponse,
    RecentOrder,
    TopProduct,
    AdminLogResponse,
    AdminLogListResponse,
    ApiKeyCreate,
    ApiKeyUpdate,
    ApiKeyResponse,
)
from .helpers import log_admin_action, snapshot, api_key_response, recompute_transporter_rating
from typing import Optional, List
import uuid
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])

USER_AUDIT_FIELDS = ("role", "is_suspended", "is_active")
API_KEY_AUDIT_FIELDS = ("name", "service", "key_type", "description", "is_active")


async def _get_other_user(db: AsyncSession, user_id: uuid.UUID, admin: dict) -> User:
    if user_id == admin["user_id"]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot modify your own account"
        )
    result = await db.execute(select(User).where(User.id == user_id, User.deleted_at.is_(None)))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )
    return user


def _user_list_item(user: User, profile: Optional[Profile]) -> UserListItem:
    return safe_model_validate(
        UserListItem,
        user,
        first_name=profile.first_name if profile else None,
        last_name=profile.last_name if profile else None,
        phone_number=profile.phone_number if profile else None
    )


# =================
# USERS
# =================

@router.get("/users", response_model=ApiResponse[UserListResponse])
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    role: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    is_suspended: Optional[bool] = Query(None),
    current_user = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    filters = [User.deleted_at.is_(None)]
    if role:
        filters.append(User.role == role.upper())
    if is_suspended is not None:
        filters.append(User.is_suspended == is_suspended)
    if search:
        pattern = f"%{search}%"
        filters.append(or_(
            User.email.ilike(pattern),
            Profile.first_name.ilike(pattern),
            Profile.last_name.ilike(pattern)
        ))

    base = select(User).join(Profile, Profile.user_id == User.id, isouter=True).where(*filters)

    total_result = await db.execute(select(func.count()).select_from(base.subquery()))
    total = total_result.scalar()

    result = await db.execute(
        base.order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    users = result.scalars().all()
    profiles = await get_profile_map(db, [user.id for user in users])

    return success_response(UserListResponse(
        users=[_user_list_item(user, profiles.get(user.id)) for user in users],
        pagination=build_pagination(page, limit, total)
    ))


@router.patch("/users/{user_id}/role", response_model=ApiResponse[UserListItem])
async def update_user_role(
    user_id: uuid.UUID,
    role_update: RoleUpdate,
    current_user = Depends(require_admin_write),
    db: AsyncSession = Depends(get_db)
):
    user = await _get_other_user(db, user_id, current_user)
    before = snapshot(user, USER_AUDIT_FIELDS)

    try:
        user.role = role_update.role.value
        log_admin_action(db, current_user["user_id"], "UPDATE_ROLE", "user", user.id, before, snapshot(user, USER_AUDIT_FIELDS))
        await db.commit()
    except Exception as e:
        logger.error(f"Error updating role for {user_id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update user role"
        )

    profiles = await get_profile_map(db, [user.id])
    return success_response(_user_list_item(user, profiles.get(user.id)), message="User role updated")


@router.patch("/users/{user_id}/suspend", response_model=ApiResponse[UserListItem])
async def suspend_user(
    user_id: uuid.UUID,
    suspend_update: SuspendUpdate,
    current_user = Depends(require_admin_write),
    db: AsyncSession = Depends(get_db)
):
    """Suspend or reinstate an account; suspended users can neither log in nor use existing tokens"""
    user = await _get_other_user(db, user_id, current_user)
    before = snapshot(user, USER_AUDIT_FIELDS)

    try:
        user.is_suspended = suspend_update.is_suspended
        after = snapshot(user, USER_AUDIT_FIELDS)
        if suspend_update.reason:
            after["reason"] = suspend_update.reason
        action = "SUSPEND_USER" if suspend_update.is_suspended else "UNSUSPEND_USER"
        log_admin_action(db, current_user["user_id"], action, "user", user.id, before, after)
        await db.commit()
    except Exception as e:
        logger.error(f"Error changing suspension for {user_id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update user"
        )

    profiles = await get_profile_map(db, [user.id])
    message = "User suspended" if user.is_suspended else "User reinstated"
    return success_response(_user_list_item(user, profiles.get(user.id)), message=message)


# =================
# MODERATION
# =================

@router.get("/products", response_model=ApiResponse[ProductListResponse])
async def list_products_for_review(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    is_approved: Optional[bool] = Query(None),
    current_user = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    filters = [Product.deleted_at.is_(None)]
    if is_approved is not None:
        filters.append(Product.is_approved == is_approved)

    total_result = await db.execute(select(func.count(Product.id)).where(*filters))
    total = total_result.scalar()

    result = await db.execute(
        select(Product)
        .options(selectinload(Product.images))
        .where(*filters)
        .order_by(Product.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    products = result.scalars().all()
    profiles = await get_profile_map(db, [product.seller_id for product in products])

    return success_response(ProductListResponse(
        products=[build_product_response(product, profiles) for product in products],
        pagination=build_pagination(page, limit, total)
    ))


@router.patch("/products/{product_id}/approve", response_model=ApiResponse[dict])
async def approve_product(
    product_id: uuid.UUID,
    approval: ApprovalUpdate,
    current_user = Depends(require_admin_write),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(Product).where(Product.id == product_id, Product.deleted_at.is_(None)))
    product = result.scalar_one_or_none()
    if not product:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Product not found"
        )

    try:
        before = {"is_approved": product.is_approved}
        product.is_approved = approval.is_approved
        action = "APPROVE_PRODUCT" if approval.is_approved else "REJECT_PRODUCT"
        log_admin_action(db, current_user["user_id"], action, "product", product.id, before, {"is_approved": product.is_approved})
        notification = notify(
            db,
            product.seller_id,
            NotificationType.SYSTEM,
            "Product Approved" if approval.is_approved else "Product Rejected",
            f"Your listing '{product.title}' was {'approved' if approval.is_approved else 'rejected'}",
            {"product_id": str(product.id), "is_approved": approval.is_approved}
        )
        await db.commit()
    except Exception as e:
        logger.error(f"Error moderating product {product_id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update product"
        )

    await push_notifications([notification])
    return success_response(
        {"id": str(product.id), "is_approved": product.is_approved},
        message="Product approved" if product.is_approved else "Product rejected"
    )


@router.get("/reviews", response_model=ApiResponse[AdminReviewListResponse])
async def list_reviews(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    is_approved: Optional[bool] = Query(None),
    current_user = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    filters = []
    if is_approved is not None:
        filters.append(Review.is_approved == is_approved)

    total_result = await db.execute(select(func.count(Review.id)).where(*filters))
    total = total_result.scalar()

    result = await db.execute(
        select(Review)
        .where(*filters)
        .order_by(Review.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )

    return success_response(AdminReviewListResponse(
        reviews=safe_model_validate_list(AdminReviewResponse, result.scalars().all()),
        pagination=build_pagination(page, limit, total)
    ))


@router.patch("/reviews/{review_id}/approve", response_model=ApiResponse[AdminReviewResponse])
async def approve_review(
    review_id: uuid.UUID,
    approval: ApprovalUpdate,
    current_user = Depends(require_admin_write),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(Review).where(Review.id == review_id))
    review = result.scalar_one_or_none()
    if not review:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Review not found"
        )

    try:
        before = {"is_approved": review.is_approved}
        review.is_approved = approval.is_approved
        action = "APPROVE_REVIEW" if approval.is_approved else "REJECT_REVIEW"
        log_admin_action(db, current_user["user_id"], action, "review", review.id, before, {"is_approved": review.is_approved})
        await recompute_transporter_rating(db, review.reviewee_id)
        await db.commit()
    except Exception as e:
        logger.error(f"Error moderating review {review_id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update review"
        )

    return success_response(safe_model_validate(AdminReviewResponse, review))


@router.patch("/transporters/{transporter_id}/verify", response_model=ApiResponse[AdminTransporterResponse])
async def verify_transporter(
    transporter_id: uuid.UUID,
    verification: VerificationUpdate,
    current_user = Depends(require_admin_write),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(Transporter).where(Transporter.id == transporter_id))
    transporter = result.scalar_one_or_none()
    if not transporter:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transporter not found"
        )

    try:
        before = {"is_verified": transporter.is_verified}
        transporter.is_verified = verification.is_verified
        action = "VERIFY_TRANSPORTER" if verification.is_verified else "UNVERIFY_TRANSPORTER"
        log_admin_action(db, current_user["user_id"], action, "transporter", transporter.id, before, {"is_verified": transporter.is_verified})
        await db.commit()
    except Exception as e:
        logger.error(f"Error verifying transporter {transporter_id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update transporter"
        )

    return success_response(safe_model_validate(AdminTransporterResponse, transporter))


# =================
# ORDERS AND ANALYTICS
# =================

@router.get("/orders", response_model=ApiResponse[OrderListResponse])
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    current_user = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    filters = [Order.deleted_at.is_(None)]
    if status_filter:
        filters.append(Order.status == status_filter.value)

    total_result = await db.execute(select(func.count(Order.id)).where(*filters))
    total = total_result.scalar()

    result = await db.execute(
        order_query()
        .where(*filters)
        .order_by(Order.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )

    return success_response(OrderListResponse(
        orders=await serialize_orders(db, result.scalars().all()),
        pagination=build_pagination(page, limit, total)
    ))


@router.get("/analytics", response_model=ApiResponse[AnalyticsResponse])
async def get_analytics(
    current_user = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    total_users = (await db.execute(
        select(func.count(User.id)).where(User.deleted_at.is_(None))
    )).scalar()
    total_products = (await db.execute(
        select(func.count(Product.id)).where(Product.deleted_at.is_(None))
    )).scalar()
    total_orders = (await db.execute(
        select(func.count(Order.id)).where(Order.deleted_at.is_(None))
    )).scalar()
    total_revenue = (await db.execute(
        select(func.coalesce(func.sum(Payment.amount), 0.0)).where(Payment.status == PaymentStatus.COMPLETED.value)
    )).scalar()

    orders_by_status = await db.execute(
        select(Order.status, func.count(Order.id)).where(Order.deleted_at.is_(None)).group_by(Order.status)
    )
    users_by_role = await db.execute(
        select(User.role, func.count(User.id)).where(User.deleted_at.is_(None)).group_by(User.role)
    )

    recent_orders = await db.execute(
        select(Order).where(Order.deleted_at.is_(None)).order_by(Order.created_at.desc()).limit(10)
    )
    top_products = await db.execute(
        select(Product).where(Product.deleted_at.is_(None)).order_by(Product.views.desc()).limit(10)
    )

    return success_response(AnalyticsResponse(
        total_users=total_users,
        total_products=total_products,
        total_orders=total_orders,
        total_revenue=round(float(total_revenue), 2),
        orders_by_status={row[0]: row[1] for row in orders_by_status.all()},
        users_by_role={row[0]: row[1] for row in users_by_role.all()},
        recent_orders=safe_model_validate_list(RecentOrder, recent_orders.scalars().all()),
        top_products=safe_model_validate_list(TopProduct, top_products.scalars().all())
    ))


@router.get("/logs", response_model=ApiResponse[AdminLogListResponse])
async def list_admin_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    total_result = await db.execute(select(func.count(AdminLog.id)))
    total = total_result.scalar()

    result = await db.execute(
        select(AdminLog)
        .order_by(AdminLog.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )

    return success_response(AdminLogListResponse(
        logs=safe_model_validate_list(AdminLogResponse, result.scalars().all()),
        pagination=build_pagination(page, limit, total)
    ))


# =================
# API KEYS
# =================

@router.get("/api-keys", response_model=ApiResponse[List[ApiKeyResponse]])
async def list_api_keys(
    current_user = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(ApiKey).order_by(ApiKey.service, ApiKey.created_at.desc()))
    return success_response([api_key_response(api_key) for api_key in result.scalars().all()])


@router.post("/api-keys", response_model=ApiResponse[ApiKeyResponse], status_code=status.HTTP_201_CREATED)
async def create_api_key(
    key_data: ApiKeyCreate,
    current_user = Depends(require_admin_write),
    db: AsyncSession = Depends(get_db)
):
    try:
        api_key = ApiKey(created_by=current_user["user_id"], **key_data.model_dump())
        db.add(api_key)
        await db.flush()
        log_admin_action(db, current_user["user_id"], "CREATE_API_KEY", "api_key", api_key.id, None, snapshot(api_key, API_KEY_AUDIT_FIELDS))
        await db.commit()
    except Exception as e:
        logger.error(f"Error creating API key: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create API key"
        )

    return success_response(api_key_response(api_key), message="API key created")


@router.patch("/api-keys/{key_id}", response_model=ApiResponse[ApiKeyResponse])
async def update_api_key(
    key_id: uuid.UUID,
    key_data: ApiKeyUpdate,
    current_user = Depends(require_admin_write),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(ApiKey).where(ApiKey.id == key_id))
    api_key = result.scalar_one_or_none()
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="API key not found"
        )

    updates = key_data.model_dump(exclude_unset=True)
    try:
        before = snapshot(api_key, API_KEY_AUDIT_FIELDS)
        for field, value in updates.items():
            setattr(api_key, field, value)
        after = snapshot(api_key, API_KEY_AUDIT_FIELDS)
        if "value" in updates:
            after["value_rotated"] = True
        log_admin_action(db, current_user["user_id"], "UPDATE_API_KEY", "api_key", api_key.id, before, after)
        await db.commit()
    except Exception as e:
        logger.error(f"Error updating API key {key_id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update API key"
        )

    return success_response(api_key_response(api_key), message="API key updated")


# =================
# CATEGORIES
# =================

@router.post("/categories", response_model=ApiResponse[CategoryResponse], status_code=status.HTTP_201_CREATED)
async def create_category(
    category_data: CategoryCreate,
    current_user = Depends(require_admin_write),
    db: AsyncSession = Depends(get_db)
):
    try:
        category = Category(name=category_data.name.strip(), description=category_data.description)
        db.add(category)
        await db.flush()
        log_admin_action(db, current_user["user_id"], "CREATE_CATEGORY", "category", category.id, None, {"name": category.name})
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Category already exists"
        )

    return success_response(safe_model_validate(CategoryResponse, category), message="Category created")


@router.patch("/categories/{category_id}", response_model=ApiResponse[CategoryResponse])
async def update_category(
    category_id: uuid.UUID,
    category_data: CategoryUpdate,
    current_user = Depends(require_admin_write),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(Category).where(Category.id == category_id))
    category = result.scalar_one_or_none()
    if not category:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Category not found"
        )

    try:
        before = snapshot(category, ("name", "description", "is_active"))
        for field, value in category_data.model_dump(exclude_unset=True).items():
            setattr(category, field, value)
        log_admin_action(db, current_user["user_id"], "UPDATE_CATEGORY", "category", category.id, before, snapshot(category, ("name", "description", "is_active")))
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Category already exists"
        )

    return success_response(safe_model_validate(CategoryResponse, category), message="Category updated")
