from fastapi import APIRouter, Depends, HTTPException, status, Query, UploadFile, File
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_, update
from sqlalchemy.orm import selectinload
from config import get_db
from models import Product, ProductImage, Category, ProductCategory, UserRole, utcnow
from routers.auth.auth import get_optional_user
from routers.users.helpers import get_profile_map, user_summary
from dependencies.rbac import require_product_write, require_product_delete
from utils.response_helpers import (
    ApiResponse,
    success_response,
    safe_model_validate,
    safe_model_validate_list,
    build_pagination,
)
from utils.storage import storage_helpers
from .schemas import (
    ProductCreate,
    ProductUpdate,
    ProductResponse,
    ProductListResponse,
    ProductImageResponse,
    ProductSort,
    CategoryResponse,
)
from typing import Optional, List, Dict
import uuid
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["Products"])

MAX_IMAGES_PER_PRODUCT = 5
NOT_FOUND_OR_UNAUTHORIZED = "Product not found or unauthorized"

# Edits to these fields send the listing back to moderation
MODERATED_FIELDS = {"title", "description", "price", "category", "category_id"}

SORT_COLUMNS = {
    ProductSort.NEWEST: Product.created_at.desc(),
    ProductSort.PRICE_ASC: Product.price.asc(),
    ProductSort.PRICE_DESC: Product.price.desc(),
    ProductSort.POPULAR: Product.views.desc(),
}


def build_product_response(product: Product, seller_profiles: Dict, **overrides) -> ProductResponse:
    images = [
        ProductImageResponse(id=str(image.id), url=image.url, position=image.position)
        for image in product.images
    ]
    return safe_model_validate(
        ProductResponse,
        product,
        images=images,
        seller=user_summary(product.seller_id, seller_profiles.get(product.seller_id)),
        **overrides
    )


async def get_owned_product(db: AsyncSession, product_id: uuid.UUID, seller_id: uuid.UUID) -> Product:
    result = await db.execute(
        select(Product)
        .options(selectinload(Product.images))
        .where(
            Product.id == product_id,
            Product.seller_id == seller_id,
            Product.deleted_at.is_(None)
        )
    )
    product = result.scalar_one_or_none()
    if not product:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=NOT_FOUND_OR_UNAUTHORIZED
        )
    return product


async def validate_category_id(db: AsyncSession, category_id: Optional[uuid.UUID]) -> None:
    if category_id is None:
        return
    result = await db.execute(select(Category).where(Category.id == category_id))
    category = result.scalar_one_or_none()
    if not category or not category.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Category not found or inactive"
        )


# =================
# PUBLIC CATALOGUE
# =================

@router.get("/", response_model=ApiResponse[ProductListResponse])
async def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[ProductCategory] = Query(None),
    category_id: Optional[uuid.UUID] = Query(None),
    region: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    seller_id: Optional[uuid.UUID] = Query(None),
    is_available: bool = Query(True),
    sort: ProductSort = Query(ProductSort.NEWEST),
    db: AsyncSession = Depends(get_db)
):
    """Marketplace listing: approved, non-deleted products only"""
    filters = [
        Product.is_approved == True,
        Product.deleted_at.is_(None),
        Product.is_available == is_available,
    ]
    if category:
        filters.append(Product.category == category.value)
    if category_id:
        filters.append(Product.category_id == category_id)
    if region:
        filters.append(Product.region.ilike(region))
    if seller_id:
        filters.append(Product.seller_id == seller_id)
    if search:
        search_term = f"%{search}%"
        filters.append(or_(Product.title.ilike(search_term), Product.description.ilike(search_term)))
    if min_price is not None:
        filters.append(Product.price >= min_price)
    if max_price is not None:
        filters.append(Product.price <= max_price)

    total_result = await db.execute(select(func.count(Product.id)).where(*filters))
    total = total_result.scalar()

    offset = (page - 1) * limit
    result = await db.execute(
        select(Product)
        .options(selectinload(Product.images))
        .where(*filters)
        .order_by(SORT_COLUMNS[sort], Product.id)
        .offset(offset)
        .limit(limit)
    )
    products = result.scalars().all()
    seller_profiles = await get_profile_map(db, [p.seller_id for p in products])

    return success_response(ProductListResponse(
        products=[build_product_response(p, seller_profiles) for p in products],
        pagination=build_pagination(page, limit, total)
    ))


@router.get("/categories", response_model=ApiResponse[List[CategoryResponse]])
async def list_categories(db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(Category).where(Category.is_active == True).order_by(Category.name)
    )
    return success_response(safe_model_validate_list(CategoryResponse, result.scalars().all()))


@router.get("/my/listings", response_model=ApiResponse[ProductListResponse])
async def my_listings(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user = Depends(require_product_write),
    db: AsyncSession = Depends(get_db)
):
    """The seller's own products in every moderation state"""
    filters = [Product.seller_id == current_user["user_id"], Product.deleted_at.is_(None)]

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
    seller_profiles = await get_profile_map(db, [current_user["user_id"]])

    return success_response(ProductListResponse(
        products=[build_product_response(p, seller_profiles) for p in products],
        pagination=build_pagination(page, limit, total)
    ))


@router.get("/{product_id}", response_model=ApiResponse[ProductResponse])
async def get_product(
    product_id: uuid.UUID,
    current_user = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(Product)
        .options(selectinload(Product.images))
        .where(Product.id == product_id, Product.deleted_at.is_(None))
    )
    product = result.scalar_one_or_none()
    if not product:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Product not found"
        )

    is_owner = current_user is not None and current_user["user_id"] == product.seller_id
    is_admin = current_user is not None and current_user["role"] == UserRole.ADMIN.value
    if not product.is_approved and not (is_owner or is_admin):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Product not found"
        )

    views = product.views
    if not is_owner:
        await db.execute(
            update(Product)
            .where(Product.id == product.id)
            .values(views=Product.views + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        views += 1

    seller_profiles = await get_profile_map(db, [product.seller_id])
    return success_response(build_product_response(product, seller_profiles, views=views))


# =================
# SELLER MANAGEMENT
# =================

@router.post("/", response_model=ApiResponse[ProductResponse], status_code=status.HTTP_201_CREATED)
async def create_product(
    product_data: ProductCreate,
    current_user = Depends(require_product_write),
    db: AsyncSession = Depends(get_db)
):
    """Create a listing; it stays hidden until an admin approves it"""
    try:
        await validate_category_id(db, product_data.category_id)

        product = Product(
            seller_id=current_user["user_id"],
            is_approved=False,
            **product_data.model_dump(mode="python", exclude={"category"}),
            category=product_data.category.value
        )
        product.images = []
        db.add(product)
        await db.commit()

        logger.info(f"Product {product.id} created by {current_user['user_id']}")
        seller_profiles = await get_profile_map(db, [product.seller_id])
        return success_response(
            build_product_response(product, seller_profiles),
            message="Product created and pending approval"
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating product: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create product"
        )


@router.patch("/{product_id}", response_model=ApiResponse[ProductResponse])
async def update_product(
    product_id: uuid.UUID,
    product_update: ProductUpdate,
    current_user = Depends(require_product_write),
    db: AsyncSession = Depends(get_db)
):
    """Update product (only by owner)"""
    try:
        product = await get_owned_product(db, product_id, current_user["user_id"])

        update_data = product_update.model_dump(exclude_unset=True)
        if "category_id" in update_data:
            await validate_category_id(db, update_data["category_id"])
        if "category" in update_data and update_data["category"] is not None:
            update_data["category"] = update_data["category"].value

        for field, value in update_data.items():
            setattr(product, field, value)

        if MODERATED_FIELDS & update_data.keys():
            product.is_approved = False

        await db.commit()

        seller_profiles = await get_profile_map(db, [product.seller_id])
        return success_response(build_product_response(product, seller_profiles), message="Product updated")

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating product: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update product"
        )


@router.delete("/{product_id}", response_model=ApiResponse[dict])
async def delete_product(
    product_id: uuid.UUID,
    current_user = Depends(require_product_delete),
    db: AsyncSession = Depends(get_db)
):
    """Soft delete: the row stays for order history but leaves every listing"""
    product = await get_owned_product(db, product_id, current_user["user_id"])

    product.deleted_at = utcnow()
    product.is_available = False
    await db.commit()

    logger.info(f"Product {product.id} soft deleted by {current_user['user_id']}")
    return success_response({"id": str(product.id)}, message="Product deleted successfully")


# =================
# PRODUCT IMAGE ROUTES
# =================

@router.post("/{product_id}/images", response_model=ApiResponse[List[ProductImageResponse]])
async def upload_product_images(
    product_id: uuid.UUID,
    files: List[UploadFile] = File(..., description="Product images (JPEG, PNG, GIF, or WebP, max 5MB each)"),
    current_user = Depends(require_product_write),
    db: AsyncSession = Depends(get_db)
):
    product = await get_owned_product(db, product_id, current_user["user_id"])

    if len(product.images) + len(files) > MAX_IMAGES_PER_PRODUCT:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"A product can have at most {MAX_IMAGES_PER_PRODUCT} images"
        )

    uploaded_paths = []
    try:
        next_position = max((image.position for image in product.images), default=-1) + 1
        for file in files:
            url, storage_path = await storage_helpers.upload_image(f"products/{product.id}", file)
            uploaded_paths.append(storage_path)
            product.images.append(ProductImage(url=url, storage_path=storage_path, position=next_position))
            next_position += 1

        await db.commit()

    except Exception:
        await db.rollback()
        for storage_path in uploaded_paths:
            storage_helpers.delete_file(storage_path)
        raise

    return success_response(
        [ProductImageResponse(id=str(image.id), url=image.url, position=image.position) for image in product.images],
        message="Images uploaded"
    )


@router.delete("/{product_id}/images/{image_id}", response_model=ApiResponse[dict])
async def delete_product_image(
    product_id: uuid.UUID,
    image_id: uuid.UUID,
    current_user = Depends(require_product_write),
    db: AsyncSession = Depends(get_db)
):
    product = await get_owned_product(db, product_id, current_user["user_id"])

    image = next((image for image in product.images if image.id == image_id), None)
    if not image:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Image not found"
        )

    product.images.remove(image)
    await db.commit()
    storage_helpers.delete_file(image.storage_path)

    return success_response({"id": str(image_id)}, message="Image deleted")
