from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from config import get_db
from models import (
    Transporter, Vehicle, Delivery, Order, Profile,
    OrderStatus, DeliveryStatus, NotificationType, utcnow
)
from routers.orders.helpers import load_order, set_order_status
from routers.notifications.helpers import notify, push_notifications
from routers.users.helpers import get_profile_map, display_name
from dependencies.rbac import require_transporter, require_delivery_write
from utils.geo import calculate_distance, calculate_delivery_fee, DEFAULT_BASE_PRICE_PER_KM
from utils.response_helpers import ApiResponse, success_response, safe_model_validate, safe_model_validate_list
from .schemas import (
    TransporterCreate,
    TransporterUpdate,
    TransporterResponse,
    AvailableTransporterResponse,
    VehicleCreate,
    VehicleUpdate,
    VehicleResponse,
    DeliveryCreate,
    DeliveryStatusUpdate,
    DeliveryResponse,
    FeeRequest,
    FeeResponse,
)
from typing import List, Optional
import uuid
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/transporters", tags=["Transporters"])

RECENT_DELIVERIES_LIMIT = 10


async def _get_own_transporter(db: AsyncSession, user_id: uuid.UUID) -> Transporter:
    result = await db.execute(
        select(Transporter)
        .options(selectinload(Transporter.vehicles))
        .where(Transporter.user_id == user_id)
    )
    transporter = result.scalar_one_or_none()
    if not transporter:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transporter profile not found"
        )
    return transporter


async def _get_own_vehicle(db: AsyncSession, transporter: Transporter, vehicle_id: uuid.UUID) -> Vehicle:
    result = await db.execute(
        select(Vehicle).where(Vehicle.id == vehicle_id, Vehicle.transporter_id == transporter.id)
    )
    vehicle = result.scalar_one_or_none()
    if not vehicle:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Vehicle not found"
        )
    return vehicle


def _serialize_transporter(transporter: Transporter, name: Optional[str] = None, deliveries=None, schema=TransporterResponse, **extra):
    return safe_model_validate(
        schema,
        transporter,
        name=name,
        vehicles=safe_model_validate_list(VehicleResponse, transporter.vehicles),
        recent_deliveries=safe_model_validate_list(DeliveryResponse, deliveries or []),
        **extra
    )


@router.post("/profile", response_model=ApiResponse[TransporterResponse], status_code=status.HTTP_201_CREATED)
async def create_transporter_profile(
    profile_data: TransporterCreate,
    current_user = Depends(require_transporter),
    db: AsyncSession = Depends(get_db)
):
    existing = await db.execute(select(Transporter.id).where(Transporter.user_id == current_user["user_id"]))
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Transporter profile already exists"
        )

    try:
        transporter = Transporter(
            user_id=current_user["user_id"],
            vehicles=[],
            **profile_data.model_dump()
        )
        db.add(transporter)
        await db.commit()

    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Transporter profile already exists"
        )
    except Exception as e:
        logger.error(f"Error creating transporter profile: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create transporter profile"
        )

    logger.info(f"Transporter profile {transporter.id} created for user {current_user['user_id']}")
    return success_response(_serialize_transporter(transporter), message="Transporter profile created")


@router.get("/profile", response_model=ApiResponse[TransporterResponse])
async def get_transporter_profile(
    current_user = Depends(require_transporter),
    db: AsyncSession = Depends(get_db)
):
    """Own profile with vehicles and the latest deliveries"""
    transporter = await _get_own_transporter(db, current_user["user_id"])

    result = await db.execute(
        select(Delivery)
        .where(Delivery.transporter_id == transporter.id)
        .order_by(Delivery.created_at.desc())
        .limit(RECENT_DELIVERIES_LIMIT)
    )
    profiles = await get_profile_map(db, [transporter.user_id])

    return success_response(_serialize_transporter(
        transporter,
        name=display_name(profiles.get(transporter.user_id)),
        deliveries=result.scalars().all()
    ))


@router.patch("/profile", response_model=ApiResponse[TransporterResponse])
async def update_transporter_profile(
    profile_data: TransporterUpdate,
    current_user = Depends(require_transporter),
    db: AsyncSession = Depends(get_db)
):
    transporter = await _get_own_transporter(db, current_user["user_id"])

    try:
        for field, value in profile_data.model_dump(exclude_unset=True).items():
            setattr(transporter, field, value)
        await db.commit()

    except Exception as e:
        logger.error(f"Error updating transporter {transporter.id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update transporter profile"
        )

    return success_response(_serialize_transporter(transporter), message="Transporter profile updated")


@router.post("/vehicles", response_model=ApiResponse[VehicleResponse], status_code=status.HTTP_201_CREATED)
async def add_vehicle(
    vehicle_data: VehicleCreate,
    current_user = Depends(require_transporter),
    db: AsyncSession = Depends(get_db)
):
    transporter = await _get_own_transporter(db, current_user["user_id"])

    try:
        vehicle = Vehicle(
            transporter_id=transporter.id,
            type=vehicle_data.type.value,
            plate_number=vehicle_data.plate_number.strip().upper(),
            capacity=vehicle_data.capacity,
            make=vehicle_data.make,
            model=vehicle_data.model
        )
        db.add(vehicle)
        await db.commit()

    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A vehicle with this plate number already exists"
        )
    except Exception as e:
        logger.error(f"Error adding vehicle: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to add vehicle"
        )

    return success_response(safe_model_validate(VehicleResponse, vehicle), message="Vehicle added")


@router.get("/vehicles", response_model=ApiResponse[List[VehicleResponse]])
async def list_vehicles(
    current_user = Depends(require_transporter),
    db: AsyncSession = Depends(get_db)
):
    transporter = await _get_own_transporter(db, current_user["user_id"])
    return success_response(safe_model_validate_list(VehicleResponse, transporter.vehicles))


@router.patch("/vehicles/{vehicle_id}", response_model=ApiResponse[VehicleResponse])
async def update_vehicle(
    vehicle_id: uuid.UUID,
    vehicle_data: VehicleUpdate,
    current_user = Depends(require_transporter),
    db: AsyncSession = Depends(get_db)
):
    transporter = await _get_own_transporter(db, current_user["user_id"])
    vehicle = await _get_own_vehicle(db, transporter, vehicle_id)

    updates = vehicle_data.model_dump(exclude_unset=True)
    if updates.get("type") is not None:
        updates["type"] = vehicle_data.type.value
    if updates.get("plate_number"):
        updates["plate_number"] = updates["plate_number"].strip().upper()

    try:
        for field, value in updates.items():
            setattr(vehicle, field, value)
        await db.commit()

    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A vehicle with this plate number already exists"
        )

    return success_response(safe_model_validate(VehicleResponse, vehicle), message="Vehicle updated")


@router.delete("/vehicles/{vehicle_id}", response_model=ApiResponse[dict])
async def delete_vehicle(
    vehicle_id: uuid.UUID,
    current_user = Depends(require_transporter),
    db: AsyncSession = Depends(get_db)
):
    transporter = await _get_own_transporter(db, current_user["user_id"])
    vehicle = await _get_own_vehicle(db, transporter, vehicle_id)

    await db.delete(vehicle)
    await db.commit()

    return success_response({"id": str(vehicle_id)}, message="Vehicle deleted")


@router.get("/available", response_model=ApiResponse[List[AvailableTransporterResponse]])
async def available_transporters(
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    radius_km: float = Query(50, gt=0),
    region: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    """
    Verified transporters. With lat/lng, only those whose current position
    lies within radius_km, nearest first.
    """
    result = await db.execute(
        select(Transporter)
        .options(selectinload(Transporter.vehicles))
        .where(Transporter.is_verified == True)
        .order_by(Transporter.rating.desc())
    )
    transporters = result.scalars().all()

    if region:
        transporters = [t for t in transporters if region in (t.service_regions or [])]

    candidates = []
    for transporter in transporters:
        distance = None
        if lat is not None and lng is not None:
            if transporter.current_lat is None or transporter.current_lng is None:
                continue
            distance = calculate_distance(lat, lng, transporter.current_lat, transporter.current_lng)
            if distance > radius_km:
                continue
        candidates.append((distance, transporter))

    if lat is not None and lng is not None:
        candidates.sort(key=lambda pair: pair[0])

    profiles = await get_profile_map(db, [t.user_id for _, t in candidates])
    return success_response([
        _serialize_transporter(
            transporter,
            name=display_name(profiles.get(transporter.user_id)),
            schema=AvailableTransporterResponse,
            distance_km=round(distance, 2) if distance is not None else None
        )
        for distance, transporter in candidates
    ])


@router.post("/calculate-fee", response_model=ApiResponse[FeeResponse])
async def calculate_fee(
    fee_request: FeeRequest,
    db: AsyncSession = Depends(get_db)
):
    base_price = DEFAULT_BASE_PRICE_PER_KM
    if fee_request.transporter_id:
        result = await db.execute(select(Transporter.base_price).where(Transporter.id == fee_request.transporter_id))
        transporter_price = result.scalar_one_or_none()
        if transporter_price is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Transporter not found"
            )
        base_price = transporter_price

    distance = calculate_distance(
        fee_request.pickup_lat, fee_request.pickup_lng,
        fee_request.dropoff_lat, fee_request.dropoff_lng
    )

    return success_response(FeeResponse(
        distance_km=round(distance, 2),
        base_price=base_price,
        fee=calculate_delivery_fee(distance, base_price)
    ))


@router.post("/deliveries", response_model=ApiResponse[DeliveryResponse], status_code=status.HTTP_201_CREATED)
async def claim_delivery(
    delivery_data: DeliveryCreate,
    current_user = Depends(require_delivery_write),
    db: AsyncSession = Depends(get_db)
):
    """Take on a confirmed order that has no transporter yet"""
    transporter = await _get_own_transporter(db, current_user["user_id"])
    order = await load_order(db, delivery_data.order_id)

    if order.status != OrderStatus.CONFIRMED.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only confirmed orders can be assigned for delivery"
        )
    if order.delivery is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Order already has a transporter"
        )
    if delivery_data.vehicle_id:
        vehicle = await _get_own_vehicle(db, transporter, delivery_data.vehicle_id)
        if not vehicle.is_active:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Vehicle is not active"
            )

    # Pickup is the seller's profile location
    seller_result = await db.execute(
        select(Profile.latitude, Profile.longitude).where(Profile.user_id == order.seller_id)
    )
    seller_location = seller_result.first()

    distance = None
    fee = calculate_delivery_fee(0, transporter.base_price)
    if (
        seller_location is not None
        and seller_location.latitude is not None
        and seller_location.longitude is not None
        and order.delivery_lat is not None
        and order.delivery_lng is not None
    ):
        distance = calculate_distance(
            seller_location.latitude, seller_location.longitude,
            order.delivery_lat, order.delivery_lng
        )
        fee = calculate_delivery_fee(distance, transporter.base_price)

    try:
        delivery = Delivery(
            order_id=order.id,
            transporter_id=transporter.id,
            vehicle_id=delivery_data.vehicle_id,
            status=DeliveryStatus.ASSIGNED.value,
            distance_km=round(distance, 2) if distance is not None else None,
            fee=fee
        )
        db.add(delivery)
        notifications = [
            notify(
                db,
                party_id,
                NotificationType.ORDER,
                "Transporter Assigned",
                f"A transporter has been assigned to order #{str(order.id)[:8]}",
                {"order_id": str(order.id)}
            )
            for party_id in (order.buyer_id, order.seller_id)
        ]
        await db.commit()

    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Order already has a transporter"
        )
    except Exception as e:
        logger.error(f"Error assigning delivery for order {order.id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to assign delivery"
        )

    logger.info(f"Transporter {transporter.id} claimed order {order.id}")
    await push_notifications(notifications)
    return success_response(safe_model_validate(DeliveryResponse, delivery), message="Delivery assigned")


@router.patch("/deliveries/{delivery_id}/status", response_model=ApiResponse[DeliveryResponse])
async def update_delivery_status(
    delivery_id: uuid.UUID,
    status_update: DeliveryStatusUpdate,
    current_user = Depends(require_delivery_write),
    db: AsyncSession = Depends(get_db)
):
    """PICKED_UP puts the order in transit; DELIVERED completes it"""
    transporter = await _get_own_transporter(db, current_user["user_id"])

    result = await db.execute(
        select(Delivery).where(Delivery.id == delivery_id, Delivery.transporter_id == transporter.id)
    )
    delivery = result.scalar_one_or_none()
    if not delivery:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Delivery not found"
        )

    new_status = status_update.status.value
    expected_current = {
        DeliveryStatus.PICKED_UP.value: DeliveryStatus.ASSIGNED.value,
        DeliveryStatus.DELIVERED.value: DeliveryStatus.PICKED_UP.value,
    }[new_status]
    if delivery.status != expected_current:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot change delivery status from {delivery.status} to {new_status}"
        )

    order_result = await db.execute(select(Order).where(Order.id == delivery.order_id))
    order = order_result.scalar_one()

    try:
        if new_status == DeliveryStatus.PICKED_UP.value:
            set_order_status(order, OrderStatus.IN_TRANSIT.value)
            delivery.picked_up_at = utcnow()
            message = f"Order #{str(order.id)[:8]} has been picked up and is in transit"
        else:
            set_order_status(order, OrderStatus.DELIVERED.value)
            delivery.delivered_at = utcnow()
            message = f"Order #{str(order.id)[:8]} has been delivered"
        delivery.status = new_status

        notifications = [
            notify(
                db,
                party_id,
                NotificationType.ORDER,
                "Delivery Update",
                message,
                {"order_id": str(order.id), "status": order.status}
            )
            for party_id in (order.buyer_id, order.seller_id)
        ]
        await db.commit()

    except HTTPException:
        await db.rollback()
        raise
    except Exception as e:
        logger.error(f"Error updating delivery {delivery_id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update delivery status"
        )

    logger.info(f"Delivery {delivery.id} moved to {new_status}")
    await push_notifications(notifications)
    return success_response(safe_model_validate(DeliveryResponse, delivery), message="Delivery status updated")
