import math

EARTH_RADIUS_KM = 6371.0
DEFAULT_BASE_PRICE_PER_KM = 2.0
MINIMUM_DELIVERY_FEE = 5.0


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points in km (haversine).
    """
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def calculate_delivery_fee(distance_km: float, base_price: float = DEFAULT_BASE_PRICE_PER_KM) -> float:
    fee = max(distance_km * base_price, MINIMUM_DELIVERY_FEE)
    return round(fee, 2)
