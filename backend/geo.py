import math

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two WGS84 points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _is_number(value) -> bool:
    # bool is an int subclass; "true" is not a latitude.
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_valid_coordinate(lat, lon) -> bool:
    if not _is_number(lat) or not _is_number(lon):
        return False
    try:
        lat, lon = float(lat), float(lon)
    except OverflowError:
        return False
    if not math.isfinite(lat) or not math.isfinite(lon):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0
