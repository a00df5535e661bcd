from datetime import datetime, timezone
import math
import uuid


EARTH_RADIUS_KM = 6371


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_uuid() -> str:
    return str(uuid.uuid4())


def haversine_km(loc1: dict | None, loc2: dict | None) -> float:
    """
    Great-circle distance between two locations in kilometres.

    Each location is a dict with ``latitude`` and ``longitude`` keys.
    Returns 0 when either side lacks coordinates.
    """
    if not loc1 or not loc2:
        return 0.0

    lat1, lon1 = loc1.get("latitude"), loc1.get("longitude")
    lat2, lon2 = loc2.get("latitude"), loc2.get("longitude")
    if lat1 is None or lon1 is None or lat2 is None or lon2 is None:
        return 0.0

    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def extract_device(user_agent: str | None) -> str:
    """Rough device family from a user-agent string."""
    if not user_agent:
        return "Unknown"

    if "Mobile" in user_agent:
        return "Mobile"
    if "Tablet" in user_agent:
        return "Tablet"
    if "Chrome" in user_agent:
        return "Desktop Chrome"
    if "Firefox" in user_agent:
        return "Desktop Firefox"
    if "Safari" in user_agent:
        return "Desktop Safari"

    return "Desktop Other"
