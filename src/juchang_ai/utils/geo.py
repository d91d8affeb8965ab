"""Geography helpers: known districts and distance."""

import math
from typing import Optional

# Chongqing districts the assistant can name without a geocoding service.
KNOWN_AREAS: dict[str, tuple[float, float]] = {
    "观音桥": (29.5630, 106.5516),
    "解放碑": (29.5647, 106.5770),
    "南坪": (29.5230, 106.5516),
    "沙坪坝": (29.5410, 106.4550),
    "杨家坪": (29.5030, 106.5110),
    "大坪": (29.5380, 106.5170),
    "江北": (29.5750, 106.5740),
    "渝北": (29.7180, 106.6310),
    "北碚": (29.8260, 106.4370),
    "九龙坡": (29.5020, 106.5110),
}

# Names offered when asking for a location
POPULAR_AREAS = ["观音桥", "解放碑", "南坪", "沙坪坝"]

GEOCODE_RADIUS_DEG = 0.02
FALLBACK_LABEL = "附近"


def reverse_geocode(lat: float, lng: float) -> Optional[str]:
    """Name of a known area within the lookup radius, nearest first."""
    best: Optional[tuple[float, str]] = None
    for name in POPULAR_AREAS:
        area_lat, area_lng = KNOWN_AREAS[name]
        if abs(lat - area_lat) < GEOCODE_RADIUS_DEG and abs(lng - area_lng) < GEOCODE_RADIUS_DEG:
            distance = (lat - area_lat) ** 2 + (lng - area_lng) ** 2
            if best is None or distance < best[0]:
                best = (distance, name)
    return best[1] if best else None


def location_label(lat: float, lng: float, name: Optional[str] = None) -> str:
    """Human label for coordinates, falling back to a generic one."""
    return name or reverse_geocode(lat, lng) or FALLBACK_LABEL


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres."""
    radius = 6371.0
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * radius * math.asin(math.sqrt(a))
