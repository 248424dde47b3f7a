"""Geometry helpers: great-circle distance and zone membership tests."""

from __future__ import annotations

import math

EARTH_RADIUS_M = 6_371_000


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in meters between two lat/lng points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def in_circle(lat: float, lng: float, center_lat: float, center_lng: float, radius_m: float) -> bool:
    return haversine_m(lat, lng, center_lat, center_lng) <= radius_m


def _vertex(point) -> tuple[float, float]:
    """Accept {"lat", "lng"} dicts or [lat, lng] pairs."""
    if isinstance(point, dict):
        return float(point["lat"]), float(point["lng"])
    return float(point[0]), float(point[1])


def in_polygon(lat: float, lng: float, points: list) -> bool:
    """Ray-casting point-in-polygon test over an ordered vertex list.

    Treats lng as x and lat as y.  Fewer than 3 vertices is never inside.
    """
    if not points or len(points) < 3:
        return False

    vertices = [_vertex(p) for p in points]
    inside = False
    j = len(vertices) - 1
    for i in range(len(vertices)):
        yi, xi = vertices[i]
        yj, xj = vertices[j]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < x_cross:
                inside = not inside
        j = i
    return inside
