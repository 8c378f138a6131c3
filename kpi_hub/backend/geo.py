"""
Geographic bucketing for the supply-flow bubble map.

Every row can place up to three bubbles (customer, supplier, plant). Bubbles
are keyed by (role, location) and carry the same PO measures as the
PO-level view. Coordinates come from a pluggable resolver.
"""
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np

from aggregation import aggregate, distinct, first_of, mean_of, sum_of
from filters import normalize_label
from models import GeoNode, MapViewport


Coordinates = tuple[float, float]  # (longitude, latitude)
CoordinateResolver = Callable[[Optional[str], Optional[str]], Optional[Coordinates]]


# ============================================================================
# Gazetteer
# ============================================================================

# City-level entries keyed by lower-cased location string
CITY_COORDS: dict[str, Coordinates] = {
    "dallas, tx": (-96.797, 32.7767),
    "tokyo, jp": (139.6917, 35.6895),
    "singapore": (103.8198, 1.3521),
    "mumbai, in": (72.8777, 19.076),
    "shanghai, cn": (121.4737, 31.2304),
    "berlin, de": (13.405, 52.52),
    "paris, fr": (2.3522, 48.8566),
    "london, uk": (-0.1276, 51.5074),
    "chicago, il": (-87.6298, 41.8781),
    "los angeles, ca": (-118.2437, 34.0522),
}

NORTH_AMERICA = (-98.0, 39.0)
EMEA = (10.0, 50.0)
APAC = (105.0, 15.0)

# (substrings, exact matches, centroid); checked in order
REGION_KEYWORDS: list[tuple[tuple[str, ...], tuple[str, ...], Coordinates]] = [
    (("north america", "united states", "usa"), ("na",), NORTH_AMERICA),
    (("emea", "europe", "middle east", "africa"), (), EMEA),
    (("apac", "asia", "pacific"), (), APAC),
]

LOCATION_KEYWORDS: list[tuple[tuple[str, ...], tuple[str, ...], Coordinates]] = [
    (("usa", "united states", "tx"), (), NORTH_AMERICA),
    (("germany", "france", "uk"), (), EMEA),
    (("india", "china", "japan", "singapore"), (), APAC),
]


def _match_keywords(text: str, table) -> Coordinates | None:
    if not text:
        return None
    for substrings, exact, coords in table:
        if text in exact or any(s in text for s in substrings):
            return coords
    return None


@dataclass
class GazetteerResolver:
    """
    Location → coordinate ladder: exact city, then region keywords, then
    location keywords. Returns None when nothing matches.
    """
    cities: dict[str, Coordinates] = field(default_factory=lambda: dict(CITY_COORDS))
    region_keywords: list = field(default_factory=lambda: list(REGION_KEYWORDS))
    location_keywords: list = field(default_factory=lambda: list(LOCATION_KEYWORDS))

    def __call__(self, region: str | None, location: str | None) -> Coordinates | None:
        loc = location.strip().lower() if location else ""
        if loc and loc in self.cities:
            return self.cities[loc]

        reg = region.strip().lower() if region else ""
        return (
            _match_keywords(reg, self.region_keywords)
            or _match_keywords(loc, self.location_keywords)
        )


# ============================================================================
# Display Encoding
# ============================================================================

# Display buckets on the node's average risk score; separate from the
# PO-set classification in metrics
GEO_HIGH_RISK = 11.0
GEO_MEDIUM_RISK = 5.0

# Role offsets in degrees so co-located bubbles stay distinguishable
ROLE_OFFSETS: dict[str, Coordinates] = {
    "customer": (0.0, 0.0),
    "supplier": (-1.0, -0.4),
    "plant": (1.0, -0.4),
}

MIN_RADIUS = 6.0
MAX_RADIUS = 20.0


def risk_bucket(avg_risk_score: float | None) -> str:
    if avg_risk_score is None or np.isnan(avg_risk_score):
        return "No Data"
    if avg_risk_score >= GEO_HIGH_RISK:
        return "High"
    if avg_risk_score >= GEO_MEDIUM_RISK:
        return "Medium"
    return "Safe"


def offset_coords(role: str, coords: Coordinates) -> Coordinates:
    dx, dy = ROLE_OFFSETS.get(role, (0.0, 0.0))
    return (coords[0] + dx, coords[1] + dy)


def bubble_radius(total_cost: float) -> float:
    """Bubble size grows with log10 of PO cost, clamped to a readable range."""
    base = np.log10(max(total_cost or 0.0, 0.0) + 10.0)
    return float(np.clip(base * 4.0, MIN_RADIUS, MAX_RADIUS))


def map_viewport(nodes: list[GeoNode]) -> MapViewport:
    """Center on the nodes' bounding box and zoom out as the span grows."""
    if not nodes:
        return MapViewport()

    coords = np.array([n.coords for n in nodes], dtype=float)
    min_lon, min_lat = coords.min(axis=0)
    max_lon, max_lat = coords.max(axis=0)
    span = max(abs(max_lon - min_lon), abs(max_lat - min_lat))

    if span > 120:
        zoom = 0.9
    elif span > 60:
        zoom = 1.2
    elif span > 30:
        zoom = 1.6
    else:
        zoom = 2.0

    center = (float((min_lon + max_lon) / 2), float((min_lat + max_lat) / 2))
    return MapViewport(center=center, zoom=zoom)


# ============================================================================
# Node Building
# ============================================================================

@dataclass(frozen=True)
class RoleColumns:
    location: str
    region: str
    name: str
    location_fallback: str | None = None


ROLES: dict[str, RoleColumns] = {
    "customer": RoleColumns(location="customer_location", region="customer_region", name="customer_name"),
    "supplier": RoleColumns(location="supplier_location", region="supplier_region", name="supplier_name"),
    "plant": RoleColumns(
        location="plant_location", region="plant_region", name="plant_id", location_fallback="plant_id"
    ),
}

NODE_MEASURES = {
    "po_count": distinct("po_number"),
    "total_cost_sum": sum_of("total_cost"),
    "avg_lead_time_days": mean_of("lead_time_days"),
    "defect_qty_sum": sum_of("defect_quantity"),
    "avg_oee_pct": mean_of("oee_pct"),
    "avg_risk_score": mean_of("risk_score"),
}


def _role_location(row: dict, cols: RoleColumns) -> str | None:
    location = normalize_label(row.get(cols.location))
    if location is None and cols.location_fallback:
        location = normalize_label(row.get(cols.location_fallback))
    return location


def build_geo_nodes(rows: list[dict], resolver: CoordinateResolver | None = None) -> list[GeoNode]:
    """
    Aggregate rows into one bubble per (role, location).

    A row feeds every role whose location it carries. Nodes whose
    coordinates cannot be resolved are left out entirely.

    Args:
        rows: Filtered integrated rows
        resolver: (region, location) -> (lon, lat) or None; defaults to
            the built-in gazetteer

    Returns:
        List of GeoNode, customers first, then suppliers, then plants
    """
    if not rows:
        return []
    resolver = resolver or GazetteerResolver()
    nodes: list[GeoNode] = []

    for role, cols in ROLES.items():
        measures = dict(NODE_MEASURES)
        measures["name"] = first_of(cols.name)
        measures["region"] = first_of(cols.region)

        groups = aggregate(
            rows,
            key=lambda row, cols=cols: _role_location(row, cols),
            measures=measures,
            fallback_prefix=None,
        )

        for location, g in groups.items():
            region = normalize_label(g["region"])
            coords = resolver(region, location)
            if coords is None:
                continue
            coords = (float(coords[0]), float(coords[1]))
            nodes.append(GeoNode(
                id=f"{role}:{location}",
                role=role,
                name=normalize_label(g["name"]) or location,
                region=region,
                location=location,
                coords=coords,
                display_coords=offset_coords(role, coords),
                po_count=g["po_count"],
                total_cost_sum=g["total_cost_sum"],
                avg_lead_time_days=g["avg_lead_time_days"],
                defect_qty_sum=g["defect_qty_sum"],
                avg_oee_pct=g["avg_oee_pct"],
                avg_risk_score=g["avg_risk_score"],
                risk_bucket=risk_bucket(g["avg_risk_score"]),
                radius=bubble_radius(g["total_cost_sum"]),
            ))

    return nodes
