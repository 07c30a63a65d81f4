"""
Permitted-area polygon for a release.

A polygon is an ordered list of vertices. Fewer than two vertices means "no
geofence"; three or more describe a closed area whose last edge runs from the
final vertex back to the first without that vertex being stored twice.
"""
from dataclasses import dataclass
from numbers import Real
from typing import Iterable, Iterator, Sequence

from releases.exceptions import ReleaseValidationError

FIELD = "location_polygon"


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float

    @classmethod
    def parse(cls, raw, index: int = 0) -> "GeoPoint":
        if isinstance(raw, GeoPoint):
            return raw
        if isinstance(raw, dict):
            lat, lng = raw.get("lat"), raw.get("lng")
        elif isinstance(raw, (list, tuple)) and len(raw) == 2:
            lat, lng = raw
        else:
            raise ReleaseValidationError(FIELD, f"Point {index} must be an object with 'lat' and 'lng'.")

        for name, value in (("lat", lat), ("lng", lng)):
            if isinstance(value, bool) or not isinstance(value, Real):
                raise ReleaseValidationError(FIELD, f"Point {index} has a non-numeric '{name}'.")
        if not -90 <= lat <= 90:
            raise ReleaseValidationError(FIELD, f"Point {index} latitude {lat} is outside [-90, 90].")
        if not -180 <= lng <= 180:
            raise ReleaseValidationError(FIELD, f"Point {index} longitude {lng} is outside [-180, 180].")
        return cls(lat=float(lat), lng=float(lng))

    def to_dict(self) -> dict:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class GeoPolygon:
    points: tuple = ()

    @classmethod
    def from_raw(cls, raw: Iterable | None) -> "GeoPolygon":
        if raw is None:
            return cls()
        if isinstance(raw, (str, bytes, dict)):
            raise ReleaseValidationError(FIELD, "Polygon must be a list of points.")
        return cls(points=tuple(GeoPoint.parse(item, idx) for idx, item in enumerate(raw)))

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[GeoPoint]:
        return iter(self.points)

    @property
    def has_geofence(self) -> bool:
        return len(self.points) >= 2

    @property
    def is_closed_area(self) -> bool:
        return len(self.points) >= 3

    def edges(self) -> list[tuple[GeoPoint, GeoPoint]]:
        """Consecutive vertex pairs, plus the implicit closing edge for closed areas."""
        pts: Sequence[GeoPoint] = self.points
        pairs = list(zip(pts, pts[1:]))
        if self.is_closed_area:
            pairs.append((pts[-1], pts[0]))
        return pairs

    def contains(self, point) -> bool:
        """
        Even-odd ray cast against the closed ring. Lines and single points
        contain nothing.
        """
        if not self.is_closed_area:
            return False
        target = GeoPoint.parse(point)
        inside = False
        for a, b in self.edges():
            if (a.lat > target.lat) != (b.lat > target.lat):
                crossing = a.lng + (target.lat - a.lat) * (b.lng - a.lng) / (b.lat - a.lat)
                if target.lng < crossing:
                    inside = not inside
        return inside

    def to_raw(self) -> list[dict]:
        return [p.to_dict() for p in self.points]
