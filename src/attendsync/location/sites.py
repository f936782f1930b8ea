"""Rotation → site geofence lookup."""
from typing import Optional, Protocol

from sqlmodel import Session

from attendsync.location.verifier import SiteGeofence
from attendsync.models.attendance import RotationSite


class SiteLookup(Protocol):
    def get_site(self, rotation_id: str) -> Optional[SiteGeofence]:
        """Geofence for the rotation, or None when it has no fixed site."""
        raise NotImplementedError


class DatabaseSiteLookup:
    """Reads the RotationSite table. Missing radius falls back to ``default_radius_m``."""

    def __init__(self, engine, *, default_radius_m: float = 100.0):
        self.engine = engine
        self.default_radius_m = default_radius_m

    def get_site(self, rotation_id: str) -> Optional[SiteGeofence]:
        with Session(self.engine) as s:
            row = s.get(RotationSite, rotation_id)
        if row is None or row.latitude is None or row.longitude is None:
            return None
        radius = row.radius_m if row.radius_m is not None else self.default_radius_m
        return SiteGeofence(latitude=row.latitude, longitude=row.longitude, radius_m=radius, name=row.name)
