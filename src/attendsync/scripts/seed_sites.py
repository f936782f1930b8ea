"""
Seed rotation sites (geofences) from a JSON file.

Usage:
    python -m attendsync.scripts.seed_sites sites.json

The file holds a list of objects:
    [{"rotationId": "icu-2026", "name": "General Hospital ICU",
      "latitude": 40.7128, "longitude": -74.0060, "radiusM": 150}]

Existing rotations are updated in place, so the script can be re-run.
"""
import argparse
import json
import logging
from pathlib import Path
from typing import List

from sqlmodel import Session

from attendsync.location.verifier import LocationSample, validate_sample
from attendsync.models.attendance import RotationSite

logger = logging.getLogger(__name__)


def load_sites(path: Path) -> List[RotationSite]:
    """Parse and validate the JSON file. Raises ValueError on a bad entry."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a JSON list of sites")

    sites = []
    for i, entry in enumerate(raw):
        rotation_id = entry.get("rotationId")
        if not rotation_id:
            raise ValueError(f"{path}: entry {i} has no rotationId")
        latitude = entry.get("latitude")
        longitude = entry.get("longitude")
        if latitude is not None and longitude is not None:
            # Reuses the coordinate checks; raises InvalidCoordinates
            validate_sample(LocationSample(latitude=latitude, longitude=longitude, accuracy_m=0))
        sites.append(
            RotationSite(
                rotation_id=str(rotation_id),
                name=entry.get("name") or str(rotation_id),
                latitude=latitude,
                longitude=longitude,
                radius_m=entry.get("radiusM"),
            )
        )
    return sites


def seed_sites(engine, sites: List[RotationSite]) -> int:
    """Insert or update each site. Returns the number written."""
    with Session(engine) as s:
        for site in sites:
            existing = s.get(RotationSite, site.rotation_id)
            if existing is None:
                s.add(site)
                logger.info("Added site %s (%s)", site.rotation_id, site.name)
            else:
                existing.name = site.name
                existing.latitude = site.latitude
                existing.longitude = site.longitude
                existing.radius_m = site.radius_m
                s.add(existing)
                logger.info("Updated site %s (%s)", site.rotation_id, site.name)
        s.commit()
    return len(sites)


def main() -> None:
    from attendsync.db.engine import get_engine

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    parser = argparse.ArgumentParser(description="Seed rotation site geofences")
    parser.add_argument("file", type=Path, help="JSON file with a list of sites")
    args = parser.parse_args()

    written = seed_sites(get_engine(), load_sites(args.file))
    logger.info("Seeded %d site(s).", written)


if __name__ == "__main__":
    main()
