"""Location pre-check: lets the client show "you are N meters from site" before clocking."""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import Field

from attendsync.api.deps import CurrentUser, get_current_user, get_location_verifier, get_site_lookup
from attendsync.api.errors import to_http_exception
from attendsync.api.schemas import CamelModel, LocationIn, VerificationOut
from attendsync.errors import AttendanceError
from attendsync.location.sites import SiteLookup
from attendsync.location.verifier import LocationVerifier

router = APIRouter()


class VerifyLocationRequest(CamelModel):
    rotation_id: str = Field(min_length=1)
    location: LocationIn


class VerifyLocationResponse(VerificationOut):
    site_name: Optional[str] = None
    radius_meters: Optional[float] = None


@router.post("/verify", response_model=VerifyLocationResponse)
def verify_location(
    request: VerifyLocationRequest,
    user: CurrentUser = Depends(get_current_user),
    verifier: LocationVerifier = Depends(get_location_verifier),
    sites: SiteLookup = Depends(get_site_lookup),
):
    """Check a coordinate against the rotation's site without writing anything."""
    site = sites.get_site(request.rotation_id)
    try:
        result = verifier.verify(request.location.to_sample(), site)
    except AttendanceError as exc:
        raise to_http_exception(exc) from exc

    return VerifyLocationResponse(
        is_valid=result.is_valid,
        distance_meters=result.distance_meters,
        errors=result.errors,
        warnings=result.warnings,
        skipped=result.skipped,
        site_name=site.name if site else None,
        radius_meters=site.radius_m if site else None,
    )
