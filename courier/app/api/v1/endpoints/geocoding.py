"""
Geocoding and route estimation endpoints.

Thin HTTP layer over the Geocoder and the estimator. Provider failures
become 404 (no match) or 503 (timeout / lookup failure) responses; the
suggestion endpoint never fails.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Query

from courier.app.core.dependencies import get_current_user
from courier.app.services.estimator import estimate_route
from courier.app.services.geocoding import (
    ErrorKind,
    Geocoder,
    GeocodeResult,
    ResolutionFailure,
    get_geocoder,
)
from courier.app.schemas.geocoding import (
    Coordinates,
    GeocodeErrorInfo,
    GeocodeResponse,
    ReverseGeocodeResponse,
    RouteEstimateRequest,
    RouteEstimateResponse,
    SuggestionItem,
    SuggestionResponse,
)

router = APIRouter(prefix="/geo", tags=["Geocoding"])


def _failure_to_http(failure: ResolutionFailure) -> HTTPException:
    if failure.kind == ErrorKind.NOT_FOUND:
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=failure.message)
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=failure.message)


@router.get("/resolve", response_model=GeocodeResponse)
async def resolve_address(
    address: str = Query(..., max_length=500, description="Free-text address"),
    fallback: bool = Query(False, description="Substitute the default city when unresolvable"),
    current_user: dict = Depends(get_current_user),
    geocoder: Geocoder = Depends(get_geocoder),
):
    if fallback:
        result = await geocoder.resolve_or_default(address)
    else:
        result = await geocoder.resolve(address)
        if not isinstance(result, GeocodeResult):
            raise _failure_to_http(result)

    return GeocodeResponse(
        lat=result.lat,
        lng=result.lng,
        canonical_address=result.canonical_address,
        is_fallback=result.is_fallback,
    )


@router.get("/suggest", response_model=SuggestionResponse)
async def suggest_addresses(
    q: str = Query("", max_length=200, description="Partial address"),
    limit: int = Query(5, ge=1, le=20),
    current_user: dict = Depends(get_current_user),
    geocoder: Geocoder = Depends(get_geocoder),
):
    """Autocomplete candidates. Always 200; provider trouble is reported in 'error'."""
    result = await geocoder.suggest(q, limit)
    error = None
    if result.error is not None:
        error = GeocodeErrorInfo(kind=result.error.kind.value, message=result.error.message)

    return SuggestionResponse(
        suggestions=[
            SuggestionItem(name=s.name, display_name=s.display_name, lat=s.lat, lng=s.lng)
            for s in result.suggestions
        ],
        error=error,
    )


@router.get("/reverse", response_model=ReverseGeocodeResponse)
async def reverse_geocode(
    lat: float = Query(...),
    lng: float = Query(...),
    current_user: dict = Depends(get_current_user),
    geocoder: Geocoder = Depends(get_geocoder),
):
    result = await geocoder.reverse_resolve(lat, lng)
    if isinstance(result, ResolutionFailure):
        raise _failure_to_http(result)
    return ReverseGeocodeResponse(address=result)


@router.post("/estimate", response_model=RouteEstimateResponse)
async def estimate(
    request: RouteEstimateRequest,
    current_user: dict = Depends(get_current_user),
    geocoder: Geocoder = Depends(get_geocoder),
):
    """
    Distance and ETA for a route.

    Send explicit waypoints, or an origin and destination address to be
    resolved first.
    """
    if request.waypoints:
        points = [(w.lat, w.lng) for w in request.waypoints]
    elif request.pickup_address and request.delivery_address:
        points = []
        for address in (request.pickup_address, request.delivery_address):
            result = await geocoder.resolve(address)
            if not isinstance(result, GeocodeResult):
                raise _failure_to_http(result)
            points.append(result.coordinates)
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide waypoints or both pickup_address and delivery_address"
        )

    route = estimate_route(points)
    return RouteEstimateResponse(
        distance_km=route.distance_km,
        eta_minutes=route.eta_minutes,
        waypoints=[Coordinates(lat=lat, lng=lng) for lat, lng in route.waypoints],
    )
