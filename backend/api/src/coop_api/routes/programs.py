"""Program catalog endpoints (public)."""

from fastapi import APIRouter, Depends, Query

from coop_api.dependencies import get_catalog_store, get_pricing_engine
from coop_api.models.reservations import ProgramResponse
from coop_booking.models.enums import ProgramStatus
from coop_booking.services.catalog import CatalogStore
from coop_booking.services.pricing import PricingEngine
from coop_booking.utils.clock import utc_now

router = APIRouter(tags=["programs"])


@router.get(
    "/programs",
    summary="List programs",
    description="""
List programs by status with the price a booking started now would lock.

**Public endpoint** - no authentication required.
""",
    response_model=list[ProgramResponse],
)
async def list_programs(
    status: ProgramStatus = Query(default=ProgramStatus.OPEN),
    catalog: CatalogStore = Depends(get_catalog_store),
    pricing: PricingEngine = Depends(get_pricing_engine),
) -> list[ProgramResponse]:
    now = utc_now()
    programs = await catalog.list_programs(status)
    return [ProgramResponse.from_program(p, pricing.quote(p, now)) for p in programs]


@router.get(
    "/programs/{program_id}",
    summary="Get program",
    response_model=ProgramResponse,
    responses={404: {"description": "Program not found"}},
)
async def get_program(
    program_id: str,
    catalog: CatalogStore = Depends(get_catalog_store),
    pricing: PricingEngine = Depends(get_pricing_engine),
) -> ProgramResponse:
    program = await catalog.get_program(program_id)
    return ProgramResponse.from_program(program, pricing.quote(program, utc_now()))
