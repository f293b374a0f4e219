"""
Unit listings from the CMS and the data lake
"""
from typing import List

from fastapi import APIRouter, Depends

from retirement_queue.api.deps import get_services
from retirement_queue.db.schemas import OpenCaseResponse, UnitResponse
from retirement_queue.services.container import Services

router = APIRouter()


@router.get("/units", response_model=List[UnitResponse])
async def list_analyst_units(services: Services = Depends(get_services)):
    """
    CMS units reserved to retirement analysts
    """
    units = await services.cms.list_units()
    return [UnitResponse(id=u.id, abbrev=u.abbrev, description=u.description) for u in units]


@router.get("/datalake/units", response_model=List[str])
async def list_datalake_units(services: Services = Depends(get_services)):
    return await services.datalake.list_units()


@router.get("/datalake/units/{unit:path}/cases", response_model=List[OpenCaseResponse])
async def list_open_cases(unit: str, services: Services = Depends(get_services)):
    return await services.datalake.list_open_cases(unit)
