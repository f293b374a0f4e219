"""
Case endpoints: trigger, reads and re-analysis
"""
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status

from retirement_queue.api.deps import get_services
from retirement_queue.core.logger import logger
from retirement_queue.db.schemas import (
    AnalyzeResponse,
    CaseCreate,
    CaseResponse,
    DocumentResponse,
)
from retirement_queue.services.container import Services

router = APIRouter()


@router.post("", response_model=CaseResponse, status_code=status.HTTP_201_CREATED)
async def create_case(payload: CaseCreate, services: Services = Depends(get_services)):
    """
    Register a CMS case and enqueue its analysis
    """
    case = await services.analysis.create_case(payload.number)
    logger.info(f"Case {case.number} created via API")
    return case


@router.get("/by-number/{number:path}", response_model=CaseResponse)
def get_case_by_number(number: str, services: Services = Depends(get_services)):
    return services.analysis.get_case_by_number(number)


@router.get("/{case_id}", response_model=CaseResponse)
def get_case(case_id: UUID, services: Services = Depends(get_services)):
    return services.analysis.get_case(case_id)


@router.get("/{case_id}/documents", response_model=List[DocumentResponse])
def list_case_documents(case_id: UUID, services: Services = Depends(get_services)):
    return services.analysis.list_documents(case_id)


@router.post(
    "/{case_id}/analyze",
    response_model=AnalyzeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def analyze_case(case_id: UUID, services: Services = Depends(get_services)):
    """
    Queue a new analysis; inserted=false when one is already queued
    """
    inserted = services.analysis.trigger_reanalysis(case_id)
    return AnalyzeResponse(inserted=inserted)
