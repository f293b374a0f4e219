"""
Retirement case endpoints
"""
from typing import List

from fastapi import APIRouter, Depends

from retirement_queue.api.deps import get_services
from retirement_queue.db.schemas import (
    RetirementCaseResponse,
    StatusChangeRequest,
    StatusHistoryResponse,
)
from retirement_queue.services.container import Services

router = APIRouter()


@router.get("/by-number/{number:path}", response_model=RetirementCaseResponse)
def get_by_case_number(number: str, services: Services = Depends(get_services)):
    return services.retirement.get_by_case_number(number)


@router.get("/{retirement_case_id}", response_model=RetirementCaseResponse)
def get_retirement_case(retirement_case_id: int, services: Services = Depends(get_services)):
    return services.retirement.get_retirement_case(retirement_case_id)


@router.get("/{retirement_case_id}/history", response_model=List[StatusHistoryResponse])
def get_history(retirement_case_id: int, services: Services = Depends(get_services)):
    return services.retirement.list_history(retirement_case_id)


@router.post("/{retirement_case_id}/status", response_model=RetirementCaseResponse)
def change_status(
    retirement_case_id: int,
    payload: StatusChangeRequest,
    services: Services = Depends(get_services),
):
    return services.retirement.change_status(
        retirement_case_id, payload.status, user_id=payload.user_id, note=payload.note
    )
