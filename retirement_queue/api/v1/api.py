"""
Main API router aggregator
"""
from fastapi import APIRouter

from retirement_queue.api.v1.endpoints import cases, retirement_cases, units

api_router = APIRouter()

api_router.include_router(cases.router, prefix="/cases", tags=["Cases"])
api_router.include_router(
    retirement_cases.router, prefix="/retirement-cases", tags=["Retirement cases"]
)
api_router.include_router(units.router, tags=["Units"])
