"""
Health check: database connectivity
"""
from fastapi import APIRouter, Depends
from sqlalchemy import text

from retirement_queue import __version__
from retirement_queue.api.deps import get_services
from retirement_queue.core.logger import logger
from retirement_queue.db.schemas import HealthResponse
from retirement_queue.services.container import Services

router = APIRouter()


def _check_database(services: Services) -> tuple[str, str]:
    """Returns (status, detail). Status is 'ok' or 'error'."""
    db = services.session_factory()
    try:
        db.execute(text("SELECT 1"))
        return "ok", "database reachable"
    except Exception as e:
        logger.warning(f"Health check: database error: {e}")
        return "error", f"database: {e}"
    finally:
        db.close()


@router.get("/health", response_model=HealthResponse)
def health_check(services: Services = Depends(get_services)):
    db_status, db_detail = _check_database(services)
    return HealthResponse(
        status="healthy" if db_status == "ok" else "degraded",
        version=__version__,
        database=db_status,
        checks={"database": db_detail},
    )
