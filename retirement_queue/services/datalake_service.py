"""
services/datalake_service.py

Read-only queries against the reporting data lake: cases currently open in
a unit, and the units that have open cases. Results are cached for two
hours behind single-flight.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from retirement_queue.core.config import settings
from retirement_queue.services.cache_service import Cache, SingleFlight, remember_json

logger = logging.getLogger(__name__)

CACHE_TTL = 2 * 60 * 60
CASES_CACHE_KEY = "datalake:cases:{unit}"
UNITS_CACHE_KEY = "datalake:units"

_VIEW_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


class DataLakeService:
    def __init__(
        self,
        cache: Cache,
        flight: SingleFlight,
        engine: Optional[Engine] = None,
        view: Optional[str] = None,
    ):
        self.cache = cache
        self.flight = flight
        self.view = view or settings.DATALAKE_OPEN_CASES_VIEW
        if not _VIEW_NAME_RE.match(self.view):
            raise ValueError(f"Invalid data lake view name {self.view!r}")
        self._engine = engine

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            if not settings.DATALAKE_URL:
                raise RuntimeError("DATALAKE_URL is not configured")
            self._engine = create_engine(settings.DATALAKE_URL, pool_pre_ping=True)
        return self._engine

    def _query_open_cases(self, unit: str) -> List[Dict[str, Any]]:
        # First movement of each case into the unit
        sql = text(
            f"""
            SELECT case_number, unit_abbrev, moved_at, origin_unit_id, origin_unit_abbrev
            FROM (
                SELECT
                    case_number,
                    unit_abbrev,
                    moved_at,
                    origin_unit_id,
                    origin_unit_abbrev,
                    ROW_NUMBER() OVER (
                        PARTITION BY case_number, unit_abbrev
                        ORDER BY moved_at ASC
                    ) AS rn
                FROM {self.view}
                WHERE unit_abbrev = :unit
            ) AS t
            WHERE t.rn = 1
            ORDER BY moved_at
            """
        )
        with self.engine.connect() as conn:
            rows = conn.execute(sql, {"unit": unit}).mappings().all()
        return [
            {
                "number": r["case_number"],
                "unit_abbrev": r["unit_abbrev"],
                "received_at": r["moved_at"],
                "origin_unit_id": str(r["origin_unit_id"]) if r["origin_unit_id"] is not None else None,
                "origin_unit_abbrev": r["origin_unit_abbrev"],
            }
            for r in rows
        ]

    def _query_units(self) -> List[str]:
        sql = text(f"SELECT DISTINCT unit_abbrev FROM {self.view} ORDER BY unit_abbrev")
        with self.engine.connect() as conn:
            return [row[0] for row in conn.execute(sql)]

    async def list_open_cases(self, unit: str) -> List[Dict[str, Any]]:
        async def load():
            return await asyncio.to_thread(self._query_open_cases, unit)

        return await remember_json(
            self.cache, self.flight, CASES_CACHE_KEY.format(unit=unit), CACHE_TTL, load
        )

    async def list_units(self) -> List[str]:
        async def load():
            return await asyncio.to_thread(self._query_units)

        return await remember_json(self.cache, self.flight, UNITS_CACHE_KEY, CACHE_TTL, load)
