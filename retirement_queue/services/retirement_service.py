"""
services/retirement_service.py

Retirement cases: priority score, the analysis-complete hook that
materializes a RetirementCase for positive verdicts, and the read/status
operations used by the API.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from retirement_queue.db.models import (
    Case,
    Document,
    RetirementCase,
    RetirementStatus,
    StatusHistory,
)
from retirement_queue.db.schemas import Verdict
from retirement_queue.db.store import Store
from retirement_queue.utils.exceptions import (
    InvalidStatusTransition,
    NotFoundError,
    RetirementCaseExists,
)
from retirement_queue.utils.helpers import parse_iso_date

logger = logging.getLogger(__name__)

SEED_NOTE = "created by automated analysis"


def calculate_age(birth_date: date, today: Optional[date] = None) -> int:
    """Whole years between birth_date and today."""
    today = today or date.today()
    age = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age


def calculate_score(birth_date: date, invalidity: bool, today: Optional[date] = None) -> int:
    """
    Queue priority score, 0 to 5.

        age >= 60        +1
        age >= 80        +2 (on top of the age-60 point)
        invalidity       +2
    """
    age = calculate_age(birth_date, today)
    score = 0
    if age >= 60:
        score += 1
    if age >= 80:
        score += 2
    if invalidity:
        score += 2
    return score


class RetirementHook:
    """Runs inside the analysis transaction; never opens its own."""

    def __init__(self, store: Store):
        self.store = store

    async def on_analyze_complete(self, tx: Session, case: Case, documents: Sequence[Document]) -> None:
        store = self.store.with_tx(tx)

        try:
            existing = store.get_retirement_case_by_case_id(case.id)
        except NotFoundError:
            existing = None
        if existing is not None:
            if existing.status == RetirementStatus.IN_DILIGENCE:
                logger.info(f"Retirement case #{existing.id} is in diligence, keeping it as is")
            else:
                logger.info(f"Retirement case #{existing.id} already exists for case {case.number}")
            return

        verdict = Verdict.model_validate(case.classifier_metadata or {})
        birth_date = parse_iso_date(verdict.birth_date)
        request_date = parse_iso_date(verdict.request_date)

        if not verdict.is_retirement:
            return

        retirement_case = RetirementCase(
            case_id=case.id,
            requester_id=verdict.requester_id,
            birth_date=birth_date,
            request_date=request_date,
            invalidity=verdict.invalidity,
            judicial=verdict.judicial,
            priority=False,
            score=calculate_score(birth_date, verdict.invalidity),
            status=RetirementStatus.ANALYSIS_PENDING,
            diligence_responsible_id=verdict.diligence_responsible_id,
        )
        try:
            store.save_retirement_case(retirement_case)
        except RetirementCaseExists:
            logger.info(f"Retirement case for case {case.number} was created concurrently")
            return

        store.save_status_history(
            StatusHistory(
                retirement_case_id=retirement_case.id,
                previous_status=None,
                new_status=RetirementStatus.ANALYSIS_PENDING,
                user_id=None,
                note=SEED_NOTE,
            )
        )
        logger.info(
            f"Retirement case #{retirement_case.id} created for case {case.number} "
            f"(score {retirement_case.score})"
        )


class RetirementService:
    def __init__(self, store: Store):
        self.store = store

    def get_retirement_case(self, retirement_case_id: int) -> RetirementCase:
        return self.store.get_retirement_case(retirement_case_id)

    def get_by_case_number(self, number: str) -> RetirementCase:
        return self.store.get_retirement_case_by_case_number(number)

    def list_history(self, retirement_case_id: int) -> List[StatusHistory]:
        # 404 for unknown ids rather than an empty list
        self.store.get_retirement_case(retirement_case_id)
        return self.store.list_status_history(retirement_case_id)

    def change_status(
        self,
        retirement_case_id: int,
        new_status: RetirementStatus,
        user_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> RetirementCase:
        """Move a retirement case to ``new_status`` and append the history row."""
        with self.store.transaction() as tx:
            store = self.store.with_tx(tx)
            rc = store.get_retirement_case(retirement_case_id)
            if rc.status == new_status:
                raise InvalidStatusTransition(
                    f"Retirement case #{rc.id} is already {new_status.value}"
                )
            previous = rc.status
            rc.status = new_status
            if user_id:
                rc.last_analyst_id = user_id
            rc = store.update_retirement_case(rc)
            store.save_status_history(
                StatusHistory(
                    retirement_case_id=rc.id,
                    previous_status=previous,
                    new_status=new_status,
                    user_id=user_id,
                    note=note,
                )
            )
        logger.info(f"Retirement case #{retirement_case_id}: {previous.value} -> {new_status.value}")
        return rc
