"""
Data store

Thin persistence layer over the ORM models. A Store built from a session
factory runs every operation in its own short transaction; ``with_tx``
returns a Store bound to a caller-owned session, whose operations only flush
so the caller decides when to commit.

Unique-column violations are caught inside a SAVEPOINT and re-raised as
CaseNumberTaken / DocumentNumberTaken / RetirementCaseExists, leaving the
surrounding transaction usable.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from retirement_queue.db.models import Case, Document, RetirementCase, StatusHistory
from retirement_queue.utils.exceptions import (
    CaseNumberTaken,
    DocumentNumberTaken,
    NotFoundError,
    RetirementCaseExists,
)


class Store:
    def __init__(self, session_factory: Optional[sessionmaker] = None, session: Optional[Session] = None):
        if session_factory is None and session is None:
            raise ValueError("Store needs a session factory or a bound session")
        self._factory = session_factory
        self._bound = session

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def with_tx(self, session: Session) -> "Store":
        """Store view whose operations join ``session``'s transaction."""
        return Store(self._factory, session=session)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Open a session, commit on success, roll back on any error."""
        if self._factory is None:
            raise RuntimeError("Bound store cannot open its own transaction")
        session = self._factory()
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        if self._bound is not None:
            yield self._bound
            self._bound.flush()
            return
        with self.transaction() as session:
            yield session

    def _insert(self, session: Session, obj, conflict: Exception):
        try:
            with session.begin_nested():
                session.add(obj)
        except IntegrityError as exc:
            raise conflict from exc
        return obj

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def save_case(self, case: Case) -> Case:
        with self._session() as s:
            return self._insert(s, case, CaseNumberTaken(case.number))

    def get_case(self, case_id) -> Case:
        with self._session() as s:
            case = s.get(Case, case_id)
            if case is None:
                raise NotFoundError("Case", case_id)
            return case

    def get_case_by_number(self, number: str) -> Case:
        with self._session() as s:
            case = s.query(Case).filter(Case.number == number).first()
            if case is None:
                raise NotFoundError("Case", number)
            return case

    def update_case(self, case: Case) -> Case:
        with self._session() as s:
            if s.get(Case, case.id) is None:
                raise NotFoundError("Case", case.id)
            return s.merge(case)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def save_document(self, document: Document) -> Document:
        with self._session() as s:
            return self._insert(s, document, DocumentNumberTaken(document.number))

    def get_document_by_number(self, number: str) -> Document:
        with self._session() as s:
            doc = s.query(Document).filter(Document.number == number).first()
            if doc is None:
                raise NotFoundError("Document", number)
            return doc

    def list_documents(self, case_id) -> List[Document]:
        with self._session() as s:
            return (
                s.query(Document)
                .filter(Document.case_id == case_id)
                .order_by(Document.id)
                .all()
            )

    # ------------------------------------------------------------------
    # Retirement cases
    # ------------------------------------------------------------------

    def save_retirement_case(self, retirement_case: RetirementCase) -> RetirementCase:
        with self._session() as s:
            return self._insert(
                s, retirement_case, RetirementCaseExists(retirement_case.case_id)
            )

    def get_retirement_case(self, retirement_case_id: int) -> RetirementCase:
        with self._session() as s:
            rc = s.get(RetirementCase, retirement_case_id)
            if rc is None:
                raise NotFoundError("RetirementCase", retirement_case_id)
            return rc

    def get_retirement_case_by_case_id(self, case_id) -> RetirementCase:
        with self._session() as s:
            rc = s.query(RetirementCase).filter(RetirementCase.case_id == case_id).first()
            if rc is None:
                raise NotFoundError("RetirementCase", case_id)
            return rc

    def get_retirement_case_by_case_number(self, number: str) -> RetirementCase:
        with self._session() as s:
            rc = (
                s.query(RetirementCase)
                .join(Case, Case.id == RetirementCase.case_id)
                .filter(Case.number == number)
                .first()
            )
            if rc is None:
                raise NotFoundError("RetirementCase", number)
            return rc

    def update_retirement_case(self, retirement_case: RetirementCase) -> RetirementCase:
        with self._session() as s:
            if s.get(RetirementCase, retirement_case.id) is None:
                raise NotFoundError("RetirementCase", retirement_case.id)
            return s.merge(retirement_case)

    # ------------------------------------------------------------------
    # Status history
    # ------------------------------------------------------------------

    def save_status_history(self, entry: StatusHistory) -> StatusHistory:
        with self._session() as s:
            s.add(entry)
            s.flush()
            return entry

    def list_status_history(self, retirement_case_id: int) -> List[StatusHistory]:
        with self._session() as s:
            return (
                s.query(StatusHistory)
                .filter(StatusHistory.retirement_case_id == retirement_case_id)
                .order_by(StatusHistory.id)
                .all()
            )
