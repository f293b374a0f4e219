from __future__ import annotations

import uuid
from datetime import date

import pytest

from retirement_queue.db.models import (
    Case,
    Document,
    ProcessingStatus,
    RetirementCase,
    RetirementStatus,
    StatusHistory,
)
from retirement_queue.utils.exceptions import (
    CaseNumberTaken,
    DocumentNumberTaken,
    NotFoundError,
    RetirementCaseExists,
)


def _case(number: str = "0001") -> Case:
    return Case(
        number=number,
        unit_id="100",
        unit_abbrev="AP/01",
        access_link=f"https://cms.test/sei/processo_acesso_externo.php?case={number}",
    )


def _retirement_case(case_id) -> RetirementCase:
    return RetirementCase(
        case_id=case_id,
        requester_id="12345678900",
        birth_date=date(1950, 1, 1),
        request_date=date(2025, 1, 1),
        score=1,
    )


def test_save_and_get_case(store):
    saved = store.save_case(_case())

    by_id = store.get_case(saved.id)
    by_number = store.get_case_by_number("0001")

    assert isinstance(saved.id, uuid.UUID)
    assert by_id.id == by_number.id == saved.id
    assert by_id.status_processing == ProcessingStatus.PENDING


def test_duplicate_case_number_raises_conflict(store):
    store.save_case(_case())
    with pytest.raises(CaseNumberTaken) as exc:
        store.save_case(_case())
    assert exc.value.number == "0001"


def test_unknown_case_raises_not_found(store):
    with pytest.raises(NotFoundError):
        store.get_case(uuid.uuid4())
    with pytest.raises(NotFoundError):
        store.get_case_by_number("nope")


def test_update_case(store):
    case = store.save_case(_case())
    case.status_processing = ProcessingStatus.IN_PROGRESS
    store.update_case(case)

    assert store.get_case(case.id).status_processing == ProcessingStatus.IN_PROGRESS


def test_update_missing_case_raises_not_found(store):
    with pytest.raises(NotFoundError):
        ghost = _case("ghost")
        ghost.id = uuid.uuid4()
        store.update_case(ghost)


def test_documents_listed_in_insert_order(store):
    case = store.save_case(_case())
    for number in ("D2", "D1"):
        store.save_document(Document(case_id=case.id, number=number, content=f"text {number}"))

    docs = store.list_documents(case.id)
    assert [d.number for d in docs] == ["D2", "D1"]
    assert store.get_document_by_number("D1").content == "text D1"


def test_duplicate_document_keeps_transaction_usable(store):
    case = store.save_case(_case())
    store.save_document(Document(case_id=case.id, number="D1"))

    with store.transaction() as tx:
        bound = store.with_tx(tx)
        with pytest.raises(DocumentNumberTaken):
            bound.save_document(Document(case_id=case.id, number="D1"))
        bound.save_document(Document(case_id=case.id, number="D2"))

    assert [d.number for d in store.list_documents(case.id)] == ["D1", "D2"]


def test_bound_store_rolls_back_with_transaction(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            store.with_tx(tx).save_case(_case())
            raise RuntimeError("abort")

    with pytest.raises(NotFoundError):
        store.get_case_by_number("0001")


def test_one_retirement_case_per_case(store):
    case = store.save_case(_case())
    rc = store.save_retirement_case(_retirement_case(case.id))

    with pytest.raises(RetirementCaseExists):
        store.save_retirement_case(_retirement_case(case.id))

    assert store.get_retirement_case(rc.id).case_id == case.id
    assert store.get_retirement_case_by_case_id(case.id).id == rc.id
    assert store.get_retirement_case_by_case_number("0001").id == rc.id
    assert rc.status == RetirementStatus.ANALYSIS_PENDING


def test_status_history_in_order(store):
    case = store.save_case(_case())
    rc = store.save_retirement_case(_retirement_case(case.id))
    store.save_status_history(
        StatusHistory(retirement_case_id=rc.id, new_status=RetirementStatus.ANALYSIS_PENDING)
    )
    store.save_status_history(
        StatusHistory(
            retirement_case_id=rc.id,
            previous_status=RetirementStatus.ANALYSIS_PENDING,
            new_status=RetirementStatus.IN_ANALYSIS,
        )
    )

    history = store.list_status_history(rc.id)
    assert [h.new_status for h in history] == [
        RetirementStatus.ANALYSIS_PENDING,
        RetirementStatus.IN_ANALYSIS,
    ]


def test_store_requires_a_session_source():
    from retirement_queue.db.store import Store

    with pytest.raises(ValueError):
        Store()


def test_sessions_come_only_from_the_store():
    from retirement_queue.db import database, schemas

    assert not hasattr(database, "get_db")
    assert not hasattr(schemas, "ErrorResponse")
