"""
services/analysis_service.py

Case analysis pipeline.

  create_case       resolve in the CMS, insert the case and enqueue its
                    analysis job in one transaction
  analyze           load -> list documents -> fetch/OCR -> persist ->
                    classify -> (one transaction) metadata + hooks + SUCCESS

Hooks observe a committed analysis exactly once: they run inside the final
transaction in registration order and any hook error rolls everything back.
"""
from __future__ import annotations

import logging
from typing import List, Protocol, Sequence

from sqlalchemy.orm import Session

from retirement_queue.db.models import Case, Document, ProcessingStatus
from retirement_queue.db.store import Store
from retirement_queue.services.classifier_service import Classifier
from retirement_queue.services.cms_client import CMSClient
from retirement_queue.services.document_fetcher import DocumentFetcher, FetchedDocument
from retirement_queue.services.job_queue import AnalyzeCaseArgs, JobQueue
from retirement_queue.utils.exceptions import (
    CaseNumberTaken,
    DocumentNumberTaken,
    NotFoundError,
)
from retirement_queue.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class AnalyzeHook(Protocol):
    async def on_analyze_complete(self, tx: Session, case: Case, documents: Sequence[Document]) -> None: ...


class AnalysisService:
    def __init__(
        self,
        store: Store,
        queue: JobQueue,
        cms: CMSClient,
        fetcher: DocumentFetcher,
        classifier: Classifier,
    ):
        self.store = store
        self.queue = queue
        self.cms = cms
        self.fetcher = fetcher
        self.classifier = classifier
        self._hooks: List[AnalyzeHook] = []

    def register_hook(self, hook: AnalyzeHook) -> None:
        """Add a hook. Must happen before the first job runs."""
        self._hooks.append(hook)

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    async def create_case(self, number: str) -> Case:
        try:
            self.store.get_case_by_number(number)
        except NotFoundError:
            pass
        else:
            raise CaseNumberTaken(number)

        resolved = await self.cms.resolve_case(number)

        with self.store.transaction() as tx:
            store = self.store.with_tx(tx)
            case = store.save_case(
                Case(
                    number=number,
                    unit_id=resolved.unit.id,
                    unit_abbrev=resolved.unit.abbrev,
                    access_link=resolved.access_link,
                    status_processing=ProcessingStatus.PENDING,
                )
            )
            self.queue.enqueue_tx(tx, AnalyzeCaseArgs(case_id=str(case.id)))

        logger.info(f"Case {number} registered as {case.id} ({case.unit_abbrev})")
        return case

    def trigger_reanalysis(self, case_id) -> bool:
        """Enqueue a new analysis; False when one is already queued in the window."""
        with self.store.transaction() as tx:
            store = self.store.with_tx(tx)
            case = store.get_case(case_id)
            result = self.queue.enqueue_tx(tx, AnalyzeCaseArgs(case_id=str(case.id)))
            if result.inserted:
                case.status_processing = ProcessingStatus.PENDING
                store.update_case(case)
        return result.inserted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_case(self, case_id) -> Case:
        return self.store.get_case(case_id)

    def get_case_by_number(self, number: str) -> Case:
        return self.store.get_case_by_number(number)

    def list_documents(self, case_id) -> List[Document]:
        self.store.get_case(case_id)
        return self.store.list_documents(case_id)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def set_status(self, case_id, status: ProcessingStatus) -> None:
        """Best-effort status write outside the analysis transaction."""
        try:
            with self.store.transaction() as tx:
                store = self.store.with_tx(tx)
                case = store.get_case(case_id)
                case.status_processing = status
                store.update_case(case)
        except NotFoundError:
            logger.warning(f"Case {case_id} vanished before status {status.value} was written")
        except Exception as e:
            logger.warning(f"Could not set case {case_id} to {status.value}: {e}")

    def _is_stored(self, number: str) -> bool:
        try:
            self.store.get_document_by_number(number)
            return True
        except NotFoundError:
            return False

    def _persist_documents(self, case: Case, fetched: Sequence[FetchedDocument]) -> None:
        if not fetched:
            return
        with self.store.transaction() as tx:
            store = self.store.with_tx(tx)
            for doc in fetched:
                try:
                    store.save_document(
                        Document(
                            case_id=case.id,
                            number=doc.number,
                            type=doc.type_label,
                            unit=doc.metadata.unit_abbrev,
                            access_link=doc.metadata.access_link,
                            mime_type=doc.mime_type,
                            content=doc.text,
                            raw_metadata=doc.metadata.to_dict(),
                        )
                    )
                except DocumentNumberTaken:
                    logger.info(f"Document {doc.number} already stored, skipping")

    async def analyze(self, case_id) -> Case:
        case = self.store.get_case(case_id)
        self.set_status(case.id, ProcessingStatus.IN_PROGRESS)

        rows = await self.cms.list_documents(case.access_link)
        missing = [row.number for row in rows if not self._is_stored(row.number)]
        fetched = await self.fetcher.fetch_all(missing)
        self._persist_documents(case, fetched)

        documents = self.store.list_documents(case.id)
        verdict = await self.classifier.classify(documents)

        with self.store.transaction() as tx:
            store = self.store.with_tx(tx)
            case = store.get_case(case.id)
            case.classifier_metadata = verdict.model_dump()
            case.analysed_at = utcnow()
            case.classification = verdict.is_retirement
            for hook in self._hooks:
                await hook.on_analyze_complete(tx, case, documents)
            case.status_processing = ProcessingStatus.SUCCESS
            case = store.update_case(case)

        logger.info(
            f"Case {case.number} analysed: {len(documents)} documents, "
            f"is_retirement={verdict.is_retirement}"
        )
        return case
