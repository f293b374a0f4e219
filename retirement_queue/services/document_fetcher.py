"""
services/document_fetcher.py

Bounded fan-out over the CMS and the OCR service.

Each document number goes through metadata -> download -> OCR. A CMS fault
on the metadata call drops that document; any other failure fails the whole
batch and cancels the documents still in flight.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from retirement_queue.core.config import settings
from retirement_queue.services.cms_client import CMSClient, DocumentMetadata
from retirement_queue.services.ocr_service import OCRService
from retirement_queue.utils.exceptions import RemoteFault

logger = logging.getLogger(__name__)


@dataclass
class FetchedDocument:
    number: str
    text: str
    mime_type: str
    metadata: DocumentMetadata

    @property
    def type_label(self) -> str:
        if self.metadata.number:
            return f"{self.metadata.serie_name} {self.metadata.number}"
        return self.metadata.serie_name


class DocumentFetcher:
    def __init__(self, cms: CMSClient, ocr: OCRService, concurrency: Optional[int] = None):
        self.cms = cms
        self.ocr = ocr
        self.concurrency = concurrency or settings.DOCUMENT_FETCH_CONCURRENCY

    async def _fetch_one(self, number: str) -> Optional[FetchedDocument]:
        try:
            meta = await self.cms.fetch_document_metadata(number)
        except RemoteFault as e:
            logger.warning(f"Skipping document {number}: CMS fault {e.status} {e.message}")
            return None

        content, mime_type = await self.cms.download(meta.access_link)
        text = await self.ocr.extract_text(content, mime_type)
        return FetchedDocument(number=number, text=text, mime_type=mime_type, metadata=meta)

    async def fetch_all(self, numbers: Sequence[str]) -> List[FetchedDocument]:
        """Fetch every document, keeping input order and dropping soft-skipped ones."""
        if not numbers:
            return []

        sem = asyncio.Semaphore(self.concurrency)

        async def bounded(number: str) -> Optional[FetchedDocument]:
            async with sem:
                return await self._fetch_one(number)

        tasks = [asyncio.create_task(bounded(n)) for n in numbers]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except BaseException:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if pending:
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        errors = [
            t.exception() for t in tasks
            if t in done and not t.cancelled() and t.exception() is not None
        ]
        if errors:
            if len(errors) > 1:
                logger.warning(f"{len(errors) - 1} more document fetches failed in the same batch")
            raise errors[0]

        results = [t.result() for t in tasks]
        fetched = [r for r in results if r is not None]
        logger.info(
            f"Fetched {len(fetched)}/{len(numbers)} documents "
            f"({len(numbers) - len(fetched)} skipped)"
        )
        return fetched
