from __future__ import annotations

import asyncio
import gc

import pytest

from retirement_queue.services.cms_client import DocumentMetadata
from retirement_queue.services.document_fetcher import DocumentFetcher, FetchedDocument
from retirement_queue.utils.exceptions import DocumentDownloadError, OCRFailed, RemoteFault


class StubCMS:
    def __init__(self, faults=(), broken_downloads=(), delay: float = 0.0):
        self.faults = set(faults)
        self.broken_downloads = set(broken_downloads)
        self.delay = delay
        self.in_flight = 0
        self.peak = 0
        self.downloads = []

    async def fetch_document_metadata(self, number: str) -> DocumentMetadata:
        if number in self.faults:
            raise RemoteFault(status=500, message=f"{number} is restricted")
        return DocumentMetadata(
            serie_name="Requerimento",
            number="",
            formatted_id=number,
            access_link=f"https://cms.test/sei/download/{number}",
        )

    async def download(self, link: str):
        number = link.rsplit("/", 1)[-1]
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if number in self.broken_downloads:
                raise DocumentDownloadError(link, 503)
            self.downloads.append(number)
            return number.encode("utf-8"), "application/pdf"
        finally:
            self.in_flight -= 1


class StubOCR:
    def __init__(self, fail=(), slow=(), slow_delay: float = 5.0):
        self.fail = set(fail)
        self.slow = set(slow)
        self.slow_delay = slow_delay
        self.cancelled = []

    async def extract_text(self, content: bytes, mime_type: str) -> str:
        number = content.decode("utf-8")
        if number in self.slow:
            try:
                await asyncio.sleep(self.slow_delay)
            except asyncio.CancelledError:
                self.cancelled.append(number)
                raise
        if number in self.fail:
            raise OCRFailed(f"cannot read {number}")
        return f"text of {number}"


def test_results_keep_input_order_and_skip_faulted():
    cms = StubCMS(faults={"D2"})
    fetcher = DocumentFetcher(cms, StubOCR(), concurrency=3)

    result = asyncio.run(fetcher.fetch_all(["D1", "D2", "D3", "D4"]))

    assert [d.number for d in result] == ["D1", "D3", "D4"]
    assert result[0].text == "text of D1"
    assert result[0].mime_type == "application/pdf"
    assert result[0].type_label == "Requerimento"


def test_concurrency_is_bounded():
    cms = StubCMS(delay=0.01)
    fetcher = DocumentFetcher(cms, StubOCR(), concurrency=2)

    result = asyncio.run(fetcher.fetch_all([f"D{i}" for i in range(8)]))

    assert len(result) == 8
    assert cms.peak <= 2


def test_ocr_failure_fails_batch_and_cancels_in_flight():
    cms = StubCMS()
    ocr = StubOCR(fail={"D1"}, slow={"D2", "D3"})
    fetcher = DocumentFetcher(cms, ocr, concurrency=5)

    with pytest.raises(OCRFailed):
        asyncio.run(fetcher.fetch_all(["D1", "D2", "D3"]))
    assert sorted(ocr.cancelled) == ["D2", "D3"]


def test_download_failure_is_not_a_soft_skip():
    cms = StubCMS(broken_downloads={"D2"})
    fetcher = DocumentFetcher(cms, StubOCR(), concurrency=1)

    with pytest.raises(DocumentDownloadError) as exc:
        asyncio.run(fetcher.fetch_all(["D1", "D2", "D3"]))
    assert exc.value.status == 503


def test_simultaneous_failures_are_all_retrieved():
    fetcher = DocumentFetcher(StubCMS(), StubOCR(fail={"D1", "D2", "D3"}), concurrency=3)
    reported = []

    async def scenario():
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(lambda loop, context: reported.append(context["message"]))
        failed = False
        try:
            await fetcher.fetch_all(["D1", "D2", "D3"])
        except OCRFailed:
            failed = True
        gc.collect()
        return failed

    assert asyncio.run(scenario()) is True
    assert reported == []


def test_empty_input_returns_empty_list():
    fetcher = DocumentFetcher(StubCMS(), StubOCR(), concurrency=2)
    assert asyncio.run(fetcher.fetch_all([])) == []


def test_type_label_includes_serie_number():
    doc = FetchedDocument(
        number="D1",
        text="",
        mime_type="application/pdf",
        metadata=DocumentMetadata(
            serie_name="Ofício", number="12", formatted_id="D1", access_link=""
        ),
    )
    assert doc.type_label == "Ofício 12"
