"""
Service wiring.

Everything is built once at startup and passed explicitly; tests build the
same graph with fakes for the external collaborators.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from retirement_queue.core.config import settings
from retirement_queue.db.database import SessionLocal
from retirement_queue.db.store import Store
from retirement_queue.jobs.analyze_case_job import register_analysis_jobs
from retirement_queue.services.analysis_service import AnalysisService
from retirement_queue.services.cache_service import Cache, SingleFlight, build_cache
from retirement_queue.services.classifier_service import BedrockClassifier, Classifier
from retirement_queue.services.cms_client import CMSClient
from retirement_queue.services.datalake_service import DataLakeService
from retirement_queue.services.document_fetcher import DocumentFetcher
from retirement_queue.services.job_queue import JobQueue, JobWorker
from retirement_queue.services.ocr_service import OCRService
from retirement_queue.services.retirement_service import RetirementHook, RetirementService


@dataclass
class Services:
    session_factory: sessionmaker
    cache: Any
    flight: SingleFlight
    store: Store
    queue: JobQueue
    worker: JobWorker
    cms: CMSClient
    ocr: OCRService
    fetcher: DocumentFetcher
    classifier: Classifier
    analysis: AnalysisService
    retirement: RetirementService
    datalake: DataLakeService

    async def aclose(self) -> None:
        await self.cms.close()
        await self.ocr.close()
        close = getattr(self.cache, "close", None)
        if close is not None:
            await close()


def build_services(
    session_factory: Optional[sessionmaker] = None,
    cache: Optional[Cache] = None,
    cms_http: Optional[httpx.AsyncClient] = None,
    ocr_http: Optional[httpx.AsyncClient] = None,
    classifier: Optional[Classifier] = None,
    datalake_engine: Optional[Engine] = None,
    ocr_poll_interval: Optional[float] = None,
    worker_max_workers: Optional[int] = None,
) -> Services:
    session_factory = session_factory or SessionLocal
    cache = cache or build_cache(
        settings.CACHE_BACKEND, settings.REDIS_URL, settings.CACHE_SWEEP_INTERVAL_SECONDS
    )
    flight = SingleFlight()
    store = Store(session_factory)
    queue = JobQueue(session_factory)
    worker = JobWorker(session_factory, max_workers=worker_max_workers)

    cms = CMSClient(cache, flight, http_client=cms_http)
    ocr = OCRService(http_client=ocr_http, poll_interval=ocr_poll_interval)
    fetcher = DocumentFetcher(cms, ocr)
    classifier = classifier or BedrockClassifier(cache=cache, flight=flight)

    analysis = AnalysisService(store, queue, cms, fetcher, classifier)
    analysis.register_hook(RetirementHook(store))
    register_analysis_jobs(worker, analysis)

    return Services(
        session_factory=session_factory,
        cache=cache,
        flight=flight,
        store=store,
        queue=queue,
        worker=worker,
        cms=cms,
        ocr=ocr,
        fetcher=fetcher,
        classifier=classifier,
        analysis=analysis,
        retirement=RetirementService(store),
        datalake=DataLakeService(cache, flight, engine=datalake_engine),
    )
