"""
analyze:case job.

Maps analysis errors to queue outcomes:
  case missing                  -> cancel, nothing touched
  any other error or timeout    -> case back to PENDING, retry
  failure on the final attempt  -> case FAILURE, cancel

Failures reach ``on_failure`` through the worker, so timeouts and jobs
rescued from a dead worker roll the case back the same way.
"""
from __future__ import annotations

import uuid

from retirement_queue.core.logger import logger
from retirement_queue.db.models import ProcessingStatus
from retirement_queue.services.analysis_service import AnalysisService
from retirement_queue.services.job_queue import AnalyzeCaseArgs, JobContext, JobWorker
from retirement_queue.utils.exceptions import JobCancel, NotFoundError


class AnalyzeCaseJob:
    kind = AnalyzeCaseArgs.kind

    def __init__(self, analysis: AnalysisService):
        self.analysis = analysis

    async def __call__(self, ctx: JobContext) -> None:
        case_id = uuid.UUID(str(ctx.args["case_id"]))
        try:
            self.analysis.get_case(case_id)
            await self.analysis.analyze(case_id)
        except NotFoundError as e:
            if e.entity == "Case":
                raise JobCancel(f"case {case_id} no longer exists") from e
            raise

    def on_failure(self, ctx: JobContext, error: BaseException) -> None:
        case_id = uuid.UUID(str(ctx.args["case_id"]))
        if ctx.is_final_attempt:
            logger.error(f"Analysis of case {case_id} failed for good: {error!r}")
            self.analysis.set_status(case_id, ProcessingStatus.FAILURE)
            raise JobCancel(error) from error
        logger.warning(f"Analysis of case {case_id} failed (attempt {ctx.attempt}): {error!r}")
        self.analysis.set_status(case_id, ProcessingStatus.PENDING)


def register_analysis_jobs(worker: JobWorker, analysis: AnalysisService) -> None:
    job = AnalyzeCaseJob(analysis)
    worker.register(job.kind, job)
