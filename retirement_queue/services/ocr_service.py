"""
services/ocr_service.py

Text extraction through the Azure Document Intelligence REST API.

submit (POST analyze, 202 + Operation-Location) -> poll the operation until
it succeeds or fails. Polling has its own ceiling, independent of whatever
deadline the caller runs under.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

from retirement_queue.core.config import settings
from retirement_queue.utils.exceptions import OCRFailed, OCRProtocol, OCRTimeout

logger = logging.getLogger(__name__)


class OCRService:
    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        locale: Optional[str] = None,
        api_version: Optional[str] = None,
        model_id: Optional[str] = None,
        poll_interval: Optional[float] = None,
        poll_timeout: Optional[float] = None,
    ) -> None:
        self.endpoint = (endpoint or settings.OCR_ENDPOINT).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.OCR_API_KEY
        self.locale = locale or settings.OCR_LOCALE
        self.api_version = api_version or settings.OCR_API_VERSION
        self.model_id = model_id or settings.OCR_MODEL_ID
        self.poll_interval = poll_interval if poll_interval is not None else settings.OCR_POLL_INTERVAL_SECONDS
        self.poll_timeout = poll_timeout if poll_timeout is not None else settings.OCR_POLL_TIMEOUT_SECONDS
        self.http = http_client or httpx.AsyncClient(timeout=60.0)

    async def close(self) -> None:
        await self.http.aclose()

    @property
    def analyze_url(self) -> str:
        return f"{self.endpoint}/documentintelligence/documentModels/{self.model_id}:analyze"

    async def extract_text(self, content: bytes, mime_type: str) -> str:
        """Return the markdown content the OCR service extracted from ``content``."""
        res = await self.http.post(
            self.analyze_url,
            params={
                "locale": self.locale,
                "api-version": self.api_version,
                "outputContentFormat": "markdown",
            },
            content=content,
            headers={
                "Content-Type": mime_type or "application/octet-stream",
                "Ocp-Apim-Subscription-Key": self.api_key,
            },
        )
        if res.status_code != 202:
            raise OCRProtocol(f"analyze returned HTTP {res.status_code}: {res.text[:500]}")

        location = res.headers.get("Operation-Location")
        if not location:
            raise OCRProtocol("analyze response has no Operation-Location header")

        return await self._poll(location)

    async def _poll(self, location: str) -> str:
        try:
            async with asyncio.timeout(self.poll_timeout):
                while True:
                    await asyncio.sleep(self.poll_interval)
                    op = await self._operation_status(location)
                    status = op.get("status")
                    if status == "succeeded":
                        return (op.get("analyzeResult") or {}).get("content") or ""
                    if status == "failed":
                        error = (op.get("error") or {}).get("message", "unknown error")
                        raise OCRFailed(f"OCR analysis failed: {error}")
                    if status in ("running", "notStarted"):
                        continue
                    raise OCRProtocol(f"unexpected OCR operation status: {status!r}")
        except TimeoutError as e:
            raise OCRTimeout(f"OCR polling exceeded {self.poll_timeout:.0f}s") from e

    async def _operation_status(self, location: str) -> dict:
        res = await self.http.get(location, headers={"Ocp-Apim-Subscription-Key": self.api_key})
        if res.status_code != 200:
            raise OCRProtocol(f"operation status returned HTTP {res.status_code}")
        try:
            return res.json()
        except ValueError as e:
            raise OCRProtocol("operation status body is not JSON") from e
