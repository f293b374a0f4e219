"""
services/classifier_service.py

AI classifier: documents of a case -> retirement Verdict.

BedrockClassifier renders the documents into a prompt, calls Anthropic on
Bedrock and validates the first JSON object in the reply. Verdicts can be
cached by a hash of the documents, since the classifier has no side effects.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import re
from typing import Any, Optional, Protocol, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from retirement_queue.core.config import settings
from retirement_queue.core.logger import logger
from retirement_queue.db.models import Document
from retirement_queue.db.schemas import Verdict
from retirement_queue.services.cache_service import Cache, SingleFlight, remember_json
from retirement_queue.utils.exceptions import ClassifierError, InvalidVerdict

VERDICT_CACHE_KEY = "classifier:verdicts:{digest}"

DEFAULT_PROMPT = """<task>
Decide whether the documents below form a complete retirement request from a public servant
and extract its data. A complete request contains the requester's birth date and national id
(CPF). Things that indicate a complete request: a retirement application, a disability or
compulsory retirement medical report, service time counts, pension calculations, personal
data of the requesting servant.
</task>

<context>
Cases that only hold part of a retirement file (only a pension calculation, only a data
correction) or mention several requesters at once are document attachments, not retirement
requests: answer false for them.
The request date is the date the servant filed the request, not a publication date.
invalidity is true only when a medical report indicates retirement due to disability.
judicial is true when the process was started by a court order.
Always return the most recent data found; small corrections happen along the case.
</context>

<output>
Return STRICT JSON only, no markdown, with exactly these keys:
{{"is_retirement": bool, "requester_id": "digits only", "request_date": "YYYY-MM-DD",
"birth_date": "YYYY-MM-DD", "judicial": bool, "invalidity": bool,
"diligence_responsible_id": "digits only or null"}}
</output>

<documents>
{documents}
</documents>
"""


class Classifier(Protocol):
    async def classify(self, documents: Sequence[Document]) -> Verdict: ...


def render_documents(documents: Sequence[Document]) -> str:
    blocks = []
    for doc in documents:
        meta = doc.raw_metadata or {}
        signatures = "\n".join(
            f"    - {s.get('name', '')} ({s.get('id', '')})" for s in meta.get("signatures") or []
        )
        blocks.append(
            "<document>\n"
            f"  Type: {doc.type}\n"
            f"  Date: {meta.get('date', '')}\n"
            f"  Signatures:\n{signatures}\n"
            f"  Content:\n{doc.content}\n"
            "</document>"
        )
    return "\n".join(blocks)


def documents_digest(documents: Sequence[Document]) -> str:
    h = hashlib.sha256()
    for doc in documents:
        h.update(doc.number.encode("utf-8"))
        h.update(b"\x00")
        h.update((doc.content or "").encode("utf-8"))
        h.update(b"\x00")
    return h.hexdigest()


def parse_verdict(text: str) -> Verdict:
    m = re.search(r"\{.*\}", text or "", re.DOTALL)
    if not m:
        raise InvalidVerdict("classifier response does not contain a JSON object")
    try:
        data = json.loads(m.group(0))
    except json.JSONDecodeError as e:
        raise InvalidVerdict(f"classifier JSON is malformed: {e}") from e
    if not isinstance(data, dict):
        raise InvalidVerdict("classifier JSON is not an object")
    try:
        return Verdict.model_validate(data)
    except ValidationError as e:
        raise InvalidVerdict(f"classifier verdict is invalid: {e}") from e


class BedrockClassifier:
    def __init__(
        self,
        client: Any = None,
        model_id: Optional[str] = None,
        prompt_template: str = DEFAULT_PROMPT,
        cache: Optional[Cache] = None,
        flight: Optional[SingleFlight] = None,
        cache_ttl: Optional[float] = None,
    ) -> None:
        self.model = (model_id or settings.CLASSIFIER_MODEL_ID).strip()
        self.max_tokens = settings.CLASSIFIER_MAX_TOKENS
        self.prompt_template = prompt_template
        self.cache = cache
        self.flight = flight or SingleFlight()
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.CLASSIFIER_CACHE_TTL_HOURS * 3600
        self.client = client or boto3.client(
            "bedrock-runtime",
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
        )

    def build_prompt(self, documents: Sequence[Document]) -> str:
        return self.prompt_template.format(documents=render_documents(documents))

    def _invoke_bedrock(self, prompt: str) -> str:
        payload = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": self.max_tokens,
            "temperature": 0,
            "messages": [{"role": "user", "content": prompt}],
        }
        try:
            response = self.client.invoke_model(modelId=self.model, body=json.dumps(payload))
            data = json.loads(response["body"].read())
        except (BotoCoreError, ClientError) as e:
            raise ClassifierError(f"Bedrock invocation failed: {e}") from e

        text = ""
        for part in data.get("content", []):
            if isinstance(part, dict) and part.get("type") == "text":
                text += part.get("text", "")
        return text

    async def _classify_uncached(self, documents: Sequence[Document]) -> Verdict:
        prompt = self.build_prompt(documents)
        text = await asyncio.to_thread(self._invoke_bedrock, prompt)
        verdict = parse_verdict(text)
        logger.info(
            f"Classified {len(documents)} documents: is_retirement={verdict.is_retirement}"
        )
        return verdict

    async def classify(self, documents: Sequence[Document]) -> Verdict:
        if self.cache is None:
            return await self._classify_uncached(documents)

        async def load() -> dict:
            verdict = await self._classify_uncached(documents)
            return verdict.model_dump()

        key = VERDICT_CACHE_KEY.format(digest=documents_digest(documents))
        data = await remember_json(self.cache, self.flight, key, self.cache_ttl, load)
        return Verdict.model_validate(data)
