from __future__ import annotations

import xml.etree.ElementTree as ET
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest

from retirement_queue.core.config import settings
from retirement_queue.db.database import create_db_engine, init_db, make_session_factory
from retirement_queue.db.schemas import Verdict
from retirement_queue.db.store import Store
from retirement_queue.services.cache_service import MemoryCache
from retirement_queue.services.container import build_services

CMS_URL = "https://cms.test/sei/ws/SeiWS.php"
CMS_BASE = "https://cms.test/sei"
OCR_ENDPOINT = "https://ocr.test"


# ============================================================================
# Database
# ============================================================================

@pytest.fixture()
def engine(tmp_path: Path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def store(session_factory) -> Store:
    return Store(session_factory)


# ============================================================================
# Fake CMS + OCR over httpx.MockTransport
# ============================================================================

def _soap_response(operation: str, inner: str) -> bytes:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/" xmlns:ns1="Sei">'
        f"<SOAP-ENV:Body><ns1:{operation}Response><parametros>{inner}</parametros>"
        f"</ns1:{operation}Response></SOAP-ENV:Body></SOAP-ENV:Envelope>"
    ).encode("utf-8")


def soap_fault(message: str, code: str = "SOAP-ENV:Server", detail: Optional[Dict[str, str]] = None) -> bytes:
    items = "".join(
        f"<item><key>{k}</key><value>{v}</value></item>" for k, v in (detail or {}).items()
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/">'
        "<SOAP-ENV:Body><SOAP-ENV:Fault>"
        f"<faultcode>{code}</faultcode><faultstring>{message}</faultstring>"
        f"<detail>{items}</detail>"
        "</SOAP-ENV:Fault></SOAP-ENV:Body></SOAP-ENV:Envelope>"
    ).encode("utf-8")


@dataclass
class FakeDocument:
    number: str
    text: str
    serie: str = "Requerimento"
    serie_number: str = ""
    unit: str = "AP/01"
    mime_type: str = "application/pdf"
    fault: bool = False


@dataclass
class FakeCase:
    number: str
    unit_id: str
    unit_abbrev: str
    documents: List[str] = field(default_factory=list)

    @property
    def access_link(self) -> str:
        return f"{CMS_BASE}/processo_acesso_externo.php?case={self.number}"


class FakeBackends:
    """In-memory CMS and OCR service answering through one MockTransport."""

    def __init__(self):
        self.cases: Dict[str, FakeCase] = {}
        self.documents: Dict[str, FakeDocument] = {}
        self.units: List[tuple] = []
        self.ocr_mode = "succeeded"
        self.ocr_running_polls = 0
        self.calls: Counter = Counter()
        self.requests: List[httpx.Request] = []
        self._polls: Counter = Counter()

    # -- setup ---------------------------------------------------------------

    def add_case(self, number: str, unit_id: str = "100", unit_abbrev: str = "AP/01") -> FakeCase:
        case = FakeCase(number=number, unit_id=unit_id, unit_abbrev=unit_abbrev)
        self.cases[number] = case
        return case

    def add_document(self, case_number: str, number: str, text: str, **kwargs) -> FakeDocument:
        doc = FakeDocument(number=number, text=text, **kwargs)
        self.documents[number] = doc
        self.cases[case_number].documents.append(number)
        return doc

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport())

    # -- dispatch ------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = request.url
        if url.host == "ocr.test":
            return self._ocr(request)
        if request.method == "POST" and url.path.endswith("/ws/SeiWS.php"):
            return self._soap(request)
        if url.path.endswith("/processo_acesso_externo.php"):
            return self._access_page(url.params.get("case"))
        if url.path.startswith("/sei/download/"):
            number = url.path.rsplit("/", 1)[-1]
            self.calls["download"] += 1
            doc = self.documents.get(number)
            if doc is None:
                return httpx.Response(404, text="missing")
            return httpx.Response(
                200,
                content=f"binary:{number}".encode("utf-8"),
                headers={"content-type": doc.mime_type},
            )
        return httpx.Response(404, text="unknown route")

    def _soap(self, request: httpx.Request) -> httpx.Response:
        root = ET.fromstring(request.content)
        body = next(el for el in root if el.tag.endswith("Body"))
        op_el = body[0]
        operation = op_el.tag.rsplit("}", 1)[-1]
        params = {c.tag: (c.text or "") for c in op_el}
        self.calls[operation] += 1

        if operation == "consultarProcedimento":
            case = self.cases.get(params["ProtocoloProcedimento"])
            if case is None:
                return httpx.Response(500, content=soap_fault("Processo nao encontrado"))
            inner = (
                f"<IdProcedimento>1</IdProcedimento>"
                f"<ProcedimentoFormatado>{case.number}</ProcedimentoFormatado>"
                f"<LinkAcesso>{case.access_link.replace('&', '&amp;')}</LinkAcesso>"
                f"<AndamentoGeracao><Descricao>Gerado</Descricao><Unidade>"
                f"<IdUnidade>{case.unit_id}</IdUnidade><Sigla>{case.unit_abbrev}</Sigla>"
                f"<Descricao>Unidade</Descricao></Unidade></AndamentoGeracao>"
            )
            return httpx.Response(200, content=_soap_response(operation, inner))

        if operation == "consultarDocumento":
            doc = self.documents.get(params["ProtocoloDocumento"])
            if doc is None or doc.fault:
                return httpx.Response(
                    500,
                    content=soap_fault("Documento nao encontrado", detail={"protocolo": params["ProtocoloDocumento"]}),
                )
            inner = (
                f"<IdDocumento>{doc.number}</IdDocumento>"
                f"<DocumentoFormatado>{doc.number}</DocumentoFormatado>"
                f"<LinkAcesso>{CMS_BASE}/download/{doc.number}</LinkAcesso>"
                f"<Serie><IdSerie>1</IdSerie><Nome>{doc.serie}</Nome></Serie>"
                f"<Numero>{doc.serie_number}</Numero>"
                f"<Data>01/01/2025</Data>"
                f"<UnidadeElaboradora><IdUnidade>1</IdUnidade><Sigla>{doc.unit}</Sigla></UnidadeElaboradora>"
                f"<Assinaturas><item><Nome>Maria Silva</Nome><IdUsuario>42</IdUsuario>"
                f"<CargoFuncao>Servidora</CargoFuncao></item></Assinaturas>"
            )
            return httpx.Response(200, content=_soap_response(operation, inner))

        if operation == "listarUnidades":
            inner = "".join(
                f"<item><IdUnidade>{uid}</IdUnidade><Sigla>{abbrev}</Sigla><Descricao>{abbrev}</Descricao></item>"
                for uid, abbrev in self.units
            )
            return httpx.Response(200, content=_soap_response(operation, inner))

        return httpx.Response(500, content=soap_fault(f"unknown operation {operation}"))

    def _access_page(self, number: Optional[str]) -> httpx.Response:
        self.calls["access_page"] += 1
        case = self.cases.get(number or "")
        if case is None:
            return httpx.Response(404, text="not found")
        rows = "".join(
            "<tr>"
            f'<td><input type="checkbox" value="{n}"/></td>'
            f'<td><a href="controlador.php?acao=documento&amp;id={n}">{n}</a></td>'
            f"<td>{self.documents[n].serie}</td>"
            "<td>01/01/2025</td>"
            f"<td>{self.documents[n].unit}</td>"
            "</tr>"
            for n in case.documents
        )
        html = (
            "<html><body><table id='tblDocumentos'>"
            "<tr><th></th><th>Documento</th><th>Tipo</th><th>Data</th><th>Unidade</th></tr>"
            f"{rows}</table><p>Requisição</p></body></html>"
        )
        return httpx.Response(200, content=html.encode("iso-8859-1"))

    def _ocr(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            self.calls["ocr_submit"] += 1
            number = request.content.decode("utf-8").split(":", 1)[1]
            return httpx.Response(
                202, headers={"Operation-Location": f"{OCR_ENDPOINT}/operations/{number}"}
            )
        number = request.url.path.rsplit("/", 1)[-1]
        self._polls[number] += 1
        if self.ocr_mode == "running" or self._polls[number] <= self.ocr_running_polls:
            return httpx.Response(200, json={"status": "running"})
        if self.ocr_mode == "failed":
            return httpx.Response(200, json={"status": "failed", "error": {"message": "bad scan"}})
        return httpx.Response(
            200,
            json={"status": "succeeded", "analyzeResult": {"content": self.documents[number].text}},
        )


class FakeClassifier:
    def __init__(self, verdict: Optional[dict] = None):
        self.verdict = verdict or positive_verdict()
        self.calls: List[List[str]] = []

    async def classify(self, documents) -> Verdict:
        self.calls.append([d.number for d in documents])
        return Verdict.model_validate(self.verdict)


def positive_verdict(**overrides) -> dict:
    verdict = {
        "is_retirement": True,
        "requester_id": "123.456.789-00",
        "birth_date": "1955-01-01",
        "request_date": "2025-01-01",
        "judicial": False,
        "invalidity": True,
    }
    verdict.update(overrides)
    return verdict


@pytest.fixture()
def fake() -> FakeBackends:
    return FakeBackends()


@pytest.fixture()
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture()
def services(monkeypatch, session_factory, fake, classifier):
    monkeypatch.setattr(settings, "CMS_URL", CMS_URL)
    monkeypatch.setattr(settings, "OCR_ENDPOINT", OCR_ENDPOINT)
    monkeypatch.setattr(settings, "OCR_POLL_TIMEOUT_SECONDS", 2.0)
    return build_services(
        session_factory=session_factory,
        cache=MemoryCache(),
        cms_http=fake.client(),
        ocr_http=fake.client(),
        classifier=classifier,
        ocr_poll_interval=0.0,
        worker_max_workers=1,
    )
