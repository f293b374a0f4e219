"""
services/cms_client.py

Read-only client for the external case-management system (CMS).

Structured operations go through SOAP 1.1 envelopes POSTed to the CMS web
service; the document list of a case is scraped from its public access page.
Responses are matched on local element names only, so namespaces and
fields we do not know about are ignored.
"""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx
from bs4 import BeautifulSoup

from retirement_queue.core.config import settings
from retirement_queue.services.cache_service import Cache, SingleFlight, remember_json
from retirement_queue.utils.exceptions import DocumentDownloadError, RemoteFault

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SERVICE_NS = "Sei"

UNITS_CACHE_KEY = "cms:units"
UNITS_CACHE_TTL = 24 * 60 * 60
DOCUMENT_CACHE_KEY = "cms:documents:{number}"
DOCUMENT_CACHE_TTL = 12 * 60 * 60


@dataclass
class Unit:
    id: str
    abbrev: str
    description: str = ""


@dataclass
class ResolvedCase:
    access_link: str
    unit: Unit
    formatted_number: str = ""


@dataclass
class DocumentRow:
    number: str
    link: str
    type: str
    date: str
    unit: str


@dataclass
class Signature:
    name: str
    id: str
    role: str = ""
    signed_at: str = ""


@dataclass
class DocumentMetadata:
    serie_name: str
    number: str
    formatted_id: str
    access_link: str
    unit_abbrev: str = ""
    date: str = ""
    description: str = ""
    signatures: List[Signature] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentMetadata":
        sigs = [Signature(**s) for s in data.get("signatures") or []]
        return cls(**{**data, "signatures": sigs})


# ============================================================================
# XML helpers
# ============================================================================

def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _child(el: Optional[ET.Element], name: str) -> Optional[ET.Element]:
    if el is None:
        return None
    for c in el:
        if _local(c.tag) == name:
            return c
    return None


def _children(el: Optional[ET.Element], name: str) -> List[ET.Element]:
    if el is None:
        return []
    return [c for c in el if _local(c.tag) == name]


def _text(el: Optional[ET.Element], name: str) -> str:
    c = _child(el, name)
    return (c.text or "").strip() if c is not None else ""


def _find_anywhere(root: ET.Element, name: str) -> Optional[ET.Element]:
    for el in root.iter():
        if _local(el.tag) == name:
            return el
    return None


def build_envelope(operation: str, params: Dict[str, str]) -> bytes:
    ET.register_namespace("soapenv", SOAP_ENV_NS)
    envelope = ET.Element(f"{{{SOAP_ENV_NS}}}Envelope")
    body = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    op = ET.SubElement(body, f"{{{SERVICE_NS}}}{operation}")
    for key, value in params.items():
        ET.SubElement(op, key).text = value
    return ET.tostring(envelope, encoding="utf-8", xml_declaration=True)


def parse_fault(status: int, body: bytes) -> RemoteFault:
    """Turn a non-200 SOAP response into a RemoteFault."""
    raw = body.decode("utf-8", errors="replace")
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return RemoteFault(status=status, message=raw.strip()[:500] or "empty response")

    fault = _find_anywhere(root, "Fault")
    if fault is None:
        return RemoteFault(status=status, message=raw.strip()[:500])

    detail = [
        {"key": _text(item, "key"), "value": _text(item, "value")}
        for item in _children(_child(fault, "detail"), "item")
    ]
    return RemoteFault(
        status=status,
        code=_text(fault, "faultcode") or None,
        message=_text(fault, "faultstring"),
        detail=detail,
    )


# ============================================================================
# Client
# ============================================================================

class CMSClient:
    def __init__(
        self,
        cache: Cache,
        flight: SingleFlight,
        http_client: Optional[httpx.AsyncClient] = None,
        url: Optional[str] = None,
        system_acronym: Optional[str] = None,
        service_id: Optional[str] = None,
        unit_prefix: Optional[str] = None,
    ) -> None:
        self.url = url or settings.CMS_URL
        self.system_acronym = system_acronym if system_acronym is not None else settings.CMS_SYSTEM_ACRONYM
        self.service_id = service_id if service_id is not None else settings.CMS_SERVICE_ID
        self.unit_prefix = unit_prefix if unit_prefix is not None else settings.CMS_ANALYST_UNIT_PREFIX
        self.cache = cache
        self.flight = flight
        self.http = http_client or httpx.AsyncClient(
            timeout=float(settings.CMS_TIMEOUT_SECONDS), follow_redirects=True
        )

    @property
    def base_url(self) -> str:
        url = (self.url or "").rstrip("/")
        suffix = "/ws/SeiWS.php"
        return url[: -len(suffix)] if url.endswith(suffix) else url

    async def close(self) -> None:
        await self.http.aclose()

    async def _call(self, operation: str, **params: str) -> ET.Element:
        payload = {
            "SiglaSistema": self.system_acronym,
            "IdentificacaoServico": self.service_id,
            **params,
        }
        res = await self.http.post(
            self.url,
            content=build_envelope(operation, payload),
            headers={
                "Content-Type": "text/xml; charset=utf-8",
                "SOAPAction": f'"{SERVICE_NS}#{operation}"',
            },
        )
        if res.status_code != 200:
            raise parse_fault(res.status_code, res.content)

        try:
            root = ET.fromstring(res.content)
        except ET.ParseError as e:
            raise RemoteFault(status=res.status_code, message=f"malformed {operation} response: {e}") from e

        response = _find_anywhere(root, f"{operation}Response")
        params_el = _child(response, "parametros") if response is not None else None
        if params_el is None:
            raise RemoteFault(status=res.status_code, message=f"{operation} response has no parametros")
        return params_el

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def resolve_case(self, number: str) -> ResolvedCase:
        """Look up a case by number: access link and generating unit."""
        p = await self._call(
            "consultarProcedimento",
            ProtocoloProcedimento=number,
            SinRetornarAndamentoGeracao="S",
        )
        unit_el = _child(_child(p, "AndamentoGeracao"), "Unidade")
        return ResolvedCase(
            access_link=_text(p, "LinkAcesso"),
            unit=Unit(
                id=_text(unit_el, "IdUnidade"),
                abbrev=_text(unit_el, "Sigla"),
                description=_text(unit_el, "Descricao"),
            ),
            formatted_number=_text(p, "ProcedimentoFormatado") or number,
        )

    async def list_documents(self, access_link: str) -> List[DocumentRow]:
        """Scrape the document table of a case's public access page."""
        res = await self.http.get(access_link)
        res.raise_for_status()
        html = res.content.decode("iso-8859-1")
        soup = BeautifulSoup(html, "html.parser")

        rows: List[DocumentRow] = []
        for i, tr in enumerate(soup.select("#tblDocumentos tr")):
            if i == 0:
                continue
            cells = tr.find_all("td")
            if len(cells) < 5:
                continue
            link = cells[1].find("a")
            if link is None or not link.get("href"):
                continue
            rows.append(
                DocumentRow(
                    number=link.get_text(strip=True),
                    link=f"{self.base_url}/{link['href'].lstrip('/')}",
                    type=cells[2].get_text(strip=True),
                    date=cells[3].get_text(strip=True),
                    unit=cells[4].get_text(strip=True),
                )
            )
        return rows

    async def _fetch_document_metadata(self, number: str) -> Dict[str, Any]:
        p = await self._call(
            "consultarDocumento",
            ProtocoloDocumento=number,
            SinRetornarAssinaturas="S",
        )
        signatures = [
            Signature(
                name=_text(item, "Nome"),
                id=_text(item, "IdUsuario"),
                role=_text(item, "CargoFuncao"),
                signed_at=_text(item, "DataHora"),
            )
            for item in _children(_child(p, "Assinaturas"), "item")
        ]
        meta = DocumentMetadata(
            serie_name=_text(_child(p, "Serie"), "Nome"),
            number=_text(p, "Numero"),
            formatted_id=_text(p, "DocumentoFormatado"),
            access_link=_text(p, "LinkAcesso"),
            unit_abbrev=_text(_child(p, "UnidadeElaboradora"), "Sigla"),
            date=_text(p, "Data"),
            description=_text(p, "Descricao"),
            signatures=signatures,
        )
        return meta.to_dict()

    async def fetch_document_metadata(self, number: str) -> DocumentMetadata:
        data = await remember_json(
            self.cache,
            self.flight,
            DOCUMENT_CACHE_KEY.format(number=number),
            DOCUMENT_CACHE_TTL,
            lambda: self._fetch_document_metadata(number),
        )
        return DocumentMetadata.from_dict(data)

    async def _list_all_units(self) -> List[Dict[str, Any]]:
        p = await self._call("listarUnidades")
        return [
            asdict(
                Unit(
                    id=_text(item, "IdUnidade"),
                    abbrev=_text(item, "Sigla"),
                    description=_text(item, "Descricao"),
                )
            )
            for item in _children(p, "item")
        ]

    async def list_units(self) -> List[Unit]:
        """Units reserved to retirement analysts (prefix + two-digit suffix)."""
        data = await remember_json(
            self.cache, self.flight, UNITS_CACHE_KEY, UNITS_CACHE_TTL, self._list_all_units
        )
        prefix = self.unit_prefix
        return [
            Unit(**u)
            for u in data
            if u["abbrev"].startswith(prefix) and len(u["abbrev"]) == len(prefix) + 2
        ]

    async def download(self, link: str) -> Tuple[bytes, str]:
        """GET a document binary; returns (content, content type)."""
        res = await self.http.get(link)
        if not res.is_success:
            raise DocumentDownloadError(link, res.status_code)
        return res.content, res.headers.get("content-type", "application/octet-stream")
