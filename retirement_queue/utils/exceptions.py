"""
Custom exception classes

Plain domain errors. The HTTP edge maps them to status codes in main.py and
the analyze job maps them to queue outcomes; nothing else translates them.
"""
from typing import Any, Dict, List, Optional


class NotFoundError(Exception):
    """Raised when a lookup returns no row"""
    def __init__(self, entity: str, key: Any):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} {key} not found")


NotFound = NotFoundError


class ConflictError(Exception):
    """Raised when a unique column already holds the value"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class CaseNumberTaken(ConflictError):
    def __init__(self, number: str):
        self.number = number
        super().__init__(f"Case number {number} already registered")


class DocumentNumberTaken(ConflictError):
    def __init__(self, number: str):
        self.number = number
        super().__init__(f"Document number {number} already registered")


class RetirementCaseExists(ConflictError):
    def __init__(self, case_id: Any):
        self.case_id = case_id
        super().__init__(f"Retirement case for case {case_id} already exists")


class RemoteFault(Exception):
    """Fault returned by the case-management system"""
    def __init__(
        self,
        status: int,
        message: str,
        code: Optional[str] = None,
        detail: Optional[List[Dict[str, str]]] = None,
    ):
        self.status = status
        self.code = code
        self.message = message
        self.detail = detail or []
        super().__init__(f"CMS fault (HTTP {status}): {message}")


class OCRError(Exception):
    """Base for text-extraction failures"""


class OCRFailed(OCRError):
    """The OCR operation finished with status failed"""


class OCRTimeout(OCRError):
    """Polling exceeded its ceiling"""


class OCRProtocol(OCRError):
    """Unexpected HTTP status or operation status from the OCR service"""


class DocumentDownloadError(Exception):
    """Raised when a document binary cannot be downloaded"""
    def __init__(self, url: str, status: int):
        self.url = url
        self.status = status
        super().__init__(f"Download of {url} failed with HTTP {status}")


class CacheMiss(Exception):
    """Key absent or expired"""


class CacheError(Exception):
    """Cache transport or decode failure"""


class ClassifierError(Exception):
    """Raised when the AI classifier call fails"""


class InvalidVerdict(ClassifierError):
    """Classifier output is not a valid verdict"""


class JobCancel(Exception):
    """Returned by job work to drop the job without retrying"""
    def __init__(self, reason: Any):
        self.reason = reason
        super().__init__(str(reason))


class InvalidStatusTransition(ValueError):
    """Raised when a retirement case status change is not allowed"""
