"""
Exception types for the caption service.

Every error that can reach a caller carries a :class:`StatusCode`, so the
transport layer can map it to a response without inspecting the type.
"""

from enum import Enum
from typing import Optional


class StatusCode(str, Enum):
    """Coded error categories returned to callers."""

    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    INTERNAL = "INTERNAL"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    StatusCode.INVALID_ARGUMENT: 400,
    StatusCode.RESOURCE_EXHAUSTED: 429,
    StatusCode.INTERNAL: 500,
}


class CaptionServiceError(Exception):
    """Base exception for all caption service errors"""

    code: StatusCode = StatusCode.INTERNAL

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}


class ValidationError(CaptionServiceError):
    """Raised when a request is malformed (empty image, unknown model)"""

    code = StatusCode.INVALID_ARGUMENT


class ImageError(CaptionServiceError):
    """Raised when the uploaded bytes cannot be turned into an image"""

    code = StatusCode.INVALID_ARGUMENT


class UnsupportedFormat(ImageError):
    """Raised when the byte signature matches no known image format"""


class DecodeError(ImageError):
    """Raised when the signature is recognised but the payload is invalid"""


class ResourceExhausted(CaptionServiceError):
    """Raised when the admission gate cannot grant a permit"""

    code = StatusCode.RESOURCE_EXHAUSTED


class PayloadTooLarge(ResourceExhausted):
    """Raised when an image exceeds the inbound message size limit"""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Image of {size} bytes exceeds the {limit} byte limit")
        self.size = size
        self.limit = limit


class ProcessingFailure(CaptionServiceError):
    """Raised when tensor or model arithmetic fails for one request"""

    code = StatusCode.INTERNAL

    def __init__(self, message: str, model_id: Optional[str] = None):
        super().__init__(message)
        self.model_id = model_id


class TokenizerError(ProcessingFailure):
    """Raised when detokenization fails"""

    def __init__(self, reason: str):
        super().__init__(f"Tokenizer error: {reason}")
        self.reason = reason


class ModelNotLoaded(CaptionServiceError):
    """Raised when a model variant is missing from the registry"""

    def __init__(self, model_id: str):
        super().__init__(f"Model not loaded: {model_id}")
        self.model_id = model_id


class RegistryError(CaptionServiceError):
    """Raised at startup when the model registry is incomplete"""


class CatalogError(CaptionServiceError):
    """Raised at startup when a catalog entry cannot be resolved"""

    def __init__(self, repository: str, reason: str):
        super().__init__(f"Failed to resolve {repository}: {reason}")
        self.repository = repository
        self.reason = reason
