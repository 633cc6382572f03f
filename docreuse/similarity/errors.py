"""
Error taxonomy for the similarity pipeline.

Every error carries the document id, pipeline stage and underlying cause for
logs and traces. ``to_dict()`` is the user-facing rendering and never includes
stack traces or raw upstream messages.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional


class SimilarityError(Exception):
    """Base class for similarity search failures."""

    code = "similarity_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        document_id: Optional[str] = None,
        stage: Optional[str] = None,
        cause: Optional[BaseException] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.document_id = document_id
        self.stage = stage
        self.cause = cause
        if retryable is not None:
            self.retryable = retryable
        if cause is not None:
            self.__cause__ = cause

    def public_message(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.public_message(),
            "stage": self.stage,
            "document_id": self.document_id,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self.message!r}, "
            f"document_id={self.document_id!r}, stage={self.stage!r})"
        )


class ValidationError(SimilarityError):
    """Source document or request is not usable for a similarity search."""

    code = "validation_error"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        remediation: Optional[List[str]] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.remediation = list(remediation or [])

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["remediation"] = self.remediation
        return payload


class NotFoundError(SimilarityError):
    code = "not_found"
    status_code = 404


class UpstreamServiceError(SimilarityError):
    """Vector index or chunk store failure, surfaced after retries."""

    code = "upstream_unavailable"
    status_code = 503
    retryable = True

    def public_message(self) -> str:
        return "A search backend is temporarily unavailable. Please retry shortly."


class CircuitOpenError(UpstreamServiceError):
    """Raised without calling upstream while a circuit breaker is open."""

    code = "upstream_circuit_open"


class AbortedError(SimilarityError):
    """Search cancelled mid-pipeline; distinct from an empty result."""

    code = "aborted"
    status_code = 499


@dataclass
class PartialFailure:
    """One Stage 2 candidate that failed independently and was excluded."""

    document_id: str
    reason: str  # timeout, upstream, not_found, error
    error_type: str
    message: str
    stage: str = "stage2"

    @classmethod
    def from_exception(
        cls, document_id: str, reason: str, exc: BaseException
    ) -> "PartialFailure":
        if isinstance(exc, SimilarityError):
            message = exc.public_message()
        else:
            message = str(exc) or type(exc).__name__
        return cls(
            document_id=document_id,
            reason=reason,
            error_type=type(exc).__name__,
            message=message,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
