# HTTP request/response models

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SelectedSearchRequest(BaseModel):
    source_document_id: str = Field(..., min_length=1)
    target_document_ids: List[str] = Field(..., min_length=1)
    options: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    error: str
    message: str
    stage: Optional[str] = None
    document_id: Optional[str] = None
    retryable: bool = False
    remediation: Optional[List[str]] = None


# Health and Metrics Models


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    circuits: Dict[str, str] = Field(default_factory=dict)
    limiter: Dict[str, Any] = Field(default_factory=dict)
