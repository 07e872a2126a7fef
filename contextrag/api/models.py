# Request / response models for the HTTP surface

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from contextrag.services.worker_pool import JobPriority
from contextrag.shared.models import RetrievalOptions


class ContextRequest(BaseModel):
    query: str = Field(min_length=1)
    options: RetrievalOptions = Field(default_factory=RetrievalOptions)
    include_prompt: bool = False


class ContextResponse(BaseModel):
    window: Dict[str, Any]
    prompt_context: Optional[str] = None


class JobRequest(BaseModel):
    query: str = Field(min_length=1)
    options: RetrievalOptions = Field(default_factory=RetrievalOptions)
    priority: JobPriority = JobPriority.NORMAL


class JobAccepted(BaseModel):
    job_id: str
    state: str


class ClearCacheRequest(BaseModel):
    reason: str = ""


class CacheVersionResponse(BaseModel):
    version: int


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    cache_version: int
    degraded_services: List[str]
    workers: Dict[str, Any]


class ErrorResponse(BaseModel):
    error: str
    code: str
    details: Dict[str, Any] = Field(default_factory=dict)
