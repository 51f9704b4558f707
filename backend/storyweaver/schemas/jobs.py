from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BatchItem(BaseModel):
    id: str = Field(..., min_length=1)
    prompt: Optional[str] = None
    description: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)

    def resolved_prompt(self) -> str:
        return (self.prompt or self.description or "").strip()


class ImageJobCreate(BaseModel):
    prompt: str = ""
    style: Optional[str] = None
    references: Dict[str, str] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    priority: int = 0


class BatchJobCreate(BaseModel):
    items: List[BatchItem] = Field(default_factory=list)
    style: Optional[str] = None
    references: Dict[str, str] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0


class GenerateRequest(BaseModel):
    prompt: str = ""
    style: Optional[str] = None
    references: Dict[str, str] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)


class JobResponse(BaseModel):
    job_id: str
    status: str


class BatchJobResponse(BaseModel):
    job_ids: List[str]
    total: int
    skipped: List[str] = Field(default_factory=list)


class JobPayloadEcho(BaseModel):
    prompt: Optional[str] = None
    style: Optional[str] = None
    correlation_id: Optional[str] = None


class JobRecord(BaseModel):
    job_id: str
    type: str
    status: str
    priority: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    retry_count: int
    max_retries: int
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    payload: JobPayloadEcho

    @classmethod
    def from_job(cls, job: Dict[str, Any]) -> "JobRecord":
        # The stored payload may carry the caller's api key; never echo it.
        payload = job.get("payload") or {}
        return cls(
            job_id=job["job_id"],
            type=job["type"],
            status=job["status"],
            priority=job["priority"],
            result=job["result"],
            error=job["error"],
            retry_count=job["retry_count"],
            max_retries=job["max_retries"],
            created_at=job["created_at"],
            updated_at=job["updated_at"],
            started_at=job["started_at"],
            completed_at=job["completed_at"],
            payload=JobPayloadEcho(
                prompt=payload.get("prompt"),
                style=payload.get("style"),
                correlation_id=payload.get("correlation_id"),
            ),
        )


class JobList(BaseModel):
    jobs: List[JobRecord]
