import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class MediaKind(str, Enum):
    IMAGE = "image"
    PDF = "pdf"
    VIDEO = "video"
    AUDIO = "audio"


class Job(SQLModel, table=True):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_external_id_created_at", "external_id", "created_at"),
        Index("ix_jobs_status_created_at", "status", "created_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    external_id: str                      # client-facing fileId, not unique
    display_name: str                     # original filename, for download headers
    source_path: str                      # where the uploaded input is stored
    media_kind: MediaKind
    status: JobStatus = Field(default=JobStatus.PENDING)
    options: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    result_path: Optional[str] = None
    original_size: int = 0
    compressed_size: Optional[int] = None
    error_message: Optional[str] = None
    created_at: float = Field(default_factory=time.time, index=True)
    updated_at: float = Field(default_factory=time.time)

    @property
    def compression_ratio(self) -> Optional[str]:
        """Percentage of bytes saved, e.g. "80.00%"; None until both sizes are known."""
        if not self.compressed_size or not self.original_size:
            return None
        return f"{(1 - self.compressed_size / self.original_size) * 100:.2f}%"
