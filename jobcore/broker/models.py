import time
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class CustomBaseModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class QueueName(str, Enum):
    """Workload classes, one queue each."""

    VIDEO = "video"
    DOCUMENT = "document"
    AI = "ai"

    def __str__(self):
        return self.value


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"

    def __str__(self):
        return self.value


class BackoffKind(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"

    def __str__(self):
        return self.value


class BackoffPolicy(CustomBaseModel):
    kind: BackoffKind = BackoffKind.EXPONENTIAL
    delay_ms: int = Field(default=2000, ge=0)


#
#  PAYLOADS
#
class AITaskType(str, Enum):
    EMBEDDING = "embedding"
    ANALYSIS = "analysis"
    MATCHING = "matching"

    def __str__(self):
        return self.value


class VideoProcessingPayload(CustomBaseModel):
    """A recorded video introduction waiting to be transcoded."""

    kind: Literal["video"] = "video"
    user_id: str = Field(min_length=1)
    storage_path: str = Field(min_length=1)
    file_name: str = Field(min_length=1)
    original_size: int = Field(ge=0)
    content_type: Optional[str] = None


class DocumentProcessingPayload(CustomBaseModel):
    """An uploaded resume or other document waiting to be parsed."""

    kind: Literal["document"] = "document"
    user_id: str = Field(min_length=1)
    storage_path: str = Field(min_length=1)
    file_name: str = Field(min_length=1)
    file_type: str = Field(min_length=1)
    original_size: int = Field(ge=0)


class AIProcessingPayload(CustomBaseModel):
    """Text handed to the inference service for embedding, analysis or matching."""

    kind: Literal["ai"] = "ai"
    user_id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    task: AITaskType
    metadata: Dict[str, Any] = Field(default_factory=dict)


JobPayload = Annotated[
    Union[VideoProcessingPayload, DocumentProcessingPayload, AIProcessingPayload],
    Field(discriminator="kind"),
]

payload_adapter: TypeAdapter = TypeAdapter(JobPayload)


#
#  JOBS
#
class JobOptions(CustomBaseModel):
    """Per-job options fixed at enqueue time."""

    priority: int = 0
    delay_ms: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    keep_completed: int = Field(default=10, ge=0)
    keep_failed: int = Field(default=50, ge=0)


class JobRecord(CustomBaseModel):
    id: str
    queue_name: QueueName
    payload: JobPayload
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    status: JobState = JobState.WAITING
    enqueued_at: int
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    result: Optional[Any] = None
    failure_reason: Optional[str] = None
    progress: int = 0
    stalled_count: int = 0
    delay_until: Optional[int] = None
    keep_completed: int = 10
    keep_failed: int = 50


class QueueCounts(CustomBaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def to_dict(self) -> Dict[str, int]:
        return {**self.model_dump(), "total": self.total}


class StalledResult(CustomBaseModel):
    """Outcome of one stall-detection pass over a queue."""

    requeued: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)


STALLED_FAILURE_REASON = "job stalled more than allowable limit"
