from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Operation(str, Enum):
    OUTLINE = "outline"
    SCRIPT = "script"
    IMAGE_PROMPTS = "image-prompts"
    CONTENT_ANALYSIS = "content-analysis"
    VEO3_PROMPTS = "veo3-prompts"


class CallStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ModelConfig(BaseModel):
    id: str
    model_id: str  # provider model name, e.g. "gemini-2.5-flash"
    display_name: str = ""
    api_key: Optional[str] = None
    rpm: int = 0  # requests per minute
    tpm: int = 0  # tokens per minute
    rpd: int = 0  # requests per day
    priority: int = 0  # lower is tried first
    enabled: bool = True
    current_minute_requests: int = 0
    current_minute_tokens: int = 0
    current_day_requests: int = 0
    last_reset_minute: Optional[datetime] = None
    last_reset_day: Optional[datetime] = None
    user_id: Optional[str] = None  # None = global scope

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "ModelConfig":
        data = {k: v for k, v in doc.items() if k != "_id"}
        data["id"] = str(doc["_id"])
        return cls(**data)

    def to_doc(self) -> Dict[str, Any]:
        doc = self.model_dump(exclude={"id"})
        doc["_id"] = self.id
        return doc

    def has_headroom(self) -> bool:
        return self.current_minute_requests < self.rpm and self.current_day_requests < self.rpd


class CallLog(BaseModel):
    id: str
    operation: Operation
    status: CallStatus = CallStatus.PENDING
    model_id: Optional[str] = None
    user_id: Optional[str] = None
    project_id: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    prompt_preview: Optional[str] = None
    response_preview: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    estimated_cost: Optional[float] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "CallLog":
        data = {k: v for k, v in doc.items() if k != "_id"}
        data["id"] = str(doc["_id"])
        return cls(**data)


class Task(BaseModel):
    id: str
    project_id: Optional[str] = None
    type: str
    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0  # percent
    message: Optional[str] = None
    total: int = 0
    completed: int = 0
    results: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Task":
        data = {k: v for k, v in doc.items() if k != "_id"}
        data["id"] = str(doc["_id"])
        return cls(**data)
