from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from state.models import Operation

RequestId = Union[str, int]


class GenerationOptions(BaseModel):
    operation: Operation = Operation.OUTLINE
    temperature: float = Field(default=0.7, ge=0, le=2)
    user_id: Optional[str] = None  # None = global model scope
    project_id: Optional[str] = None


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0


class GenerationResult(BaseModel):
    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


class BatchRequest(BaseModel):
    id: RequestId
    prompt: str
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class BatchResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: RequestId
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    tokens: Optional[TokenUsage] = None


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class PromptItem(BaseModel):
    id: RequestId
    prompt: str

    def as_pair(self) -> Tuple[RequestId, str]:
        return self.id, self.prompt


class BatchRunRequest(BaseModel):
    items: List[PromptItem]
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    max_concurrency: Optional[int] = Field(default=None, ge=1)


class TaskSubmitRequest(BatchRunRequest):
    type: str = "GENERATE_BATCH"
    project_id: Optional[str] = None


class BatchRunResponse(BaseModel):
    results: List[BatchResponse]
    succeeded: int = 0
    failed: int = 0

    @classmethod
    def from_results(cls, results: List[BatchResponse]) -> "BatchRunResponse":
        ok = sum(1 for r in results if r.success)
        return cls(results=results, succeeded=ok, failed=len(results) - ok)


class ModelUsageView(BaseModel):
    id: str
    model_id: str
    display_name: str
    priority: int
    enabled: bool
    limits: Dict[str, int]
    usage: Dict[str, int]


class ModelUpsertRequest(BaseModel):
    model_id: str = Field(min_length=1)
    display_name: str = ""
    rpm: int = Field(ge=1)
    tpm: int = Field(ge=1)
    rpd: int = Field(ge=1)
    priority: int = Field(default=1, ge=0)
    api_key: Optional[str] = None
    enabled: bool = True
    user_id: Optional[str] = None


class ReorderRequest(BaseModel):
    model_ids: List[str]


class CredentialRequest(BaseModel):
    api_key: Optional[str] = None  # None clears the stored key
    user_id: Optional[str] = None
