"""
Typed records passed between pipeline components.

Inputs and per-attempt records (Narrative, ModelInvocation, ParsedResult) are
frozen. Rows read back from the database are converted into NarrativeResult,
Experiment and PromptVersion by the storage layer.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

NarrativeType = Literal["primary", "secondary"]
ParseStatus = Literal["ok", "recovered", "failed", "skipped_empty"]
ErrorKind = Literal["transient", "non_transient"]
ExperimentStatus = Literal["running", "completed", "failed"]
StoreOutcome = Literal["inserted", "duplicate", "error"]
IndicatorFlag = Literal["yes", "no", "unclear"]

UNCLEAR: IndicatorFlag = "unclear"


class Narrative(BaseModel):
    model_config = ConfigDict(frozen=True)

    case_id: str
    narrative_type: NarrativeType
    raw_text: str | None = None
    row_num: int | None = None
    manual_flag: bool | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.case_id, self.narrative_type)


class ModelInvocation(BaseModel):
    """One request/response exchange with the LLM endpoint, kept for audit."""

    model_config = ConfigDict(frozen=True)

    system_prompt: str
    user_prompt: str
    model: str
    temperature: float
    response_raw: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    status_code: int | None = None
    attempts: int = 0
    latency_seconds: float = 0.0
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    response_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ResponseSchema(BaseModel):
    """Fields the parser expects in a model response."""

    model_config = ConfigDict(frozen=True)

    indicator_fields: tuple[str, ...] = ()


class ParsedResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    detected: bool | None = None
    confidence: float | None = Field(None, ge=0.0, le=1.0)
    rationale: str | None = None
    indicators: list[str] = []
    indicator_flags: dict[str, IndicatorFlag] = {}
    missing_fields: list[str] = []
    parse_status: ParseStatus
    recovery_stage: int | None = None
    raw_response: str | None = None
    error_message: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    latency_seconds: float | None = None


class NarrativeResult(BaseModel):
    result_id: str
    experiment_id: str
    case_id: str
    narrative_type: str
    row_num: int | None = None
    narrative_text: str | None = None
    manual_flag: bool | None = None
    detected: bool | None = None
    confidence: float | None = None
    rationale: str | None = None
    indicators: list[str] = []
    indicator_flags: dict[str, str] = {}
    parse_status: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    latency_seconds: float | None = None
    raw_response: str | None = None
    error_message: str | None = None
    created_at: str


class CaseVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    case_id: str
    final_detected: bool | None
    final_confidence: float | None
    conflict_flag: bool
    sources: tuple[str, ...] = ()
    primary_detected: bool | None = None
    primary_confidence: float | None = None
    secondary_detected: bool | None = None
    secondary_confidence: float | None = None
    rationale: str = ""


class PromptVersion(BaseModel):
    id: str
    system_prompt: str
    user_template: str
    content_hash: str
    version_tag: str | None = None
    notes: str | None = None
    created_at: str


class Experiment(BaseModel):
    id: str
    name: str
    model: str
    prompt_version_id: str
    dataset_name: str | None = None
    status: ExperimentStatus
    n_total: int | None = None
    n_processed: int = 0
    n_errors: int | None = None
    started_at: str
    completed_at: str | None = None
    notes: str | None = None
    error_message: str | None = None
    metrics: dict = {}


class BatchOutcome(BaseModel):
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0


class RunSummary(BaseModel):
    experiment_id: str
    status: ExperimentStatus
    n_total: int
    processed: int = 0
    skipped_duplicate: int = 0
    skipped_empty: int = 0
    errored: int = 0
    llm_failures: int = 0
    parse_failures: int = 0
    stopped_early: bool = False
