from datetime import datetime, timezone
from typing import List, Dict, Any, Optional
import uuid
from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator
from enum import Enum

from .errors import InvalidTransitionError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EvaluationStatus(str, Enum):
    pending = "pending"      # Created but not yet started
    running = "running"      # Currently executing test cases
    completed = "completed"  # All test cases processed
    failed = "failed"        # Aborted by the user or failed with an error


TERMINAL_STATUSES = (EvaluationStatus.completed, EvaluationStatus.failed)

# ==============================================================================
# RUN STATE MACHINE (Feature: run-lifecycle)
# ==============================================================================
# pending -> running -> {completed | failed}
# A pending run may also fail directly (orphan cleanup, stop before promotion).
# Terminal states have no outgoing transitions.
# ==============================================================================
ALLOWED_RUN_TRANSITIONS: Dict[EvaluationStatus, set] = {
    EvaluationStatus.pending: {EvaluationStatus.running, EvaluationStatus.failed},
    EvaluationStatus.running: {EvaluationStatus.completed, EvaluationStatus.failed},
    EvaluationStatus.completed: set(),
    EvaluationStatus.failed: set(),
}


class FileProcessingMode(str, Enum):
    auto = "auto"
    vision = "vision"
    ocr = "ocr"
    none = "none"


class OcrProvider(str, Enum):
    paddle = "paddle"
    paddle_vl = "paddle_vl"
    datalab = "datalab"


class ModelParameters(BaseModel):
    """Sampling parameters forwarded to the completion call. Unset means provider default."""
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    top_p: Optional[float] = Field(default=None, ge=0, le=1)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    frequency_penalty: Optional[float] = Field(default=None, ge=-2, le=2)
    presence_penalty: Optional[float] = Field(default=None, ge=-2, le=2)

    def to_request_kwargs(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class EvaluationConfig(BaseModel):
    pass_threshold: Optional[float] = Field(default=None, ge=0, le=1, description="Weighted score needed to pass; unset means the default (0.6)")
    model_parameters: ModelParameters = Field(default_factory=ModelParameters)
    inherited_from_prompt: bool = Field(default=False, description="Use the linked prompt's model parameters for runs")
    file_processing: FileProcessingMode = FileProcessingMode.auto
    ocr_provider: Optional[OcrProvider] = None


class FileAttachment(BaseModel):
    """Opaque reference to an uploaded file. Raw bytes never pass through the engine."""
    file_id: str
    name: str
    type: str = Field(default="application/octet-stream", description="MIME type")
    size: int = Field(default=0, ge=0)


# ==============================================================================
# PROMPTS
# ==============================================================================
class Prompt(BaseModel):
    id: str = Field(default_factory=lambda: f"prompt_{uuid.uuid4().hex[:16]}")
    name: str
    content: str = ""
    model_parameters: Optional[ModelParameters] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @field_serializer('created_at')
    def serialize_created_at(self, dt: datetime, _info):
        return dt.isoformat()


class PromptCreate(BaseModel):
    name: str
    content: str = ""
    model_parameters: Optional[ModelParameters] = None


# ==============================================================================
# RUN SUMMARY (Feature: score-aggregation)
# ==============================================================================
class RunSummary(BaseModel):
    """Run-level aggregate computed after the last processed case."""
    scores: Dict[str, float] = Field(default_factory=dict, description="Mean score per criterion name")
    total_cases: int = 0
    passed_cases: int = 0
    pass_rate: int = Field(default=0, description="Passed / total as a rounded percentage")
    summary: str = ""


# ==============================================================================
# EVALUATIONS
# ==============================================================================
class Evaluation(BaseModel):
    id: str = Field(default_factory=lambda: f"eval_{uuid.uuid4().hex[:16]}")
    name: str
    model_id: Optional[str] = Field(default=None, description="Target model executed for every test case")
    judge_model_id: Optional[str] = Field(default=None, description="Model scoring outputs against criteria")
    prompt_id: Optional[str] = Field(default=None, description="Linked prompt whose content is the template")
    config: EvaluationConfig = Field(default_factory=EvaluationConfig)
    status: EvaluationStatus = EvaluationStatus.pending
    results: Optional[RunSummary] = Field(default=None, description="Summary of the most recent finished run")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_serializer('created_at', 'updated_at')
    def serialize_datetime(self, dt: Optional[datetime], _info):
        return dt.isoformat() if dt else None


class EvaluationCreate(BaseModel):
    """New evaluation, optionally seeded with test cases and criteria (new versions use this)."""
    name: str = Field(..., min_length=1)
    model_id: Optional[str] = None
    judge_model_id: Optional[str] = None
    prompt_id: Optional[str] = None
    config: Optional[EvaluationConfig] = None
    test_cases: List['TestCaseCreate'] = Field(default_factory=list)
    criteria: List['CriterionCreate'] = Field(default_factory=list)


class EvaluationUpdate(BaseModel):
    """Draft edit of an evaluation. Only fields that are set are applied."""
    name: Optional[str] = None
    model_id: Optional[str] = None
    judge_model_id: Optional[str] = None
    prompt_id: Optional[str] = None
    config: Optional[EvaluationConfig] = None


class NewVersionRequest(BaseModel):
    name: Optional[str] = None


# ==============================================================================
# TEST CASES
# ==============================================================================
def _stringify_variables(v):
    # Variable values arrive as JSON scalars; templates need text
    if isinstance(v, dict):
        return {str(k): "" if val is None else str(val) for k, val in v.items()}
    return v


class TestCase(BaseModel):
    id: str = Field(default_factory=lambda: f"tc_{uuid.uuid4().hex[:16]}", description="Id of the test case")
    evaluation_id: str = Field(..., description="Id of the owning evaluation")
    name: str = ""
    input_text: str = ""
    input_variables: Dict[str, str] = Field(default_factory=dict, description="Values substituted for {{name}} tokens")
    attachments: List[FileAttachment] = Field(default_factory=list)
    expected_output: Optional[str] = None
    notes: Optional[str] = None
    order_index: int = 0
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator('input_variables', mode='before')
    @classmethod
    def stringify_variables(cls, v):
        return _stringify_variables(v)

    @field_serializer('created_at')
    def serialize_created_at(self, dt: datetime, _info):
        return dt.isoformat()


class TestCaseCreate(BaseModel):
    name: str = ""
    input_text: str = ""
    input_variables: Dict[str, str] = Field(default_factory=dict)
    attachments: List[FileAttachment] = Field(default_factory=list)
    expected_output: Optional[str] = None
    notes: Optional[str] = None

    @field_validator('input_variables', mode='before')
    @classmethod
    def stringify_variables(cls, v):
        return _stringify_variables(v)


class TestCaseUpdate(BaseModel):
    name: Optional[str] = None
    input_text: Optional[str] = None
    input_variables: Optional[Dict[str, str]] = None
    attachments: Optional[List[FileAttachment]] = None
    expected_output: Optional[str] = None
    notes: Optional[str] = None

    @field_validator('input_variables', mode='before')
    @classmethod
    def stringify_variables(cls, v):
        return _stringify_variables(v)


# ==============================================================================
# CRITERIA (Feature: judge-scoring)
# ==============================================================================
class EvaluationCriterion(BaseModel):
    """One weighted rubric dimension scored by the judge model.

    The prompt may reference {{input}}, {{output}}, {{expected}} and a
    conditional {{#expected}}...{{/expected}} region.
    """
    id: str = Field(default_factory=lambda: f"crit_{uuid.uuid4().hex[:16]}")
    evaluation_id: str
    name: str
    description: str = ""
    prompt: str = ""
    weight: float = Field(default=1.0, ge=0)
    enabled: bool = True
    created_at: datetime = Field(default_factory=_utcnow)

    @field_serializer('created_at')
    def serialize_created_at(self, dt: datetime, _info):
        return dt.isoformat()


class CriterionCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    prompt: str = ""
    weight: float = Field(default=1.0, ge=0)
    enabled: bool = True


class CriterionUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    prompt: Optional[str] = None
    weight: Optional[float] = Field(default=None, ge=0)
    enabled: Optional[bool] = None


# ==============================================================================
# RUNS AND RESULTS
# ==============================================================================
class TestCaseResult(BaseModel):
    """Outcome of one test case within one run. Append-only."""
    id: str = Field(default_factory=lambda: f"res_{uuid.uuid4().hex[:16]}")
    evaluation_id: str
    run_id: str
    test_case_id: str
    model_output: str = ""
    scores: Dict[str, float] = Field(default_factory=dict, description="Normalized 0-1 score per criterion name")
    ai_feedback: Dict[str, str] = Field(default_factory=dict, description="Judge feedback per criterion name")
    latency_ms: int = 0
    tokens_input: int = 0
    tokens_output: int = 0
    passed: bool = False
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @field_serializer('created_at')
    def serialize_created_at(self, dt: datetime, _info):
        return dt.isoformat()


class EvaluationRun(BaseModel):
    """One execution attempt of an evaluation's test cases.

    completed_at is set exactly when status is completed or failed; status
    changes go through transition_to() so the two stay in step.
    """

    id: str = Field(default_factory=lambda: f"run_{uuid.uuid4().hex[:16]}")
    evaluation_id: str
    status: EvaluationStatus = EvaluationStatus.pending
    results: Optional[RunSummary] = None
    error_message: Optional[str] = None
    total_tokens_input: int = 0
    total_tokens_output: int = 0
    model_parameters: Optional[ModelParameters] = Field(default=None, description="Sampling parameters captured at run start")

    # ==== TIMESTAMPS ====
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @model_validator(mode='after')
    def _check_completed_at(self) -> 'EvaluationRun':
        if self.status in TERMINAL_STATUSES:
            if self.completed_at is None:
                self.completed_at = _utcnow()
        elif self.completed_at is not None:
            raise ValueError(f"completed_at must be empty while run is {self.status.value}")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition_to(self, target: EvaluationStatus, error_message: Optional[str] = None) -> 'EvaluationRun':
        """Move to target status, stamping started_at / completed_at.

        Raises:
            InvalidTransitionError: if the state machine does not allow the move
        """
        if target not in ALLOWED_RUN_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, target.value)
        self.status = target
        if target == EvaluationStatus.running:
            self.started_at = _utcnow()
        if target in TERMINAL_STATUSES:
            self.completed_at = _utcnow()
        if error_message is not None:
            self.error_message = error_message
        return self

    @field_serializer('created_at', 'started_at', 'completed_at')
    def serialize_datetime(self, dt: Optional[datetime], _info):
        return dt.isoformat() if dt else None


# ==============================================================================
# SESSION DETAIL VIEW (Feature: session-cache)
# ==============================================================================
class EvaluationDetail(BaseModel):
    """Cached detail of one evaluation: the draft plus its run history."""
    evaluation: Evaluation
    test_cases: List[TestCase] = Field(default_factory=list)
    criteria: List[EvaluationCriterion] = Field(default_factory=list)
    runs: List[EvaluationRun] = Field(default_factory=list)
    results: List[TestCaseResult] = Field(default_factory=list, description="Results of the selected run")
    selected_run_id: Optional[str] = None
    dirty: bool = False


EvaluationCreate.model_rebuild()


__all__ = [
    'EvaluationStatus',
    'TERMINAL_STATUSES',
    'ALLOWED_RUN_TRANSITIONS',
    'FileProcessingMode',
    'OcrProvider',
    'ModelParameters',
    'EvaluationConfig',
    'FileAttachment',
    'Prompt',
    'PromptCreate',
    'RunSummary',
    'Evaluation',
    'EvaluationCreate',
    'EvaluationUpdate',
    'NewVersionRequest',
    'TestCase',
    'TestCaseCreate',
    'TestCaseUpdate',
    'EvaluationCriterion',
    'CriterionCreate',
    'CriterionUpdate',
    'TestCaseResult',
    'EvaluationRun',
    'EvaluationDetail',
]
