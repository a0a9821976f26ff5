# models.py
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Literal, Union
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ParameterLocation = Literal["query", "path", "header"]
ParameterScalar = Union[bool, int, float, str]


class ParameterStatus(str, Enum):
    SUCCESS = "SUCCESS"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    INSUFFICIENT_SCHEMA = "INSUFFICIENT_SCHEMA"
    ERROR = "ERROR"


class ExecutionErrorType(str, Enum):
    SWAGGER_ERROR = "SWAGGER_ERROR"
    PARAMETER_GENERATION_ERROR = "PARAMETER_GENERATION_ERROR"
    HTTP_REQUEST_ERROR = "HTTP_REQUEST_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class Command(str, Enum):
    GENERATE = "GENERATE"
    HTTP_TOOL = "HTTP_TOOL"


# --- Registry Models ---
class ApiDescriptor(BaseModel):
    """A registered API as returned by the endpoint registry."""
    id: str
    name: str
    description: Optional[str] = None
    base_url: str = Field(..., description="Base URL prepended to every endpoint path of this API.")
    schema_locator: Optional[str] = Field(None, description="Where the API's OpenAPI/Swagger document can be fetched from.")


class FeatureDescriptor(BaseModel):
    """A feature (tag) grouping endpoints of one API."""
    id: str
    name: str
    description: Optional[str] = None


class EndpointDescriptor(BaseModel):
    id: str
    path: str = Field(..., description="Path template, may contain {name} placeholders.")
    method: str
    summary: Optional[str] = None
    description: Optional[str] = None
    operation_id: Optional[str] = None


# --- Resolved Schema Models ---
class ParameterSpec(BaseModel):
    """A query/path/header parameter of an operation, with references resolved."""
    name: str
    location: ParameterLocation
    required: bool = False
    type: str = "string"
    description: Optional[str] = None


class FieldSpec(BaseModel):
    """
    One node of the reference-free schema tree.
    kind is 'object' (see fields), 'array' (see items), 'enum', 'scalar',
    or 'reference' when a reference could not be followed (cycle or missing target).
    """
    name: str
    kind: Literal["object", "array", "scalar", "enum", "reference"] = "scalar"
    type: str = "unknown"
    required: bool = False
    description: Optional[str] = None
    format: Optional[str] = None
    enum: Optional[List[Any]] = None
    example: Optional[Any] = None
    ref: Optional[str] = Field(None, description="Unresolved reference marker, only set when kind == 'reference'.")
    fields: List["FieldSpec"] = Field(default_factory=list)
    items: Optional["FieldSpec"] = None


class BodySpec(BaseModel):
    required: bool = False
    description: Optional[str] = None
    content_type: str = "application/json"
    type: str = "unknown"
    fields: List[FieldSpec] = Field(default_factory=list)
    items: Optional[FieldSpec] = Field(None, description="Item shape when the body itself is an array.")


class ResolvedSchema(BaseModel):
    """Normalized schema of one operation. Contains no unresolved pointers except explicit 'reference' markers."""
    path: str
    method: str
    summary: Optional[str] = None
    description: Optional[str] = None
    parameters: List[ParameterSpec] = Field(default_factory=list)
    body: Optional[BodySpec] = None

    def parameters_in(self, location: str) -> List[ParameterSpec]:
        return [p for p in self.parameters if p.location == location]


# --- Plan Models ---
class PlanStep(BaseModel):
    """One planned call to one registered endpoint. Read-only once created by the plan builder."""
    step: int = Field(..., ge=1, description="1-based ordinal within the plan; also the execution order.")
    endpoint_id: str
    api_name: str
    feature_name: str
    method: str
    path_template: str
    base_url: str
    schema_locator: Optional[str] = None
    description: Optional[str] = None

    model_config = {"frozen": True}


class ParameterValue(BaseModel):
    name: str
    value: ParameterScalar
    location: ParameterLocation


class ParameterGenerationResult(BaseModel):
    """Outcome of parameter generation. parameters/body are only meaningful on SUCCESS, message otherwise."""
    status: ParameterStatus
    parameters: List[ParameterValue] = Field(default_factory=list)
    body: Optional[Any] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, parameters: List[ParameterValue], body: Any = None) -> "ParameterGenerationResult":
        return cls(status=ParameterStatus.SUCCESS, parameters=parameters, body=body)

    @classmethod
    def failure(cls, status: ParameterStatus, message: str) -> "ParameterGenerationResult":
        return cls(status=status, parameters=[], body=None, message=message)


class StandardizedError(BaseModel):
    type: ExecutionErrorType
    message: str
    details: Optional[Dict[str, Any]] = None
    step: Optional[int] = None


class ExecutionResult(BaseModel):
    """Record of one executed (or short-circuited) step."""
    step: int
    endpoint: str
    method: str
    request_parameters: List[ParameterValue] = Field(default_factory=list)
    request_body: Optional[Any] = None
    request_url: Optional[str] = Field(None, description="Dispatched URL. None when no HTTP call was made.")
    response: Optional[Any] = None
    response_status: int = 0
    success: bool
    error: Optional[str] = None
    error_type: Optional[ExecutionErrorType] = None
    error_details: Optional[Dict[str, Any]] = None
    execution_time: Optional[float] = None

    @classmethod
    def from_error(cls, step: PlanStep, error: StandardizedError,
                   parameters: Optional[List[ParameterValue]] = None, body: Any = None) -> "ExecutionResult":
        """Builds a failed result for a step that never produced an HTTP response."""
        return cls(
            step=step.step,
            endpoint=step.path_template,
            method=step.method,
            request_parameters=parameters or [],
            request_body=body,
            success=False,
            error=error.message,
            error_type=error.type,
            error_details=error.details if error.details is not None else {"message": error.message},
        )


# --- Classification Models ---
class CommandTask(BaseModel):
    command: Command
    prompt: str


class ClassificationResult(BaseModel):
    tasks: List[CommandTask] = Field(default_factory=list)

    @property
    def http_tasks(self) -> List[CommandTask]:
        return [t for t in self.tasks if t.command == Command.HTTP_TOOL]


class QueryResponse(BaseModel):
    tasks: List[CommandTask] = Field(default_factory=list)
    plan: Optional[List[PlanStep]] = None
    execution_results: Optional[List[ExecutionResult]] = None
    final_response: Optional[str] = None
    planning_error: Optional[StandardizedError] = None


# --- Graph State Models ---
class PlanRunState(BaseModel):
    """LangGraph state of one plan run."""
    plan: List[PlanStep] = Field(default_factory=list)
    user_prompt: str = ""
    cursor: int = Field(0, description="Index into plan of the step currently being processed.")
    resolved_schema: Optional[ResolvedSchema] = None
    parameter_result: Optional[ParameterGenerationResult] = None
    results: List[ExecutionResult] = Field(default_factory=list)

    @property
    def current_step(self) -> Optional[PlanStep]:
        return self.plan[self.cursor] if self.cursor < len(self.plan) else None

    @property
    def halted(self) -> bool:
        return bool(self.results) and not self.results[-1].success


class AgentState(BaseModel):
    """LangGraph state of one user request, from classification to the final answer."""
    user_input: str
    tasks: List[CommandTask] = Field(default_factory=list)
    plan_prompt: Optional[str] = None
    plan: List[PlanStep] = Field(default_factory=list)
    execution_results: Optional[List[ExecutionResult]] = None
    planning_error: Optional[StandardizedError] = None
    final_response: str = ""


FieldSpec.model_rebuild()
