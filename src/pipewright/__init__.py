from pipewright.definition import builtin_definition, load_definition, parse_definition
from pipewright.errors import (
    Cancelled,
    DefinitionError,
    GateAbort,
    GateEvaluationError,
    MissingInput,
    PipelineError,
    PipewrightError,
    RequiredPhaseFailure,
    SchemaViolation,
    TaskExecutionError,
)
from pipewright.models import PipelineResult, PipelineSpec
from pipewright.runner import PipelineRunner

__version__ = "0.1.0"

__all__ = [
    "Cancelled",
    "DefinitionError",
    "GateAbort",
    "GateEvaluationError",
    "MissingInput",
    "PipelineError",
    "PipelineResult",
    "PipelineRunner",
    "PipelineSpec",
    "PipewrightError",
    "RequiredPhaseFailure",
    "SchemaViolation",
    "TaskExecutionError",
    "__version__",
    "builtin_definition",
    "load_definition",
    "parse_definition",
]
