"""reviewline: human-reviewed analysis pipelines over failover LLM routing."""

from reviewline.__version__ import __version__
from reviewline.audit import AuditEvent, AuditLogger, FileAuditSink, InMemoryAuditSink, StructlogAuditSink
from reviewline.callbacks import LoggingPipelineCallbackHandler, PipelineCallbackHandler
from reviewline.client import create_engine, create_router
from reviewline.core.config import ProviderConfig, ReviewlineConfig, RouterConfig
from reviewline.core.constants import (
    FailureKind,
    HealthStatus,
    PipelineStatus,
    ProviderKind,
    ReviewAction,
    RoutingStrategy,
    StepStatus,
    TaskType,
)
from reviewline.core.exceptions import (
    AllProvidersFailedError,
    ConfigurationError,
    FatalProviderError,
    InvalidStateError,
    NoArtifactError,
    NotFoundError,
    OutOfOrderError,
    OutOfRangeError,
    OutputParsingError,
    PipelineNotFoundError,
    ProviderError,
    ReviewlineError,
    StepNotFoundError,
    TransientProviderError,
    UnexpectedFaultError,
)
from reviewline.pipeline import (
    DEFAULT_STAGES,
    PipelineEngine,
    PipelineSummary,
    PipelineView,
    StageDefinition,
    StagePromptBuilder,
    StepExecutor,
    StepResult,
    to_markdown,
)
from reviewline.providers import (
    AnthropicProvider,
    MockProvider,
    OllamaProvider,
    OpenAICompatProvider,
    ProviderClient,
)
from reviewline.routing import HealthTracker, Router, RoutingResult, StructuredResult
from reviewline.utils.logging import configure_logging, get_logger

__all__ = [
    "__version__",
    # audit / callbacks
    "AuditEvent",
    "AuditLogger",
    "FileAuditSink",
    "InMemoryAuditSink",
    "StructlogAuditSink",
    "LoggingPipelineCallbackHandler",
    "PipelineCallbackHandler",
    # wiring
    "create_engine",
    "create_router",
    # config
    "ProviderConfig",
    "ReviewlineConfig",
    "RouterConfig",
    # constants
    "FailureKind",
    "HealthStatus",
    "PipelineStatus",
    "ProviderKind",
    "ReviewAction",
    "RoutingStrategy",
    "StepStatus",
    "TaskType",
    # exceptions
    "AllProvidersFailedError",
    "ConfigurationError",
    "FatalProviderError",
    "InvalidStateError",
    "NoArtifactError",
    "NotFoundError",
    "OutOfOrderError",
    "OutOfRangeError",
    "OutputParsingError",
    "PipelineNotFoundError",
    "ProviderError",
    "ReviewlineError",
    "StepNotFoundError",
    "TransientProviderError",
    "UnexpectedFaultError",
    # pipeline
    "DEFAULT_STAGES",
    "PipelineEngine",
    "PipelineSummary",
    "PipelineView",
    "StageDefinition",
    "StagePromptBuilder",
    "StepExecutor",
    "StepResult",
    "to_markdown",
    # providers / routing
    "AnthropicProvider",
    "MockProvider",
    "OllamaProvider",
    "OpenAICompatProvider",
    "ProviderClient",
    "HealthTracker",
    "Router",
    "RoutingResult",
    "StructuredResult",
    # logging
    "configure_logging",
    "get_logger",
]
