"""Core incremental flow framework."""

from .types import (
    DataType,
    FieldSchema,
    ScalarKind,
    ScalarType,
    SimilarityMetric,
    StructType,
    TableKind,
    TableType,
    VectorType,
    struct_type,
    ktable,
    ltable,
    encode_type,
    decode_type,
)
from .component import (
    Component,
    ComponentManifest,
    ConfigSpec,
    InputSpec,
    Source,
    SourceRow,
    SourceDiff,
    Function,
    Target,
    TargetSchema,
    IndexSpec,
)
from .registry import (
    ComponentRegistry,
    FlowRegistry,
    register_component,
    register_flow,
    auto_discover_components,
)
from .auth import (
    AuthEntryReference,
    AuthRegistry,
    add_auth_entry,
    ref_auth_entry,
)
from .scope import DataScope, DataSlice, DataCollector, GENERATED_UUID
from .operations import OpSpec, spec
from .builder import Flow, FlowBuilder
from .context import RowContext
from .errors import (
    DataflowError,
    DefinitionError,
    DuplicateFieldError,
    ScopeViolationError,
    TypeMismatchError,
    InvalidCollectorEntryError,
    InvalidIndexConfigError,
    InvalidOperationError,
    SourceError,
    TransformError,
    DuplicateKeyError,
    StorageError,
    AuthEntryNotFoundError,
    SetupConfirmationRequired,
    SetupRequiredError,
    ErrorRecord,
)
from .persistence import StateStore, FlowState
from .engine import FlowEngine, UpdateResult, SetupReport
from .live import LiveUpdater
from .tracing import ExecutionTracer, TraceLevel, ExecutionTrace

__all__ = [
    # Types
    "DataType",
    "FieldSchema",
    "ScalarKind",
    "ScalarType",
    "SimilarityMetric",
    "StructType",
    "TableKind",
    "TableType",
    "VectorType",
    "struct_type",
    "ktable",
    "ltable",
    "encode_type",
    "decode_type",
    # Components
    "Component",
    "ComponentManifest",
    "ConfigSpec",
    "InputSpec",
    "Source",
    "SourceRow",
    "SourceDiff",
    "Function",
    "Target",
    "TargetSchema",
    "IndexSpec",
    # Registries
    "ComponentRegistry",
    "FlowRegistry",
    "register_component",
    "register_flow",
    "auto_discover_components",
    # Auth
    "AuthEntryReference",
    "AuthRegistry",
    "add_auth_entry",
    "ref_auth_entry",
    # Flow definition
    "DataScope",
    "DataSlice",
    "DataCollector",
    "GENERATED_UUID",
    "OpSpec",
    "spec",
    "Flow",
    "FlowBuilder",
    "RowContext",
    # Errors
    "DataflowError",
    "DefinitionError",
    "DuplicateFieldError",
    "ScopeViolationError",
    "TypeMismatchError",
    "InvalidCollectorEntryError",
    "InvalidIndexConfigError",
    "InvalidOperationError",
    "SourceError",
    "TransformError",
    "DuplicateKeyError",
    "StorageError",
    "AuthEntryNotFoundError",
    "SetupConfirmationRequired",
    "SetupRequiredError",
    "ErrorRecord",
    # Execution
    "StateStore",
    "FlowState",
    "FlowEngine",
    "UpdateResult",
    "SetupReport",
    "LiveUpdater",
    # Tracing
    "ExecutionTracer",
    "TraceLevel",
    "ExecutionTrace",
]
