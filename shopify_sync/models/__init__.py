"""Data models for the sync service."""

from .mapping import (
    SourceField,
    SingleSource,
    MultiSource,
    DirectTransform,
    CoerceTransform,
    ExpressionTransform,
    LookupTransform,
    TemplateTransform,
    DefaultTransform,
    FieldTarget,
    FieldMapping,
    FilterOperator,
    MappingFilter,
    KeyMapping,
    DeleteStrategy,
    ScheduleType,
    ScheduleOptions,
    ScheduleConfig,
    MappingConfig,
)
from .sync import (
    SyncType,
    SyncStatus,
    SyncPhase,
    SyncStats,
    SyncDuration,
    SyncProgress,
    SyncResult,
    SyncHistoryEntry,
    SyncHistoryList,
    RunningSyncInfo,
)
from .transform import (
    TransformStatus,
    TransformError,
    TransformWarning,
    TransformMetrics,
    TransformResult,
    LookupStats,
    BatchSummary,
    BatchResult,
    PreviewRow,
    PreviewResult,
    DeltaResult,
)
from .webhook import (
    WebhookStatus,
    WebhookJob,
    WebhookProcessResult,
    WebhookHistoryEntry,
    WebhookDayStats,
    WebhookTopicStats,
    WebhookQueueStats,
    WebhookStats,
)
from .hooks import (
    HookPhase,
    HookStats,
    HookContext,
    SyncHook,
    HookResult,
)
from .schedule import (
    ScheduleTrigger,
    ScheduleJob,
    ScheduleDefinition,
    SchedulerInfo,
)
from .validation import (
    ValidationErrorType,
    ValidationWarningType,
    ValidationIssue,
    ValidationStats,
    ValidationResult,
)

__all__ = [
    # Mapping
    "SourceField",
    "SingleSource",
    "MultiSource",
    "DirectTransform",
    "CoerceTransform",
    "ExpressionTransform",
    "LookupTransform",
    "TemplateTransform",
    "DefaultTransform",
    "FieldTarget",
    "FieldMapping",
    "FilterOperator",
    "MappingFilter",
    "KeyMapping",
    "DeleteStrategy",
    "ScheduleType",
    "ScheduleOptions",
    "ScheduleConfig",
    "MappingConfig",
    # Sync
    "SyncType",
    "SyncStatus",
    "SyncPhase",
    "SyncStats",
    "SyncDuration",
    "SyncProgress",
    "SyncResult",
    "SyncHistoryEntry",
    "SyncHistoryList",
    "RunningSyncInfo",
    # Transform
    "TransformStatus",
    "TransformError",
    "TransformWarning",
    "TransformMetrics",
    "TransformResult",
    "LookupStats",
    "BatchSummary",
    "BatchResult",
    "PreviewRow",
    "PreviewResult",
    "DeltaResult",
    # Webhook
    "WebhookStatus",
    "WebhookJob",
    "WebhookProcessResult",
    "WebhookHistoryEntry",
    "WebhookDayStats",
    "WebhookTopicStats",
    "WebhookQueueStats",
    "WebhookStats",
    # Hooks
    "HookPhase",
    "HookStats",
    "HookContext",
    "SyncHook",
    "HookResult",
    # Schedule
    "ScheduleTrigger",
    "ScheduleJob",
    "ScheduleDefinition",
    "SchedulerInfo",
    # Validation
    "ValidationErrorType",
    "ValidationWarningType",
    "ValidationIssue",
    "ValidationStats",
    "ValidationResult",
]
