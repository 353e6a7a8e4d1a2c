"""Stop conditions and their evaluator."""

from .conditions import (
    CACHEABLE_KINDS,
    COMPOSITE_KINDS,
    AllOf,
    AllTestsPass,
    AnyOf,
    CustomScript,
    FailureStreak,
    FileContains,
    FileCreated,
    MaxDuration,
    MaxIterations,
    Never,
    NoProgress,
    Not,
    OnError,
    OutputPattern,
    SpecificTestsPass,
    StopCondition,
    StopContext,
    UserSignal,
    is_composite,
    leaves,
    parse_condition,
    parse_conditions,
    priority,
)
from .evaluator import (
    ConditionPool,
    EvaluationResult,
    StopConditionEvaluator,
    StopConditionResult,
)

__all__ = [
    "CACHEABLE_KINDS",
    "COMPOSITE_KINDS",
    "AllOf",
    "AllTestsPass",
    "AnyOf",
    "ConditionPool",
    "CustomScript",
    "EvaluationResult",
    "FailureStreak",
    "FileContains",
    "FileCreated",
    "MaxDuration",
    "MaxIterations",
    "Never",
    "NoProgress",
    "Not",
    "OnError",
    "OutputPattern",
    "SpecificTestsPass",
    "StopCondition",
    "StopConditionEvaluator",
    "StopConditionResult",
    "StopContext",
    "UserSignal",
    "is_composite",
    "leaves",
    "parse_condition",
    "parse_conditions",
    "priority",
]
