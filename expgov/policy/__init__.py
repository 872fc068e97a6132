"""Severity-aware safety policies and their evaluator."""

from .models import (
    ERROR_RATE,
    RUNNING_DURATION,
    RUNNING_EXPERIMENTS,
    TRAFFIC_PERCENTAGE,
    ExperimentPolicy,
    PolicyContext,
    PolicyEvaluationResult,
    Severity,
)
from .builtin import (
    ConflictPreventionPolicy,
    ErrorRatePolicy,
    TimeWindowPolicy,
    TrafficLimitPolicy,
)
from .evaluator import PolicyEvaluator

__all__ = [
    "ERROR_RATE",
    "RUNNING_DURATION",
    "RUNNING_EXPERIMENTS",
    "TRAFFIC_PERCENTAGE",
    "ConflictPreventionPolicy",
    "ErrorRatePolicy",
    "ExperimentPolicy",
    "PolicyContext",
    "PolicyEvaluationResult",
    "PolicyEvaluator",
    "Severity",
    "TimeWindowPolicy",
    "TrafficLimitPolicy",
]
