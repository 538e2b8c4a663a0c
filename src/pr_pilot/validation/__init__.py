"""Parsing and validation of model output."""

from .plan_validator import PlanRules, ValidationResult, validate_execution_result, validate_plan
from .response_parser import ResponseFormatError, parse_plan_response

__all__ = [
    "PlanRules",
    "ValidationResult",
    "validate_execution_result",
    "validate_plan",
    "ResponseFormatError",
    "parse_plan_response",
]
