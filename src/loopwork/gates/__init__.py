from .checks import CheckContext, CheckResult, CheckRunner
from .evaluator import GateEvaluator, GateOutcome, GateVerdict, failure_report_name
from .rework import ReworkRequest, ReworkTarget, build_rework_request

__all__ = [
    "CheckContext",
    "CheckResult",
    "CheckRunner",
    "GateEvaluator",
    "GateOutcome",
    "GateVerdict",
    "ReworkRequest",
    "ReworkTarget",
    "build_rework_request",
    "failure_report_name",
]
