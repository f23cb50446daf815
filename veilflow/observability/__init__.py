"""
VeilFlow observability: logging, decision audit and evaluation statistics.
"""

from veilflow.observability.logging import FrameworkLogger, DeltaLogHandler, get_logger
from veilflow.observability.audit import Decision, AuditTrail
from veilflow.observability.stats import EvaluationStats

__all__ = [
    "FrameworkLogger",
    "DeltaLogHandler",
    "get_logger",
    "Decision",
    "AuditTrail",
    "EvaluationStats",
]
