"""
Access decision auditing for VeilFlow.

The evaluator reports one Decision per evaluated row to an optional observer.
AuditTrail is the stock observer: it keeps decisions in memory and can
persist them to a Delta table for compliance reporting.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, List, Optional, FrozenSet
from pyspark.sql import SparkSession
from pyspark.sql.types import StructType, StructField, TimestampType, StringType
from veilflow.core.config import get_config
from veilflow.observability.logging import get_logger

logger = get_logger("observability.audit")


@dataclass
class Decision:
    """
    Metadata describing how a single row was treated.

    Attributes:
        table: Fully qualified table name
        user: User the principal belongs to
        active_role: Role active for the session
        effective_roles: Active role plus all inherited roles
        outcome: "emitted", "dropped" or "failed"
        row_policy: Row access policy evaluated (None if the table has none)
        masked_columns: Column -> masking policy that changed its value
        error: Error message for failed rows
    """
    table: str
    user: str
    active_role: str
    effective_roles: FrozenSet[str]
    outcome: str
    row_policy: Optional[str] = None
    masked_columns: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_record(self) -> tuple:
        """Flatten into a tuple matching AuditTrail.SCHEMA."""
        return (
            self.timestamp,
            self.table,
            self.user,
            self.active_role,
            json.dumps(sorted(self.effective_roles)),
            self.outcome,
            self.row_policy,
            json.dumps(self.masked_columns) if self.masked_columns else None,
            self.error,
        )


class AuditTrail:
    """
    Observer that records access decisions.

    Usage:
        trail = AuditTrail()
        evaluator = AccessEvaluator(..., observer=trail)
        list(evaluator.scan(table, principal, rows))

        trail.summary()   # {"emitted": 3, "dropped": 7}
        trail.flush()     # persist to Delta (if enabled)
    """

    SCHEMA = StructType([
        StructField("timestamp", TimestampType(), False),
        StructField("table", StringType(), False),
        StructField("user", StringType(), False),
        StructField("active_role", StringType(), False),
        StructField("effective_roles", StringType(), False),
        StructField("outcome", StringType(), False),
        StructField("row_policy", StringType(), True),
        StructField("masked_columns", StringType(), True),
        StructField("error", StringType(), True),
    ])

    def __init__(self, persist: Optional[bool] = None):
        config = get_config()
        self.persist = (
            config.observability.audit_to_delta if persist is None else persist
        )
        self.decisions: List[Decision] = []

    def __call__(self, decision: Decision):
        self.decisions.append(decision)
        if decision.outcome == "failed":
            logger.warning(
                f"Row evaluation failed on {decision.table} "
                f"for role {decision.active_role}: {decision.error}"
            )

    def summary(self) -> Dict[str, int]:
        """Count decisions per outcome."""
        counts: Dict[str, int] = {}
        for decision in self.decisions:
            counts[decision.outcome] = counts.get(decision.outcome, 0) + 1
        return counts

    def fired_policies(self) -> Dict[str, int]:
        """Count how many times each masking or row policy fired."""
        counts: Dict[str, int] = {}
        for decision in self.decisions:
            if decision.row_policy:
                counts[decision.row_policy] = counts.get(decision.row_policy, 0) + 1
            for policy in decision.masked_columns.values():
                counts[policy] = counts.get(policy, 0) + 1
        return counts

    def as_dicts(self) -> List[dict]:
        return [asdict(decision) for decision in self.decisions]

    def clear(self):
        self.decisions = []

    def flush(self) -> int:
        """
        Persist collected decisions to the audit Delta table and clear them.

        Returns:
            Number of decisions written (0 when persistence is disabled
            or no Spark session is active)
        """
        if not self.persist or not self.decisions:
            return 0

        spark = SparkSession.getActiveSession()
        if not spark:
            logger.warning("No active Spark session - cannot persist audit decisions")
            return 0

        config = get_config()
        table = f"{config.get_catalog_name()}.{config.observability.audit_table}"

        try:
            data = [decision.to_record() for decision in self.decisions]
            df = spark.createDataFrame(data, self.SCHEMA)
            df.write.format("delta").mode("append").saveAsTable(table)
        except Exception as e:
            logger.error(f"Failed to persist audit decisions to {table}: {e}")
            raise

        written = len(self.decisions)
        logger.info(f"Persisted {written} access decisions to {table}")
        self.clear()
        return written
