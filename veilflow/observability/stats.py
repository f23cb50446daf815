"""
Evaluation statistics tracking for VeilFlow.

Counts what happened to the rows of a scan: emitted, dropped by a row
access policy, failed, and how many column values were masked.
"""

import json
import threading
from datetime import datetime
from typing import Dict, Any, Optional
from pyspark.sql import SparkSession
from pyspark.sql.types import StructType, StructField, TimestampType, IntegerType, FloatType, StringType
from veilflow.observability.logging import get_logger

logger = get_logger("observability.stats")


class EvaluationStats:
    """
    Statistics tracker for one table scan.

    Safe to update from several threads evaluating rows concurrently.

    Example:
        stats = EvaluationStats(table="NLT.RAW.OPOR")
        stats.record_outcome("emitted", masked_columns=2)
        stats.record_outcome("dropped")
        stats.finalize()
    """

    def __init__(self, table: str, persist: bool = False):
        """
        Initialize statistics tracker.

        Args:
            table: Fully qualified table being scanned
            persist: Write the final summary to the stats Delta table
        """
        self.table = table
        self.persist = persist
        self.start_time = datetime.now()
        self.end_time: Optional[datetime] = None

        self.rows_read = 0
        self.rows_emitted = 0
        self.rows_dropped = 0
        self.rows_failed = 0
        self.columns_masked = 0

        self.custom_stats: Dict[str, Any] = {}
        self._lock = threading.Lock()

    # ========================================================================
    # Recording
    # ========================================================================

    def record_outcome(self, outcome: str, masked_columns: int = 0):
        """
        Record the outcome of one evaluated row.

        Args:
            outcome: "emitted", "dropped" or "failed"
            masked_columns: Number of column values the masks changed
        """
        with self._lock:
            self.rows_read += 1
            if outcome == "emitted":
                self.rows_emitted += 1
                self.columns_masked += masked_columns
            elif outcome == "dropped":
                self.rows_dropped += 1
            elif outcome == "failed":
                self.rows_failed += 1
            else:
                raise ValueError(f"Unknown row outcome: {outcome}")

    def record_totals(self, outcome: str, rows: int, masked_columns: int = 0):
        """Record pre-aggregated outcome counts, e.g. from a Spark job."""
        with self._lock:
            self.rows_read += rows
            if outcome == "emitted":
                self.rows_emitted += rows
                self.columns_masked += masked_columns
            elif outcome == "dropped":
                self.rows_dropped += rows
            elif outcome == "failed":
                self.rows_failed += rows
            else:
                raise ValueError(f"Unknown row outcome: {outcome}")

    def log_stat(self, key: str, value: Any):
        """Log a custom statistic."""
        with self._lock:
            self.custom_stats[key] = value

    def increment_stat(self, key: str, amount: int = 1):
        """Increment a counter statistic."""
        with self._lock:
            self.custom_stats[key] = self.custom_stats.get(key, 0) + amount

    # ========================================================================
    # Finalization and Persistence
    # ========================================================================

    @property
    def execution_time_seconds(self) -> float:
        if self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def _calculate_throughput(self) -> Optional[float]:
        if self.rows_read <= 0 or self.execution_time_seconds <= 0:
            return None
        return self.rows_read / self.execution_time_seconds

    def finalize(self):
        """
        Finalize statistics collection.

        Records end time, logs a summary and optionally persists it.
        """
        self.end_time = datetime.now()

        throughput = self._calculate_throughput()
        if throughput is not None:
            self.custom_stats['throughput_rows_per_sec'] = round(throughput, 2)

        logger.info(
            f"Finalizing evaluation stats for {self.table}: "
            f"{self.rows_read} rows read, {self.rows_emitted} emitted, "
            f"{self.rows_dropped} dropped, {self.rows_failed} failed, "
            f"{self.columns_masked} values masked, "
            f"{self.execution_time_seconds:.2f}s"
        )

        if self.persist:
            try:
                self._persist_to_table()
            except Exception as e:
                # Stats persistence is best effort
                logger.error(f"Failed to persist evaluation stats: {e}", exc_info=True)

    def _persist_to_table(self):
        spark = SparkSession.getActiveSession()
        if not spark:
            logger.warning("No active Spark session - cannot persist stats to Delta table")
            return

        from veilflow.core.config import get_config
        config = get_config()
        table_name = f"{config.get_catalog_name()}.{config.observability.stats_table}"

        schema = StructType([
            StructField("table", StringType(), False),
            StructField("execution_start", TimestampType(), False),
            StructField("execution_end", TimestampType(), True),
            StructField("execution_time_seconds", FloatType(), False),
            StructField("rows_read", IntegerType(), False),
            StructField("rows_emitted", IntegerType(), False),
            StructField("rows_dropped", IntegerType(), False),
            StructField("rows_failed", IntegerType(), False),
            StructField("columns_masked", IntegerType(), False),
            StructField("custom_stats", StringType(), True),
        ])

        custom_stats_json = json.dumps(self.custom_stats) if self.custom_stats else None

        data = [(
            self.table,
            self.start_time,
            self.end_time,
            self.execution_time_seconds,
            self.rows_read,
            self.rows_emitted,
            self.rows_dropped,
            self.rows_failed,
            self.columns_masked,
            custom_stats_json,
        )]

        df = spark.createDataFrame(data, schema)
        df.write.format("delta").mode("append").saveAsTable(table_name)

        logger.info(f"Successfully persisted stats to {table_name}")

    def summary(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "execution_time_seconds": self.execution_time_seconds,
            "rows_read": self.rows_read,
            "rows_emitted": self.rows_emitted,
            "rows_dropped": self.rows_dropped,
            "rows_failed": self.rows_failed,
            "columns_masked": self.columns_masked,
            "custom_stats": self.custom_stats,
        }

    def __repr__(self) -> str:
        return (
            f"EvaluationStats("
            f"table={self.table}, "
            f"rows_read={self.rows_read}, "
            f"rows_emitted={self.rows_emitted}, "
            f"rows_dropped={self.rows_dropped}"
            f")"
        )
