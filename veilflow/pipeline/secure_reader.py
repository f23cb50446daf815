"""
Secure Reader - Spark integration for row access and column masking.

This is a thin adapter that applies the access module to pyspark
DataFrames. The evaluator compiles a per-principal plan on the driver;
the plan is shipped to executors and evaluated partition by partition.
"""

from typing import Dict, List, Optional

from pyspark.sql import DataFrame, SparkSession
from pyspark.sql.types import StructType

from veilflow.access.evaluator import AccessEvaluator, CompiledAccess
from veilflow.access.models import ObjectRef, Principal
from veilflow.access.tags import TagRegistry
from veilflow.observability.logging import get_logger
from veilflow.observability.stats import EvaluationStats

logger = get_logger("pipeline.secure_reader")


def register_schema(tags: TagRegistry, object_ref, schema: StructType) -> Dict[str, str]:
    """
    Register a table's column types from a Spark schema.

    Returns:
        Mapping of column name to Spark type string (e.g. "decimal(10,2)")
    """
    columns = {field.name: field.dataType.simpleString() for field in schema.fields}
    tags.register_table(object_ref, columns)
    return columns


def _evaluate_partition(plan: CompiledAccess, columns: List[str]):
    """
    Build the mapPartitions function for a compiled plan.

    Yields (status, masked column count, row tuple or None) per input row.
    A failed row raises, which fails the Spark task.
    """
    def evaluate(rows):
        for row in rows:
            outcome = plan.evaluate(row.asDict())
            if outcome.failed:
                raise outcome.error
            if outcome.emitted:
                values = tuple(outcome.row[column] for column in columns)
                yield outcome.status.value, len(outcome.masked_columns), values
            else:
                yield outcome.status.value, 0, None

    return evaluate


class SecureReader:
    """
    Applies row access and masking policies to Spark DataFrames.

    The returned DataFrame keeps the input schema. Rows hidden by the row
    access policy are removed; tagged columns are masked for the principal.

    Usage:
        reader = SecureReader(gov.evaluator, spark=spark)
        register_schema(gov.tags, "nlt.raw.opor", df.schema)

        principal = gov.use_role("alice", "nlt_test_role")
        visible_df = reader.apply(df, "nlt.raw.opor", principal)
    """

    def __init__(self, evaluator: AccessEvaluator, spark: Optional[SparkSession] = None):
        """
        Initialize secure reader.

        Args:
            evaluator: Access evaluator holding the table's policies
            spark: SparkSession (defaults to the active session)
        """
        self.evaluator = evaluator
        self.spark = spark or SparkSession.getActiveSession()

    def apply(
        self,
        df: DataFrame,
        object_ref,
        principal: Principal,
        stats: Optional[EvaluationStats] = None,
    ) -> DataFrame:
        """
        Filter and mask a DataFrame for one principal.

        Args:
            df: Source DataFrame; column names must match the registered table
            object_ref: Table the rows belong to
            principal: User and active role reading the table
            stats: Optional tracker; when given, the outcomes are cached and
                counted eagerly

        Returns:
            DataFrame with the same schema containing only visible, masked rows

        Raises:
            GovernanceError: If the plan cannot be compiled for the principal
        """
        ref = ObjectRef.of(object_ref)
        columns = list(df.columns)
        plan = self.evaluator.compile(ref, principal, columns)

        logger.info(
            f"Applying access plan to {ref} for {principal.user} as {principal.active_role}: "
            f"row policy={plan.row_policy or 'none'}, "
            f"masked columns={sorted(plan.column_masks) or 'none'}"
        )

        outcomes = df.rdd.mapPartitions(_evaluate_partition(plan, columns))

        if stats is not None:
            outcomes = outcomes.cache()
            totals = (
                outcomes
                .map(lambda item: (item[0], (1, item[1])))
                .reduceByKey(lambda a, b: (a[0] + b[0], a[1] + b[1]))
                .collectAsMap()
            )
            for status, (rows, masked) in totals.items():
                stats.record_totals(status, rows, masked_columns=masked)
            logger.info(f"Evaluated {stats.rows_read} row(s) of {ref}: {totals}")

        visible = outcomes.filter(lambda item: item[2] is not None).map(lambda item: item[2])
        result = self.spark.createDataFrame(visible, df.schema)
        if stats is not None:
            outcomes.unpersist()
        return result

    def read_table(
        self,
        table_name: str,
        principal: Principal,
        object_ref=None,
        stats: Optional[EvaluationStats] = None,
    ) -> DataFrame:
        """
        Read a catalog table and apply its policies.

        Args:
            table_name: Spark table name
            principal: User and active role reading the table
            object_ref: Governed table reference (defaults to table_name)
            stats: Optional tracker
        """
        df = self.spark.table(table_name)
        return self.apply(df, object_ref or table_name, principal, stats=stats)
