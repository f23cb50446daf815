"""
Tests for access decision auditing.

Spark is mocked; persistence tests only check what is handed to the
DataFrame writer.
"""

import json
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from veilflow.core.config import FrameworkConfig, ObservabilityConfig, set_config
from veilflow.observability.audit import AuditTrail, Decision


def make_decision(outcome="emitted", **overrides):
    values = dict(
        table="NLT.RAW.OPOR",
        user="alice",
        active_role="NLT_TEST_ROLE",
        effective_roles=frozenset({"NLT_TEST_ROLE", "PUBLIC"}),
        outcome=outcome,
        row_policy="CUSTOMER_CARDCODE_ROW_POLICY",
        masked_columns={"ADDRESS": "PII_STRING_MASK"} if outcome == "emitted" else {},
        timestamp=datetime(2024, 1, 1, 12, 0, 0),
    )
    values.update(overrides)
    return Decision(**values)


@pytest.fixture
def mock_spark():
    """Active SparkSession whose DataFrame writer is a MagicMock."""
    spark = MagicMock()
    with patch("veilflow.observability.audit.SparkSession") as session_cls:
        session_cls.getActiveSession.return_value = spark
        yield spark


class TestDecision:
    """Test Decision records."""

    def test_to_record(self):
        record = make_decision().to_record()

        assert record[0] == datetime(2024, 1, 1, 12, 0, 0)
        assert record[1] == "NLT.RAW.OPOR"
        assert json.loads(record[4]) == ["NLT_TEST_ROLE", "PUBLIC"]
        assert record[5] == "emitted"
        assert json.loads(record[7]) == {"ADDRESS": "PII_STRING_MASK"}
        assert record[8] is None

    def test_record_matches_schema_width(self):
        assert len(make_decision().to_record()) == len(AuditTrail.SCHEMA.fields)

    def test_no_masked_columns(self):
        assert make_decision("dropped").to_record()[7] is None


class TestAuditTrail:
    """Test the in-memory observer."""

    def test_collects_decisions(self):
        trail = AuditTrail(persist=False)
        trail(make_decision())
        trail(make_decision("dropped"))
        trail(make_decision("failed", error="Column 'CARDCODE' is missing from row"))

        assert trail.summary() == {"emitted": 1, "dropped": 1, "failed": 1}

    def test_fired_policies(self):
        trail = AuditTrail(persist=False)
        trail(make_decision())
        trail(make_decision("dropped"))

        assert trail.fired_policies() == {
            "CUSTOMER_CARDCODE_ROW_POLICY": 2,
            "PII_STRING_MASK": 1,
        }

    def test_as_dicts_and_clear(self):
        trail = AuditTrail(persist=False)
        trail(make_decision())

        assert trail.as_dicts()[0]["user"] == "alice"
        trail.clear()
        assert trail.decisions == []

    def test_persist_defaults_from_config(self):
        set_config(FrameworkConfig(observability=ObservabilityConfig(audit_to_delta=True)))

        assert AuditTrail().persist is True


class TestFlush:
    """Test persisting decisions to Delta."""

    def test_disabled(self, mock_spark):
        trail = AuditTrail(persist=False)
        trail(make_decision())

        assert trail.flush() == 0
        mock_spark.createDataFrame.assert_not_called()

    def test_writes_to_audit_table(self, mock_spark):
        set_config(FrameworkConfig(env="test"))
        trail = AuditTrail(persist=True)
        trail(make_decision())
        trail(make_decision("dropped"))

        written = trail.flush()

        assert written == 2
        data, schema = mock_spark.createDataFrame.call_args[0]
        assert len(data) == 2
        assert schema is AuditTrail.SCHEMA
        df = mock_spark.createDataFrame.return_value
        df.write.format.assert_called_once_with("delta")
        df.write.format.return_value.mode.return_value.saveAsTable.assert_called_once_with(
            "veilflow_test.veilflow.access_decisions"
        )
        assert trail.decisions == []

    def test_no_active_session(self):
        trail = AuditTrail(persist=True)
        trail(make_decision())

        with patch("veilflow.observability.audit.SparkSession") as session_cls:
            session_cls.getActiveSession.return_value = None
            assert trail.flush() == 0

        assert len(trail.decisions) == 1

    def test_write_failure_propagates(self, mock_spark):
        mock_spark.createDataFrame.side_effect = RuntimeError("table locked")
        trail = AuditTrail(persist=True)
        trail(make_decision())

        with pytest.raises(RuntimeError):
            trail.flush()

        assert len(trail.decisions) == 1
