"""
Logging framework for VeilFlow.

Provides console logging with optional persistence to a Delta table.
"""

import logging
from datetime import datetime
from pyspark.sql import SparkSession, Row
from veilflow.core.config import get_config


class DeltaLogHandler(logging.Handler):
    """
    Custom log handler that writes to Delta table.
    """

    def __init__(self, catalog: str, table: str):
        super().__init__()
        self.catalog = catalog
        self.table = table
        self.full_table = f"{catalog}.{table}"
        self.spark = None

    def emit(self, record: logging.LogRecord):
        """Write log record to Delta table."""
        try:
            if self.spark is None:
                self.spark = SparkSession.getActiveSession()

            if self.spark:
                log_row = Row(
                    timestamp=datetime.fromtimestamp(record.created),
                    level=record.levelname,
                    logger=record.name,
                    message=self.format(record),
                    module=record.module,
                    function=record.funcName,
                    line=record.lineno
                )

                df = self.spark.createDataFrame([log_row])
                df.write.format("delta").mode("append").saveAsTable(self.full_table)
        except Exception:
            # A failing sink must never break evaluation
            self.handleError(record)


class FrameworkLogger:
    """
    Framework-wide logger with optional Delta persistence.

    Keyword arguments passed to the log methods are attached to the record
    as ``extra`` fields; ``exc_info`` is forwarded to the logging module.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(f"veilflow.{name}")
        self.config = get_config()
        self._setup_handlers()

    def _setup_handlers(self):
        """Setup log handlers based on configuration."""
        # Loggers are process-wide singletons; configure each only once
        if not self.logger.handlers:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                logging.Formatter(
                    '%(asctime)s [%(levelname)s] [%(name)s] %(message)s'
                )
            )
            self.logger.addHandler(console_handler)

            if self.config.observability.log_to_delta:
                catalog = self.config.get_catalog_name()
                table = self.config.observability.log_table
                delta_handler = DeltaLogHandler(catalog, table)
                delta_handler.setFormatter(
                    logging.Formatter('%(message)s')
                )
                self.logger.addHandler(delta_handler)

        level = getattr(logging, self.config.observability.log_level.upper())
        self.logger.setLevel(level)

    def _log(self, level: int, message: str, kwargs: dict):
        exc_info = kwargs.pop("exc_info", False)
        self.logger.log(level, message, exc_info=exc_info, extra=kwargs or None)

    def debug(self, message: str, **kwargs):
        """Log debug message."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message."""
        self._log(logging.ERROR, message, kwargs)

    def exception(self, message: str, **kwargs):
        """Log exception with traceback."""
        kwargs["exc_info"] = True
        self._log(logging.ERROR, message, kwargs)


def get_logger(name: str) -> FrameworkLogger:
    """Get a framework logger instance."""
    return FrameworkLogger(name)
