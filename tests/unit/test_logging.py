"""
Unit tests for log formatting
"""

import logging
from core.exceptions import SourceUnavailable
from core.logging import LOG_FORMAT, ErrorContextFormatter


def make_log_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("pipeline.coordinator", logging.ERROR, __file__, 1, "Run failed", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_error_context_is_appended():
    error = SourceUnavailable("down", context={"pipeline_id": "orders_to_sales", "step": "extract"})
    formatter = ErrorContextFormatter(LOG_FORMAT)

    line = formatter.format(make_log_record(error_context=error.to_dict()))

    assert line.endswith('"pipeline_id": "orders_to_sales", "step": "extract"}')
    assert "| Run failed | context=" in line


def test_plain_records_unchanged():
    formatter = ErrorContextFormatter(LOG_FORMAT)

    line = formatter.format(make_log_record())

    assert line.endswith("| pipeline.coordinator | Run failed")
