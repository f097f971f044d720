"""Tests for logging setup."""

from __future__ import annotations

import json
import logging
import sys

from converge.main import JsonFormatter


class TestJsonFormatter:
    """Tests for structured log formatting."""

    def test_extra_fields_included(self) -> None:
        """Test extra context lands in the JSON document."""
        record = logging.LogRecord(
            name="converge.executor",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="Step blocked",
            args=(),
            exc_info=None,
        )
        record.step = "dns_record.www"
        record.prerequisite = "cdn_distribution.site"

        document = json.loads(JsonFormatter().format(record))

        assert document["level"] == "WARNING"
        assert document["message"] == "Step blocked"
        assert document["logger"] == "converge.executor"
        assert document["step"] == "dns_record.www"
        assert document["prerequisite"] == "cdn_distribution.site"
        assert document["timestamp"].endswith("Z")
        assert "lineno" not in document

    def test_exception_included(self) -> None:
        """Test tracebacks are rendered into the document."""
        try:
            raise ValueError("boom")
        except ValueError:
            exc_info = sys.exc_info()

        record = logging.LogRecord(
            name="converge",
            level=logging.ERROR,
            pathname=__file__,
            lineno=1,
            msg="Unexpected error",
            args=(),
            exc_info=exc_info,
        )

        document = json.loads(JsonFormatter().format(record))

        assert "ValueError: boom" in document["exception"]
