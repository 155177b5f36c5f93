"""
Tests for structured logging
"""

import json
import logging
import tempfile
from pathlib import Path

from core_obligations.logging_config import get_logger, log_action, setup_logging


class TestStructuredLogging:

    def teardown_method(self):
        logger = logging.getLogger("obligations.test")
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    def test_json_records_carry_action_fields(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            log_file = Path(tmp_dir) / "obligations.log"
            logger = setup_logging(level="INFO", logger_name="obligations.test", log_file=str(log_file))

            log_action(logger, "info", "Loan created: Truck", action="create_loan",
                       resource="loan:L1", extra={"total_installments": 3})
            logger.handlers[0].flush()

            entry = json.loads(log_file.read_text().strip())
            assert entry["level"] == "INFO"
            assert entry["message"] == "Loan created: Truck"
            assert entry["action"] == "create_loan"
            assert entry["resource"] == "loan:L1"
            assert entry["extra"] == {"total_installments": 3}
            assert "user_id" not in entry
            self.teardown_method()

    def test_text_format(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            log_file = Path(tmp_dir) / "obligations.log"
            logger = setup_logging(logger_name="obligations.test", log_format="text", log_file=str(log_file))

            log_action(logger, "warning", "2 installments overdue", action="promote_overdue")
            logger.handlers[0].flush()

            line = log_file.read_text().strip()
            assert "WARNING" in line
            assert line.endswith("action=promote_overdue")
            self.teardown_method()

    def test_level_filtering(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            log_file = Path(tmp_dir) / "obligations.log"
            logger = setup_logging(level="WARNING", logger_name="obligations.test", log_file=str(log_file))

            log_action(logger, "info", "Service updated", action="update_service")
            logger.handlers[0].flush()

            assert log_file.read_text() == ""
            self.teardown_method()

    def test_get_logger_returns_named_logger(self):
        assert get_logger("obligations.loans").name == "obligations.loans"
