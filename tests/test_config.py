"""
Test suite for configuration and structured logging
"""

import json
import logging
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from tallybank.config import TallyConfig, get_config, reload_config
from tallybank.logging_config import JSONFormatter, log_action, setup_logging


class TestConfig:
    """Test environment-driven configuration"""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("TALLY_DATABASE_URL", raising=False)
        config = TallyConfig(_env_file=None)

        assert config.database_url == "sqlite:///tallybank.db"
        assert config.rounding_tolerance == Decimal("0.01")
        assert config.max_transaction_period_days == 365
        assert config.enable_audit_logging is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TALLY_DATABASE_URL", "memory://")
        monkeypatch.setenv("TALLY_SETTLEMENT_HOUR", "2")
        monkeypatch.setenv("TALLY_LOG_FORMAT", "text")

        config = TallyConfig(_env_file=None)

        assert config.database_url == "memory://"
        assert config.settlement_hour == 2
        assert config.log_format == "text"

    def test_invalid_settlement_hour(self, monkeypatch):
        monkeypatch.setenv("TALLY_SETTLEMENT_HOUR", "25")
        with pytest.raises(PydanticValidationError):
            TallyConfig(_env_file=None)

    def test_reload_config_picks_up_environment(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TALLY_LOG_LEVEL", "DEBUG")
        try:
            reloaded = reload_config()
            assert reloaded.log_level == "DEBUG"
            assert get_config() is reloaded
        finally:
            monkeypatch.delenv("TALLY_LOG_LEVEL")
            reload_config()
        assert get_config().log_level == "INFO"


class TestStructuredLogging:
    """Test JSON log lines"""

    def test_log_action_carries_structured_fields(self):
        logger = logging.getLogger("tallybank.test.structured")
        logger.setLevel(logging.INFO)
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Capture()
        logger.addHandler(handler)
        try:
            log_action(logger, "info", "Loan disbursed", user_id="u1", action="LOAN_DISBURSED",
                       resource="loan-1", correlation_id="run-1", extra={"amount": "100.00"})
            log_action(logger, "debug", "Hidden")
        finally:
            logger.removeHandler(handler)

        assert len(records) == 1
        line = json.loads(JSONFormatter().format(records[0]))
        assert line["message"] == "Loan disbursed"
        assert line["action"] == "LOAN_DISBURSED"
        assert line["resource"] == "loan-1"
        assert line["correlation_id"] == "run-1"
        assert line["extra"] == {"amount": "100.00"}
        assert line["logger"] == "tallybank.test.structured"

    def test_setup_logging_writes_to_file(self, tmp_path):
        log_file = tmp_path / "bank.log"
        logger = setup_logging("INFO", "tallybank.test.file", "json", str(log_file))
        try:
            logger.info("Settlement finished")
            for handler in logger.handlers:
                handler.flush()
        finally:
            for handler in logger.handlers[:]:
                logger.removeHandler(handler)
                handler.close()

        line = json.loads(log_file.read_text().strip())
        assert line["level"] == "INFO"
        assert line["message"] == "Settlement finished"
