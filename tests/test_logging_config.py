"""
Test suite for structured logging and configuration
"""

import json
import logging

import pytest
from fastapi.testclient import TestClient

from check_treasury.api import app
from check_treasury.api.dependencies import get_treasury_system
from check_treasury.config import TreasuryConfig
from check_treasury.locking import LockManager
from check_treasury.logging_config import (
    JSONFormatter, correlation_context, get_correlation_id, log_action, log_transition,
    setup_logging,
)
from check_treasury.storage import InMemoryStorage
from check_treasury.treasury import TreasurySystem
from check_treasury.unit_of_work import UnitOfWorkFactory


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestStructuredLogging:
    """Test JSON log lines and log_action"""

    def setup_method(self):
        self.logger = logging.getLogger("tests.treasury.logging")
        self.logger.handlers = []
        self.handler = ListHandler()
        self.logger.addHandler(self.handler)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

    def test_log_action_attaches_context(self):
        log_action(self.logger, "info", "Check #5 in_portfolio -> deposited",
                   user_id="clerk", action="check_deposit", resource="check:abc",
                   correlation_id="req-1", extra={"from": "in_portfolio"})

        line = json.loads(JSONFormatter().format(self.handler.records[0]))
        assert line["level"] == "INFO"
        assert line["logger"] == "tests.treasury.logging"
        assert line["user_id"] == "clerk"
        assert line["action"] == "check_deposit"
        assert line["resource"] == "check:abc"
        assert line["correlation_id"] == "req-1"
        assert line["extra"] == {"from": "in_portfolio"}

    def test_missing_context_is_omitted(self):
        log_action(self.logger, "warning", "plain")
        line = json.loads(JSONFormatter().format(self.handler.records[0]))
        assert "user_id" not in line
        assert "extra" not in line

    def test_disabled_level_is_skipped(self):
        log_action(self.logger, "debug", "noise")
        assert self.handler.records == []

    def test_transition_line_carries_check_fields(self):
        log_transition(self.logger, "abc", 5, "in_portfolio", "deposited", "deposit",
                       user_id="clerk")

        line = json.loads(JSONFormatter().format(self.handler.records[0]))
        assert line["message"] == "Check #5 in_portfolio -> deposited"
        assert line["action"] == "check_deposit"
        assert line["resource"] == "check:abc"
        assert line["check_id"] == "abc"
        assert line["serial_number"] == 5
        assert line["from_state"] == "in_portfolio"
        assert line["to_state"] == "deposited"
        assert "checkbook_id" not in line

    def test_unknown_entity_field_is_an_error(self):
        with pytest.raises(TypeError):
            log_action(self.logger, "info", "typo", check="abc")

    def test_correlation_context(self):
        assert get_correlation_id() is None
        with correlation_context("req-7"):
            log_action(self.logger, "info", "inside")
            uow = UnitOfWorkFactory(InMemoryStorage(), LockManager())("check_deposit")
            assert uow.correlation_id == "req-7"
        log_action(self.logger, "info", "outside")

        inside, outside = [json.loads(JSONFormatter().format(r)) for r in self.handler.records]
        assert inside["correlation_id"] == "req-7"
        assert "correlation_id" not in outside
        assert get_correlation_id() is None

    def test_explicit_correlation_id_wins(self):
        with correlation_context("req-7"):
            log_action(self.logger, "info", "pinned", correlation_id="job-1")
        assert self.handler.records[0].correlation_id == "job-1"

    def test_setup_logging_to_file(self, tmp_path):
        log_file = tmp_path / "treasury.log"
        logger = setup_logging("DEBUG", "tests.treasury.file", "text", str(log_file))
        logger.debug("written")
        for handler in logger.handlers:
            handler.flush()

        assert "written" in log_file.read_text()
        assert logger.propagate is False
        assert len(logger.handlers) == 1


class TestRequestCorrelation:
    """Domain log lines written while serving a request carry its id"""

    def setup_method(self):
        self.logger = logging.getLogger("treasury.checks")
        self.previous_level = self.logger.level
        self.handler = ListHandler()
        self.logger.addHandler(self.handler)
        self.logger.setLevel(logging.INFO)

        config = TreasuryConfig(database_url="memory://", lock_timeout_seconds=1.0)
        self.system = TreasurySystem(storage=InMemoryStorage(), config=config)
        app.dependency_overrides[get_treasury_system] = lambda: self.system
        self.client = TestClient(app)

    def teardown_method(self):
        app.dependency_overrides.clear()
        self.logger.removeHandler(self.handler)
        self.logger.setLevel(self.previous_level)

    def test_transition_log_has_request_id(self):
        bank = self.system.catalog.register_bank("Banco Nacion")
        check_id = self.client.post("/checks", json={
            "direction": "received", "amount": "10", "serial_number": 77, "bank_id": bank.id,
        }, headers={"X-Request-ID": "req-create"}).json()["check"]["id"]
        self.client.post(f"/checks/{check_id}/void", json={"reason": "duplicate"},
                         headers={"X-Request-ID": "req-void"})

        lines = [json.loads(JSONFormatter().format(r)) for r in self.handler.records]
        created = [line for line in lines if line.get("action") == "check_create"][0]
        voided = [line for line in lines if line.get("action") == "check_void"][0]
        assert created["correlation_id"] == "req-create"
        assert created["to_state"] == "in_portfolio"
        assert voided["correlation_id"] == "req-void"
        assert voided["check_id"] == check_id
        assert voided["serial_number"] == 77
        assert (voided["from_state"], voided["to_state"]) == ("in_portfolio", "voided")


class TestTreasuryConfig:
    """Test environment-driven configuration"""

    def test_defaults(self):
        config = TreasuryConfig()
        assert config.lock_timeout_seconds == 5.0
        assert config.default_checkbook_length == 50
        assert config.max_page_size == 100

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("TREASURY_LOCK_TIMEOUT_SECONDS", "0.5")
        monkeypatch.setenv("TREASURY_DATABASE_URL", "memory://")

        config = TreasuryConfig()
        assert config.lock_timeout_seconds == 0.5
        assert config.database_url == "memory://"
