"""
Tests for configuration, logging setup and system wiring
"""

import json
import logging
from decimal import Decimal
from datetime import date

from lending_core import config as config_module
from lending_core.config import LendingConfig, get_config, reload_config
from lending_core.dates import FixedClock
from lending_core.logging_config import JSONFormatter, get_logger, log_action, setup_logging
from lending_core.models import AgreementType, LedgerEntryType
from lending_core.storage import InMemoryStorage, SQLiteStorage
from lending_core.system import LendingSystem


class TestLendingConfig:
    """Test pydantic-settings configuration"""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("LENDING_AGREEMENT_TOLERANCE", raising=False)
        config = LendingConfig()

        assert config.installment_paid_tolerance == Decimal("0.05")
        assert config.agreement_tolerance == Decimal("0.10")
        assert config.default_fine_percent == Decimal("2")
        assert config.default_daily_interest_percent == Decimal("1")
        assert config.default_fixed_term_days == 15
        assert config.monthly_period_days == 30
        assert config.route_fixed_term_to_dedicated_strategy is False
        assert config.persistence_deadline_seconds is None

    def test_environment_override(self, monkeypatch):
        """Test LENDING_ prefixed variables, case-insensitively"""
        monkeypatch.setenv("LENDING_AGREEMENT_TOLERANCE", "0.25")
        monkeypatch.setenv("lending_route_fixed_term_to_dedicated_strategy", "true")

        config = LendingConfig()
        assert config.agreement_tolerance == Decimal("0.25")
        assert config.route_fixed_term_to_dedicated_strategy is True

    def test_reload_config(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("LENDING_MONTHLY_PERIOD_DAYS", "28")
        try:
            reloaded = reload_config()
            assert reloaded.monthly_period_days == 28
            assert get_config() is reloaded
        finally:
            config_module.config = original


class TestLogging:
    """Test structured logging helpers"""

    def test_json_formatter(self):
        logger = get_logger("lending_test.formatter")
        record = logger.makeRecord(logger.name, logging.INFO, __name__, 0, "Loan issued", (), None)
        record.action = "issue_loan"
        record.resource = "loan:L1"

        payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "Loan issued"
        assert payload["level"] == "INFO"
        assert payload["action"] == "issue_loan"
        assert payload["resource"] == "loan:L1"
        assert "correlation_id" not in payload

    def test_setup_logging_installs_single_handler(self):
        logger = setup_logging("DEBUG", "lending_test.setup")
        logger = setup_logging("WARNING", "lending_test.setup", log_format="text")

        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_log_action_attaches_fields(self, caplog):
        logger = get_logger("lending_test.actions")
        with caplog.at_level(logging.INFO, logger="lending_test.actions"):
            log_action(
                logger, "info", "Entry posted", action="post_entry",
                resource="loan:L1", correlation_id="corr-1", extra={"amount": "10.00"}
            )

        record = caplog.records[0]
        assert record.action == "post_entry"
        assert record.correlation_id == "corr-1"
        assert record.extra == {"amount": "10.00"}


class TestLendingSystem:
    """Test component wiring"""

    def test_components_share_state(self):
        system = LendingSystem(
            config=LendingConfig(), storage=InMemoryStorage(), clock=FixedClock(date(2024, 1, 15))
        )

        assert system.loan_manager.ledger is system.ledger
        assert system.payment_processor.locks is system.ledger.locks
        assert system.agreement_engine.clock is system.ledger.clock

    def test_storage_from_database_url(self):
        system = LendingSystem(config=LendingConfig(database_url="sqlite:///:memory:"))
        try:
            assert isinstance(system.storage, SQLiteStorage)
        finally:
            system.close()

    def test_audit_switch(self):
        system = LendingSystem(config=LendingConfig(enable_audit_logging=False), storage=InMemoryStorage())
        system.loan_manager.create_source("Caixa", balance="100")
        assert system.audit_trail.verify_integrity()["total_events"] == 0

    def test_end_to_end(self):
        """Test issuance, an agreement and its settlement through one system"""
        system = LendingSystem(
            config=LendingConfig(), storage=InMemoryStorage(), clock=FixedClock(date(2024, 2, 10))
        )
        source = system.loan_manager.create_source("Caixa", balance="1000")
        loan = system.loan_manager.issue_loan({
            "debtor_name": "Rita",
            "principal": "500",
            "interest_rate": "10",
            "start_date": "2024-01-01",
            "source_id": source.id,
        })

        agreement = system.agreement_engine.create_agreement(
            loan.id, 2, agreement_type=AgreementType.PARCELADO_SEM_JUROS, total_debt="600"
        )
        for inst in agreement.installments:
            receipt = system.agreement_engine.process_payment(agreement.id, inst.id, inst.amount)

        assert receipt.completed
        assert system.loan_manager.get_source(source.id).balance == Decimal("1100.00")
        types = [e.entry_type for e in system.loan_manager.get_loan(loan.id).ledger]
        assert types == [
            LedgerEntryType.LEND_MORE, LedgerEntryType.AGREEMENT_PAYMENT, LedgerEntryType.AGREEMENT_PAYMENT
        ]
        assert system.audit_trail.verify_integrity()["valid"] is True
