"""
Lending system wiring

Builds every engine component over one storage backend, audit trail, clock
and lock registry, the way an application embeds the engine.
"""

from typing import Optional

from .agreements import AgreementEngine
from .audit import AuditTrail
from .config import LendingConfig, get_config
from .dates import Clock
from .ledger import LedgerService
from .loans import LoanManager
from .logging_config import setup_logging
from .payments import PaymentProcessor
from .storage import StorageInterface, create_storage


class LendingSystem:
    """Lending engine with all components initialized"""

    def __init__(
        self,
        config: Optional[LendingConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        configure_logging: bool = False
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.log_level, log_format=self.config.log_format)

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.ledger = LedgerService(self.storage, self.audit_trail, clock=clock, config=self.config)
        self.loan_manager = LoanManager(self.storage, self.audit_trail, ledger=self.ledger)
        self.payment_processor = PaymentProcessor(self.storage, self.ledger, self.audit_trail)
        self.agreement_engine = AgreementEngine(self.storage, self.ledger, self.audit_trail)

    def close(self) -> None:
        self.storage.close()
