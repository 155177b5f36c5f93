"""
Obligation Engine

Wires storage, audit trail, collaborator directories and both obligation
managers together. One engine instance is the handle passed to every
caller; nothing in the package keeps module-level connection state.
"""

from typing import Optional

from .audit import AuditTrail
from .clock import Clock, SystemClock
from .config import ObligationsConfig, get_config
from .counterparts import CounterpartDirectory
from .currency import Currency
from .loans import LoanManager
from .logging_config import get_logger
from .services import ServiceManager
from .storage import StorageInterface, create_storage
from .transactions import TransactionDirectory

logger = get_logger("obligations.engine")


class ObligationEngine:
    """Obligation scheduling and reconciliation engine with all components initialized"""

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[ObligationsConfig] = None,
        clock: Optional[Clock] = None
    ):
        self.config = config or get_config()
        self.storage = storage
        self.clock = clock or SystemClock()
        self.currency = Currency.from_code(self.config.currency)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.transaction_directory = TransactionDirectory(self.storage, currency=self.currency)
        self.counterpart_directory = CounterpartDirectory(self.storage)

        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.transaction_directory,
            clock=self.clock,
            currency=self.currency,
            max_installments=self.config.max_loan_installments
        )
        self.service_manager = ServiceManager(
            self.storage, self.audit_trail, self.transaction_directory,
            self.counterpart_directory,
            clock=self.clock,
            currency=self.currency,
            default_months=self.config.default_months_to_generate,
            max_months=self.config.max_months_to_generate,
            max_grace_days=self.config.max_grace_days
        )

    @classmethod
    def from_config(cls, config: Optional[ObligationsConfig] = None,
                    clock: Optional[Clock] = None) -> 'ObligationEngine':
        """Build an engine with the storage named by config.database_url"""
        config = config or get_config()
        storage = create_storage(config.database_url)
        logger.info("Obligation engine storage: %s", type(storage).__name__)
        return cls(storage, config=config, clock=clock)

    def close(self) -> None:
        self.storage.close()
