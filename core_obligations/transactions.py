"""
Payment Reference Module

Financial movements are owned by the transactions subsystem (bank imports,
manual entries). The obligations engine only looks them up to validate a
settling-payment link and to join their descriptive fields for display; it
never modifies them.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Any, Optional
from enum import Enum
import uuid

from .currency import Currency, DEFAULT_CURRENCY, Numeric, round_money
from .storage import StorageInterface, StorageRecord


class TransactionDirection(Enum):
    """Direction of a financial movement"""
    IN = "in"
    OUT = "out"


@dataclass
class Transaction(StorageRecord):
    """External financial movement"""
    amount: Decimal
    timestamp: datetime
    description: Optional[str] = None
    direction: TransactionDirection = TransactionDirection.OUT
    
    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['amount'] = str(self.amount)
        result['timestamp'] = self.timestamp.isoformat()
        result['direction'] = self.direction.value
        return result
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            amount=Decimal(data['amount']),
            timestamp=datetime.fromisoformat(data['timestamp']),
            description=data.get('description'),
            direction=TransactionDirection(data.get('direction', 'out'))
        )


@dataclass(frozen=True)
class TransactionSummary:
    """Descriptive fields joined onto a paid schedule entry"""
    id: str
    description: Optional[str]
    timestamp: datetime
    amount: Optional[Decimal]
    
    @classmethod
    def from_transaction(cls, transaction: Transaction) -> 'TransactionSummary':
        return cls(
            id=transaction.id,
            description=transaction.description,
            timestamp=transaction.timestamp,
            amount=transaction.amount
        )
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'description': self.description,
            'timestamp': self.timestamp.isoformat(),
            'amount': str(self.amount) if self.amount is not None else None
        }


class TransactionDirectory:
    """
    Lookup of payment references by id
    """
    
    def __init__(self, storage: StorageInterface, table_name: str = "transactions",
                 currency: Currency = DEFAULT_CURRENCY):
        self.storage = storage
        self.table_name = table_name
        self.currency = currency
    
    def record_transaction(
        self,
        amount: Numeric,
        timestamp: Optional[datetime] = None,
        description: Optional[str] = None,
        direction: TransactionDirection = TransactionDirection.OUT,
        transaction_id: Optional[str] = None
    ) -> Transaction:
        """Register a movement (used by imports and fixtures), rounded to the directory currency"""
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=transaction_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            amount=round_money(amount, self.currency),
            timestamp=timestamp or now,
            description=description,
            direction=direction
        )
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction
    
    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None
    
    def get_summary(self, transaction_id: Optional[str]) -> Optional[TransactionSummary]:
        if not transaction_id:
            return None
        transaction = self.get_transaction(transaction_id)
        if transaction:
            return TransactionSummary.from_transaction(transaction)
        return None
