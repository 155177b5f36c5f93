"""
Counterpart Module

Counterparts (suppliers, landlords, tax authorities...) and their bank
accounts belong to the counterpart subsystem. Services may point at one of
each; the engine reads them only to decorate service summaries.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Any, Optional
import uuid

from .storage import StorageInterface, StorageRecord


@dataclass
class Counterpart(StorageRecord):
    """Person or company on the other side of an obligation"""
    name: str
    tax_id: Optional[str] = None


@dataclass
class CounterpartAccount(StorageRecord):
    """Bank account of a counterpart"""
    counterpart_id: str
    account_identifier: str
    bank_name: Optional[str] = None
    account_type: Optional[str] = None


@dataclass(frozen=True)
class CounterpartDisplay:
    """Display fields joined onto a service summary"""
    counterpart_name: Optional[str] = None
    counterpart_account_identifier: Optional[str] = None
    counterpart_account_bank_name: Optional[str] = None
    counterpart_account_type: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'counterpart_name': self.counterpart_name,
            'counterpart_account_identifier': self.counterpart_account_identifier,
            'counterpart_account_bank_name': self.counterpart_account_bank_name,
            'counterpart_account_type': self.counterpart_account_type
        }


class CounterpartDirectory:
    """Read access to counterparts and their accounts"""
    
    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.counterparts_table = "counterparts"
        self.accounts_table = "counterpart_accounts"
    
    def add_counterpart(self, name: str, tax_id: Optional[str] = None) -> Counterpart:
        now = datetime.now(timezone.utc)
        counterpart = Counterpart(id=str(uuid.uuid4()), created_at=now, updated_at=now,
                                  name=name, tax_id=tax_id)
        self.storage.save(self.counterparts_table, counterpart.id, counterpart.to_dict())
        return counterpart
    
    def add_account(self, counterpart_id: str, account_identifier: str,
                    bank_name: Optional[str] = None,
                    account_type: Optional[str] = None) -> CounterpartAccount:
        now = datetime.now(timezone.utc)
        account = CounterpartAccount(
            id=str(uuid.uuid4()), created_at=now, updated_at=now,
            counterpart_id=counterpart_id, account_identifier=account_identifier,
            bank_name=bank_name, account_type=account_type
        )
        self.storage.save(self.accounts_table, account.id, account.to_dict())
        return account
    
    def get_counterpart(self, counterpart_id: str) -> Optional[Counterpart]:
        data = self.storage.load(self.counterparts_table, counterpart_id)
        return Counterpart.from_dict(data) if data else None
    
    def get_account(self, account_id: str) -> Optional[CounterpartAccount]:
        data = self.storage.load(self.accounts_table, account_id)
        return CounterpartAccount.from_dict(data) if data else None
    
    def display_for(self, counterpart_id: Optional[str],
                    account_id: Optional[str]) -> CounterpartDisplay:
        """Resolve display fields; unknown ids simply yield empty fields"""
        counterpart = self.get_counterpart(counterpart_id) if counterpart_id else None
        account = self.get_account(account_id) if account_id else None
        return CounterpartDisplay(
            counterpart_name=counterpart.name if counterpart else None,
            counterpart_account_identifier=account.account_identifier if account else None,
            counterpart_account_bank_name=account.bank_name if account else None,
            counterpart_account_type=account.account_type if account else None
        )
