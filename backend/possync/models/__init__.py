from .sync import OfflineSyncOperation
from .branches import Branch, BranchSalesPolicy, DiscountPolicy
from .menu import MenuItem, BranchMenuItem
from .sales import SaleRecord, SaleItemRecord
from .cash import CashRegister, CashSessionRecord, CashMovement
from .audit import AuditLog
from .outbox import OutboxEvent

__all__ = [
    'OfflineSyncOperation',
    'Branch', 'BranchSalesPolicy', 'DiscountPolicy',
    'MenuItem', 'BranchMenuItem',
    'SaleRecord', 'SaleItemRecord',
    'CashRegister', 'CashSessionRecord', 'CashMovement',
    'AuditLog',
    'OutboxEvent',
]
