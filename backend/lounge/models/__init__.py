from .inventory import InventoryItem, LedgerEntry, ENTRY_TYPES, REVERSAL_KINDS
from .customers import Customer, LoyaltyTransaction, LOYALTY_TIERS

__all__ = [
    'InventoryItem', 'LedgerEntry', 'ENTRY_TYPES', 'REVERSAL_KINDS',
    'Customer', 'LoyaltyTransaction', 'LOYALTY_TIERS',
]
