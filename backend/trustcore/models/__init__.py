from .tenancy import Store
from .auth import User
from .inventory import Product
from .customers import Customer
from .sales import CheckoutTransaction, LineItem
from .security import SecurityEvent, AuditLog, KeyedStoreEntry

__all__ = [
    'Store',
    'User',
    'Product',
    'Customer',
    'CheckoutTransaction', 'LineItem',
    'SecurityEvent', 'AuditLog', 'KeyedStoreEntry',
]
