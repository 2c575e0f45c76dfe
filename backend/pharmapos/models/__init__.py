from .catalog import Product
from .sales import Sale, SaleLine, ReceiptSequence
from .auth import User, SessionToken
from .security import SecurityEvent

__all__ = [
    'Product',
    'Sale', 'SaleLine', 'ReceiptSequence',
    'User', 'SessionToken',
    'SecurityEvent',
]
