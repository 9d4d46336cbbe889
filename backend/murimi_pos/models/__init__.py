from .auth import User, SessionToken
from .catalog import Category, Supplier, Product, WholesaleTier, StockEntry
from .sales import Sale, SaleItem, Payment, Refund
from .sync import OfflineSyncQueue
from .audit import AuditLog
from .security import RateLimitCounter
from .settings import Setting

__all__ = [
    'User', 'SessionToken',
    'Category', 'Supplier', 'Product', 'WholesaleTier', 'StockEntry',
    'Sale', 'SaleItem', 'Payment', 'Refund',
    'OfflineSyncQueue',
    'AuditLog',
    'RateLimitCounter',
    'Setting',
]
