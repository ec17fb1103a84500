from .tenancy import Business, Location
from .auth import Role, Employee, SessionToken
from .inventory import Product, StockEntry, StockHistory
from .sales import Sale, SaleItem, SaleReturn
from .audit import AuditLog

__all__ = [
    'Business', 'Location',
    'Role', 'Employee', 'SessionToken',
    'Product', 'StockEntry', 'StockHistory',
    'Sale', 'SaleItem', 'SaleReturn',
    'AuditLog',
]
