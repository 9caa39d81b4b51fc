from .tenancy import Theater
from .auth import User, SessionToken
from .catalog import Product, ComboOffer, ComboComponent
from .stock import StockSheet, StockEntry, CartReservation
from .orders import Order, OrderLine, OrderLineComponent, OrderAuditEntry
from .documents import DocumentSequence, LedgerEvent

__all__ = [
    'Theater',
    'User', 'SessionToken',
    'Product', 'ComboOffer', 'ComboComponent',
    'StockSheet', 'StockEntry', 'CartReservation',
    'Order', 'OrderLine', 'OrderLineComponent', 'OrderAuditEntry',
    'DocumentSequence', 'LedgerEvent',
]
