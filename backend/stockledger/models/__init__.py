from .catalog import LifecycleState, Outlet, Product, ProductVariant
from .inventory import Stock, StockMovement
from .documents import (
    StockIn, StockInItem, StockTransfer, StockTransferItem,
    StockAdjustment, StockOpname, StockOpnameItem,
)
from .sales import Order, OrderItem
from .integrations import ChannelSkuMap, WebhookEvent
from .imports import CsvImportBatch, CsvImportRow
from .auth import User, SessionToken
from .outbox import OutboxMessage

__all__ = [
    'LifecycleState', 'Outlet', 'Product', 'ProductVariant',
    'Stock', 'StockMovement',
    'StockIn', 'StockInItem', 'StockTransfer', 'StockTransferItem',
    'StockAdjustment', 'StockOpname', 'StockOpnameItem',
    'Order', 'OrderItem',
    'ChannelSkuMap', 'WebhookEvent',
    'CsvImportBatch', 'CsvImportRow',
    'User', 'SessionToken',
    'OutboxMessage',
]
