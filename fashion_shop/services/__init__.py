from .stock_ledger import StockLedger
from .flash_sale_service import FlashSaleService
from .voucher_service import VoucherService
from .cart_service import CartService
from .order_service import OrderService
from .catalog_service import CatalogService
from .customer_analytics_service import CustomerAnalyticsService
from .notification_service import NotificationService
from .background_jobs import BackgroundJobs

__all__ = [
    "StockLedger",
    "FlashSaleService",
    "VoucherService",
    "CartService",
    "OrderService",
    "CatalogService",
    "CustomerAnalyticsService",
    "NotificationService",
    "BackgroundJobs",
]
