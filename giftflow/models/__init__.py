# giftflow/models/__init__.py
from giftflow.models.order import Order
from giftflow.models.order_item import OrderItem
from giftflow.models.order_status_event import OrderStatusEvent
from giftflow.models.settlement_record import SettlementRecord
from giftflow.models.vendor_payout_account import VendorPayoutAccount
from giftflow.models.wallet import Wallet
from giftflow.models.wallet_transaction import WalletTransaction

__all__ = [
    "Order",
    "OrderItem",
    "OrderStatusEvent",
    "SettlementRecord",
    "VendorPayoutAccount",
    "Wallet",
    "WalletTransaction",
]
