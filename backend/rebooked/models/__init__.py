from rebooked.models.user import User
from rebooked.models.order import Order
from rebooked.models.order_transition import OrderTransition
from rebooked.models.payment_transaction import PaymentTransaction
from rebooked.models.refund_transaction import RefundTransaction
from rebooked.models.wallet import SellerWallet, WalletTransaction
from rebooked.models.banking_subaccount import BankingSubaccount
from rebooked.models.affiliate import AffiliateReferral, AffiliateOrder
from rebooked.models.webhook_event import WebhookEvent
from rebooked.models.order_notification import OrderNotification
from rebooked.models.platform_event import PlatformEvent
from rebooked.models.job_run import JobRun
from rebooked.models.app_setting import AppSetting

__all__ = [
    "User",
    "Order",
    "OrderTransition",
    "PaymentTransaction",
    "RefundTransaction",
    "SellerWallet",
    "WalletTransaction",
    "BankingSubaccount",
    "AffiliateReferral",
    "AffiliateOrder",
    "WebhookEvent",
    "OrderNotification",
    "PlatformEvent",
    "JobRun",
    "AppSetting",
]
