from models.subscription import Subscription, CustomerBillingSettings
from models.invoice import SubscriptionInvoice
from models.payment_session import PaymentSession
from models.order import Order, Counter
from models.audit import AdminAuditLog, BillingRun

__all__ = [
    "Subscription", "CustomerBillingSettings", "SubscriptionInvoice",
    "PaymentSession", "Order", "Counter", "AdminAuditLog", "BillingRun",
]
