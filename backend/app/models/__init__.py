"""Database models for the Filiova payments service."""
from app.models.user import User
from app.models.membership_plan import MembershipPlan
from app.models.subscription import Subscription
from app.models.product import Product
from app.models.purchase import Purchase
from app.models.ad_campaign import AdCampaign
from app.models.transaction import Transaction
from app.models.balance import WalletBalance, LedgerEntry
from app.models.earning import EarningsEvent, SettlementRun, ProductDownloadStat
from app.models.payout import PayoutAccount, PayoutRequest

__all__ = [
    "User",
    "MembershipPlan",
    "Subscription",
    "Product",
    "Purchase",
    "AdCampaign",
    "Transaction",
    "WalletBalance",
    "LedgerEntry",
    "EarningsEvent",
    "SettlementRun",
    "ProductDownloadStat",
    "PayoutAccount",
    "PayoutRequest",
]
