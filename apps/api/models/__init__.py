"""Models package."""

from .tenant import Tenant
from .credit_account import TenantCreditAccount
from .credit_transaction import CreditTransaction
from .credit_cost import CreditCost
from .credit_grant import CreditGrant
from .credit_analytics_event import CreditAnalyticsEvent
from .auto_topup_config import AutoTopupConfig
from .referral import ReferralCode, ReferralRedemption
from .promo import PromoCode, PromoRedemption
