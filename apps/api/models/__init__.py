"""Models package."""

from .user import User
from .project import Project
from .credit_account import CreditAccount
from .credit_ledger import CreditLedger
from .billing_profile import BillingProfile
