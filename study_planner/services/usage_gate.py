"""Pre-flight credit check for credit-consuming actions.

The gate only reads the balance; it reserves nothing. Callers that need a hard
cap deduct before the protected work and release on failure (see the chat
flow in ``study_api_service``).
"""

from dataclasses import dataclass

from study_planner.errors import InsufficientBalanceError
from study_planner.services.credits_service import PLAN_FREE


def upgrade_message(plan, *, free_allotment, pro_allotment):
    if plan == PLAN_FREE:
        return (
            f"You have used all {free_allotment} free lifetime uploads. "
            f"Upgrade to Pro for {pro_allotment} uploads/month!"
        )
    return 'You have no credits remaining. Your credits will renew with your next billing cycle.'


def insufficient_credits_payload(plan, credits_balance, *, free_allotment, pro_allotment):
    return {
        'error': 'Insufficient credits',
        'message': upgrade_message(plan, free_allotment=free_allotment, pro_allotment=pro_allotment),
        'credits_balance': credits_balance,
        'plan': plan,
    }


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    plan: str
    credits_balance: int


class UsageGate:
    def __init__(self, balance_manager, *, free_allotment, pro_allotment):
        self.balance_manager = balance_manager
        self.free_allotment = free_allotment
        self.pro_allotment = pro_allotment

    def check(self, uid) -> GateDecision:
        account = self.balance_manager.get_balance(uid)
        return GateDecision(
            allowed=account.credits_balance > 0,
            plan=account.plan,
            credits_balance=account.credits_balance,
        )

    def require(self, uid):
        """Return the account when it has credits left, else raise InsufficientBalanceError."""
        account = self.balance_manager.get_balance(uid)
        if account.credits_balance <= 0:
            raise InsufficientBalanceError(uid, account.credits_balance, 1, account.plan)
        return account

    def rejection_payload(self, plan, credits_balance):
        return insufficient_credits_payload(
            plan,
            credits_balance,
            free_allotment=self.free_allotment,
            pro_allotment=self.pro_allotment,
        )
