# cci/pipeline/payments.py
import random
import time
from dataclasses import dataclass
from typing import Optional


@dataclass
class ChargeResult:
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None


class PaymentGateway:
    """Mobile-money rail used for claim payouts (B2C) and premium collection."""

    def disburse(self, user_id: str, amount: float) -> str:
        raise NotImplementedError

    def charge(self, user_id: str, amount: float, method: str, details: str) -> ChargeResult:
        raise NotImplementedError


class MockMpesaGateway(PaymentGateway):
    """Stand-in until the Daraja integration lands; every call succeeds with a synthetic reference."""

    def disburse(self, user_id: str, amount: float) -> str:
        return f"TXN_{int(time.time() * 1000)}_{random.randint(0, 999999)}"

    def charge(self, user_id: str, amount: float, method: str, details: str) -> ChargeResult:
        return ChargeResult(success=True, transaction_id=f"txn_{int(time.time() * 1000)}")
