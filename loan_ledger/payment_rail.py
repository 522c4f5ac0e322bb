"""
Payment Rail Module

Narrow interface to the external currency system that actually moves funds
for disbursements and repayments, plus a REST client and an in-memory rail.

Every transfer carries a reference. Rails treat the reference as an
idempotency key, so a transfer retried after a timeout is never applied twice.
"""

import httpx
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Set

from .exceptions import PaymentRailError, PaymentRailTimeoutError, ValidationError
from .money import ZERO, to_money

logger = logging.getLogger("ledger.rail")


@dataclass
class TransferResult:
    """Outcome of a single transfer on the rail"""
    success: bool
    reference: str
    amount: Decimal
    message: str = ""
    transfer_id: Optional[str] = None
    latency_ms: float = 0.0


class PaymentRail(ABC):
    """Moves funds between two parties"""

    @abstractmethod
    def transfer(self, payer_id: str, payee_id: str, amount: Decimal,
                 reference: str) -> TransferResult:
        """Move ``amount`` from payer to payee; declines return success=False"""
        pass

    def close(self) -> None:
        pass


class HttpPaymentRail(PaymentRail):
    """REST client for an external payment rail"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)

    def transfer(self, payer_id: str, payee_id: str, amount: Decimal,
                 reference: str) -> TransferResult:
        """
        Submit a transfer

        Raises:
            PaymentRailTimeoutError: If the rail does not answer within the timeout
            PaymentRailError: If the rail is unreachable or fails server-side
        """
        headers = {"Idempotency-Key": reference}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start = time.time()
        try:
            response = self._client.post(
                f"{self.base_url}/transfers",
                json={
                    "payer_id": payer_id,
                    "payee_id": payee_id,
                    "amount": str(amount),
                    "reference": reference,
                },
                headers=headers,
                timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Payment rail timed out for {reference}")
            raise PaymentRailTimeoutError(f"Transfer {reference} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.error(f"Payment rail connection failed for {reference}: {e}")
            raise PaymentRailError(f"Transfer {reference} failed: {e}") from e

        latency_ms = (time.time() - start) * 1000

        if response.status_code in (200, 201):
            data = response.json()
            return TransferResult(
                success=bool(data.get("success", True)),
                reference=reference,
                amount=amount,
                message=data.get("message", ""),
                transfer_id=data.get("transfer_id"),
                latency_ms=latency_ms
            )
        if response.status_code in (402, 409, 422):
            # Declined by the rail, e.g. insufficient funds
            return TransferResult(
                success=False,
                reference=reference,
                amount=amount,
                message=response.text,
                latency_ms=latency_ms
            )

        logger.warning(f"Payment rail returned {response.status_code}: {response.text}")
        raise PaymentRailError(f"Payment rail returned {response.status_code} for {reference}")

    def health_check(self) -> bool:
        """Check if the rail is reachable"""
        try:
            r = self._client.get(f"{self.base_url}/health")
            return r.status_code == 200
        except httpx.HTTPError:
            return False

    def close(self) -> None:
        """Close the HTTP client"""
        self._client.close()


class InMemoryPaymentRail(PaymentRail):
    """
    Balance map rail for tests and single-process deployments

    Accounts listed in ``overdraft_accounts`` (the treasury) may go negative;
    every other payer needs sufficient funds.
    """

    def __init__(self, overdraft_accounts: Optional[Set[str]] = None, latency_seconds: float = 0.0):
        self._balances: Dict[str, Decimal] = {}
        self._completed: Dict[str, TransferResult] = {}
        self._lock = threading.RLock()
        self.overdraft_accounts = set(overdraft_accounts or ())
        self.latency_seconds = latency_seconds
        self.fail_with: Optional[Exception] = None

    def set_balance(self, account_id: str, amount) -> None:
        with self._lock:
            self._balances[account_id] = to_money(amount)

    def balance(self, account_id: str) -> Decimal:
        with self._lock:
            return self._balances.get(account_id, ZERO)

    def transfers(self) -> List[TransferResult]:
        with self._lock:
            return list(self._completed.values())

    def transfer(self, payer_id: str, payee_id: str, amount: Decimal,
                 reference: str) -> TransferResult:
        if self.latency_seconds:
            time.sleep(self.latency_seconds)
        if self.fail_with is not None:
            raise self.fail_with

        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Transfer amount must be positive")

        with self._lock:
            previous = self._completed.get(reference)
            if previous is not None:
                return previous

            payer_balance = self._balances.get(payer_id, ZERO)
            if payer_id not in self.overdraft_accounts and payer_balance < amount:
                return TransferResult(
                    success=False,
                    reference=reference,
                    amount=amount,
                    message=f"Insufficient funds: {payer_balance} < {amount}"
                )

            self._balances[payer_id] = payer_balance - amount
            self._balances[payee_id] = self._balances.get(payee_id, ZERO) + amount
            result = TransferResult(
                success=True,
                reference=reference,
                amount=amount,
                transfer_id=f"tx-{len(self._completed) + 1}"
            )
            self._completed[reference] = result
            return result


class TimeoutGuardedRail(PaymentRail):
    """
    Bounds any rail's transfer call by a timeout

    The wrapped call keeps running in a worker thread after a timeout; the
    caller is told it failed and must retry with the same reference.
    """

    def __init__(self, rail: PaymentRail, timeout: float, max_workers: int = 4):
        self.rail = rail
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="payment-rail")

    def transfer(self, payer_id: str, payee_id: str, amount: Decimal,
                 reference: str) -> TransferResult:
        future = self._executor.submit(self.rail.transfer, payer_id, payee_id, amount, reference)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError as e:
            logger.warning(f"Transfer {reference} exceeded {self.timeout}s")
            raise PaymentRailTimeoutError(f"Transfer {reference} timed out after {self.timeout}s") from e

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self.rail.close()
