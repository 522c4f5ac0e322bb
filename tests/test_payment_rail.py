"""
Test suite for payment rails

Tests the in-memory rail, the REST client against a mock transport, and
timeout guarding.
"""

import json
import time
import httpx
import pytest
from decimal import Decimal

from loan_ledger.exceptions import PaymentRailError, PaymentRailTimeoutError, ValidationError
from loan_ledger.payment_rail import HttpPaymentRail, InMemoryPaymentRail, TimeoutGuardedRail


class TestInMemoryPaymentRail:
    """Test the balance-map rail"""

    def setup_method(self):
        """Set up test fixtures"""
        self.rail = InMemoryPaymentRail(overdraft_accounts={"treasury"})
        self.rail.set_balance("alice", "100")

    def test_transfer(self):
        result = self.rail.transfer("alice", "bob", Decimal("40"), "ref-1")
        assert result.success
        assert result.transfer_id == "tx-1"
        assert self.rail.balance("alice") == Decimal("60.00")
        assert self.rail.balance("bob") == Decimal("40.00")

    def test_reference_is_idempotency_key(self):
        first = self.rail.transfer("alice", "bob", Decimal("40"), "ref-1")
        second = self.rail.transfer("alice", "bob", Decimal("40"), "ref-1")
        assert second is first
        assert self.rail.balance("alice") == Decimal("60.00")

    def test_insufficient_funds_is_declined(self):
        result = self.rail.transfer("alice", "bob", Decimal("150"), "ref-2")
        assert not result.success
        assert "Insufficient funds" in result.message
        assert self.rail.balance("alice") == Decimal("100.00")

    def test_treasury_may_overdraw(self):
        assert self.rail.transfer("treasury", "alice", Decimal("1000"), "ref-3").success
        assert self.rail.balance("treasury") == Decimal("-1000.00")

    def test_non_positive_amount(self):
        with pytest.raises(ValidationError):
            self.rail.transfer("alice", "bob", Decimal("0"), "ref-4")

    def test_injected_failure(self):
        self.rail.fail_with = PaymentRailError("rail down")
        with pytest.raises(PaymentRailError, match="rail down"):
            self.rail.transfer("alice", "bob", Decimal("1"), "ref-5")


class TestHttpPaymentRail:
    """Test the REST client"""

    def make_rail(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return HttpPaymentRail("http://rail.local/", timeout=1.0, api_key="secret", client=client)

    def test_successful_transfer(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"success": True, "transfer_id": "T-9"})

        rail = self.make_rail(handler)
        result = rail.transfer("treasury", "alice", Decimal("250.00"), "disburse:L1")

        assert result.success
        assert result.transfer_id == "T-9"
        assert seen["url"] == "http://rail.local/transfers"
        assert seen["headers"]["Idempotency-Key"] == "disburse:L1"
        assert seen["headers"]["Authorization"] == "Bearer secret"
        assert seen["body"] == {
            "payer_id": "treasury",
            "payee_id": "alice",
            "amount": "250.00",
            "reference": "disburse:L1"
        }

    def test_decline(self):
        rail = self.make_rail(lambda request: httpx.Response(402, text="insufficient funds"))
        result = rail.transfer("alice", "treasury", Decimal("10"), "payment:P1")
        assert not result.success
        assert result.message == "insufficient funds"

    def test_server_error(self):
        rail = self.make_rail(lambda request: httpx.Response(503, text="maintenance"))
        with pytest.raises(PaymentRailError, match="503"):
            rail.transfer("alice", "treasury", Decimal("10"), "payment:P1")

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        rail = self.make_rail(handler)
        with pytest.raises(PaymentRailTimeoutError):
            rail.transfer("alice", "treasury", Decimal("10"), "payment:P1")

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        rail = self.make_rail(handler)
        with pytest.raises(PaymentRailError, match="failed"):
            rail.transfer("alice", "treasury", Decimal("10"), "payment:P1")

    def test_health_check(self):
        assert self.make_rail(lambda request: httpx.Response(200)).health_check()
        assert not self.make_rail(lambda request: httpx.Response(500)).health_check()


class TestTimeoutGuardedRail:
    """Test timeout enforcement around a slow rail"""

    def setup_method(self):
        """Set up test fixtures"""
        self.inner = InMemoryPaymentRail(overdraft_accounts={"treasury"}, latency_seconds=0.3)
        self.rail = TimeoutGuardedRail(self.inner, timeout=0.05)

    def teardown_method(self):
        self.rail.close()

    def test_slow_transfer_times_out(self):
        start = time.monotonic()
        with pytest.raises(PaymentRailTimeoutError):
            self.rail.transfer("treasury", "alice", Decimal("10"), "ref-1")
        assert time.monotonic() - start < 0.3

    def test_fast_transfer_passes_through(self):
        self.inner.latency_seconds = 0
        result = self.rail.transfer("treasury", "alice", Decimal("10"), "ref-2")
        assert result.success
        assert self.inner.balance("alice") == Decimal("10.00")
