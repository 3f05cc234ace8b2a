# Juice Chain Execution + Exchange Rates
# The ledger never builds or signs transactions. It asks an execution service
# to "pay X to Y on chain Z" under an idempotency key (the row id) and records
# whatever comes back, now or later via the execution-result webhook.
#
#   POST {JUICE_EXECUTOR_URL}/execute  → 200 + result | 202 accepted
#   GET  {JUICE_RATE_URL}              → {"price": ..., "updated_at": ...}

import logging
import os
import time
from dataclasses import asdict, dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Optional

import requests

from errors import ExecutionFailure, ExecutionTimeout, ValidationError

log = logging.getLogger("juice")

# ── Configuration ─────────────────────────────────────────────────────

EXECUTOR_URL = os.environ.get("JUICE_EXECUTOR_URL", "")
EXECUTOR_TOKEN = os.environ.get("JUICE_EXECUTOR_TOKEN", "")
EXECUTION_TIMEOUT_SEC = int(os.environ.get("JUICE_EXECUTION_TIMEOUT_SEC", "120"))

RATE_URL = os.environ.get("JUICE_RATE_URL", "")
STATIC_ETH_USD = os.environ.get("JUICE_STATIC_ETH_USD", "")
RATE_MAX_STALENESS_SEC = 3600
RATE_MIN_USD = Decimal("100")
RATE_MAX_USD = Decimal("100000")

WEI_PER_ETH = 10 ** 18


# ── Wire types ────────────────────────────────────────────────────────

@dataclass
class ExecutePaymentRequest:
    idempotency_key: str        # Row id; resubmission must not pay twice
    kind: str                   # spend, cash_out, fiat_payment
    chain_id: int
    beneficiary: str
    amount_base_units: str      # Integer string, wei for native ETH
    project_id: Optional[int] = None
    memo: Optional[str] = None
    token_address: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ExecutionResult:
    row_id: str
    success: bool
    tx_hash: Optional[str] = None
    tokens_received: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def usd_to_wei(amount_cents: int, eth_usd: Decimal) -> int:
    """floor(usd / rate * 1e18)."""
    if eth_usd <= 0:
        raise ValidationError(f"Exchange rate must be positive: {eth_usd}")
    wei = Decimal(amount_cents) * WEI_PER_ETH / (Decimal(100) * eth_usd)
    return int(wei.to_integral_value(rounding=ROUND_FLOOR))


# ── Chain Executor ────────────────────────────────────────────────────

class ChainExecutor:
    """Collaborator interface. Return a result, or None if accepted for later."""

    def execute(self, request: ExecutePaymentRequest) -> Optional[ExecutionResult]:
        raise NotImplementedError


class HttpChainExecutor(ChainExecutor):
    """Submits execute-payment requests to the signing service over HTTP."""

    def __init__(self, base_url: str = "", token: str = "",
                 timeout: int = EXECUTION_TIMEOUT_SEC):
        self.base_url = base_url or EXECUTOR_URL
        self.token = token or EXECUTOR_TOKEN
        self.timeout = timeout

    def _headers(self, idempotency_key: str):
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _url(self, path):
        return f"{self.base_url.rstrip('/')}{path}"

    def execute(self, request: ExecutePaymentRequest) -> Optional[ExecutionResult]:
        if not self.base_url:
            raise ExecutionFailure("JUICE_EXECUTOR_URL is not configured")

        headers = self._headers(request.idempotency_key)
        try:
            resp = requests.post(
                self._url("/execute"), json=request.to_dict(),
                headers=headers, timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise ExecutionTimeout(f"Executor timed out: {e}", row_id=request.idempotency_key)
        except requests.RequestException as e:
            raise ExecutionFailure(f"Executor unreachable: {e}", row_id=request.idempotency_key)

        if resp.status_code == 202:
            log.info("EXECUTE accepted %s kind=%s chain=%s",
                     request.idempotency_key, request.kind, request.chain_id)
            return None
        if resp.status_code != 200:
            raise ExecutionFailure(
                f"Executor returned HTTP {resp.status_code}: {resp.text[:200]}",
                row_id=request.idempotency_key,
            )

        data = resp.json()
        return ExecutionResult(
            row_id=request.idempotency_key,
            success=bool(data.get("success")),
            tx_hash=data.get("tx_hash"),
            tokens_received=data.get("tokens_received"),
            error=data.get("error"),
        )


# ── Exchange Rates ────────────────────────────────────────────────────

class RateProvider:
    def eth_usd(self) -> Decimal:
        raise NotImplementedError


def check_rate(price: Decimal, updated_at: float, now: Optional[float] = None) -> Decimal:
    """Reject stale or implausible ETH/USD prices."""
    now = time.time() if now is None else now
    age = now - updated_at
    if age > RATE_MAX_STALENESS_SEC:
        raise ExecutionFailure(
            f"ETH/USD price is stale ({int(age)}s old, max {RATE_MAX_STALENESS_SEC}s)"
        )
    if price < RATE_MIN_USD or price > RATE_MAX_USD:
        raise ExecutionFailure(f"ETH/USD price outside sane bounds: {price}")
    return price


class HttpRateProvider(RateProvider):
    def __init__(self, url: str = "", timeout: int = 10):
        self.url = url or RATE_URL
        self.timeout = timeout

    def eth_usd(self) -> Decimal:
        if not self.url:
            raise ExecutionFailure("JUICE_RATE_URL is not configured")
        try:
            resp = requests.get(self.url, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as e:
            raise ExecutionFailure(f"Rate fetch failed: {e}")
        try:
            price = Decimal(str(data["price"]))
            updated_at = float(data["updated_at"])
        except (KeyError, TypeError, ValueError, InvalidOperation):
            raise ExecutionFailure(f"Malformed rate response: {data!r}")
        log.debug("Fetched ETH/USD rate %s", price)
        return check_rate(price, updated_at)


class StaticRateProvider(RateProvider):
    """Fixed price, for development and tests."""

    def __init__(self, price):
        self.price = Decimal(str(price))

    def eth_usd(self) -> Decimal:
        return check_rate(self.price, time.time())


# ── Singletons ────────────────────────────────────────────────────────

_executor: Optional[ChainExecutor] = None
_rates: Optional[RateProvider] = None


def get_executor() -> ChainExecutor:
    global _executor
    if _executor is None:
        _executor = HttpChainExecutor()
    return _executor


def get_rate_provider() -> RateProvider:
    global _rates
    if _rates is None:
        if STATIC_ETH_USD:
            _rates = StaticRateProvider(STATIC_ETH_USD)
        else:
            _rates = HttpRateProvider()
    return _rates
