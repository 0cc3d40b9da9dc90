"""
Credit metering boundary.

The credit ledger is an external collaborator. The engine only relies on its
contract: a side-effect free balance check and an atomic charge that is
idempotent on a caller-supplied key. ``CreditMeter`` is the engine-side glue
that adds timeouts, retries transient ledger failures with the same key and
knows what each action costs.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

import httpx

from buybox_repricer.utils.exceptions import (
    CreditLedgerError, TransientUpstreamError, handle_api_error, is_transient_error
)
from buybox_repricer.utils.logger import get_logger
from buybox_repricer.utils.retry import RetryConfig, RetryableOperation


logger = get_logger(__name__)

MONITORING = "monitoring"
REPRICING = "repricing"


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a charge request."""
    success: bool
    new_balance: Optional[int] = None


class CreditLedger(ABC):
    """Contract the engine requires of the credit ledger."""

    @abstractmethod
    async def check_balance(self, organization_id: str, amount: int) -> bool:
        """True if the organization can currently afford ``amount``. No side effects."""
        pass

    @abstractmethod
    async def charge(self, organization_id: str, amount: int, reason: str,
                     idempotency_key: str) -> ChargeResult:
        """Atomically deduct ``amount``. Repeating a key returns the original result."""
        pass


class InMemoryCreditLedger(CreditLedger):
    """Process-local ledger for tests and local runs."""

    def __init__(self, balances: Optional[Dict[str, int]] = None, default_balance: int = 0):
        self.balances: Dict[str, int] = dict(balances or {})
        self.default_balance = default_balance
        self.charges: List[Dict] = []
        self._results: Dict[str, ChargeResult] = {}
        self._lock = asyncio.Lock()

    def balance_of(self, organization_id: str) -> int:
        return self.balances.get(organization_id, self.default_balance)

    def total_charged(self, organization_id: Optional[str] = None) -> int:
        return sum(
            c["amount"] for c in self.charges
            if organization_id is None or c["organization_id"] == organization_id
        )

    async def check_balance(self, organization_id: str, amount: int) -> bool:
        return self.balance_of(organization_id) >= amount

    async def charge(self, organization_id: str, amount: int, reason: str,
                     idempotency_key: str) -> ChargeResult:
        async with self._lock:
            if idempotency_key in self._results:
                return self._results[idempotency_key]

            balance = self.balance_of(organization_id)
            if balance < amount:
                result = ChargeResult(success=False, new_balance=balance)
            else:
                balance -= amount
                self.balances[organization_id] = balance
                self.charges.append({
                    "organization_id": organization_id,
                    "amount": amount,
                    "reason": reason,
                    "idempotency_key": idempotency_key,
                })
                result = ChargeResult(success=True, new_balance=balance)

            self._results[idempotency_key] = result
            return result


class HttpCreditLedger(CreditLedger):
    """
    Client for a remote credit ledger service.

    Endpoints:
        GET  /organizations/{org}/credits/check?amount=N  -> {"sufficient": bool}
        POST /organizations/{org}/credits/charges          -> {"success": bool, "balance": int}
    Charges carry the idempotency key in the ``Idempotency-Key`` header.
    A 402 answer means insufficient credits.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None,
                 http_client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._headers = headers
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self.http_client.request(method, url, headers={**self._headers, **kwargs.pop("headers", {})}, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientUpstreamError(f"Credit ledger timeout: {e}", endpoint=url)
        except httpx.TransportError as e:
            raise TransientUpstreamError(f"Credit ledger unreachable: {e}", endpoint=url)
        return response

    async def check_balance(self, organization_id: str, amount: int) -> bool:
        path = f"/organizations/{organization_id}/credits/check"
        response = await self._send("GET", path, params={"amount": amount})
        if response.status_code >= 400:
            handle_api_error(response, endpoint=path)
        return bool(response.json().get("sufficient", False))

    async def charge(self, organization_id: str, amount: int, reason: str,
                     idempotency_key: str) -> ChargeResult:
        path = f"/organizations/{organization_id}/credits/charges"
        response = await self._send(
            "POST", path,
            headers={"Idempotency-Key": idempotency_key},
            json={"amount": amount, "reason": reason},
        )
        if response.status_code == 402:
            data = response.json() if response.content else {}
            return ChargeResult(success=False, new_balance=data.get("balance"))
        if response.status_code >= 400:
            handle_api_error(response, endpoint=path)

        data = response.json()
        return ChargeResult(success=bool(data.get("success", True)), new_balance=data.get("balance"))

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()


class CreditMeter:
    """
    Engine-side metering.

    Every ledger call runs under its own timeout. Transient ledger failures
    are retried with the same idempotency key so a retried charge can never
    be applied twice.
    """

    def __init__(self, ledger: CreditLedger, monitoring_cost: int = 1,
                 repricing_cost: int = 5, timeout: float = 5.0,
                 retry_config: Optional[RetryConfig] = None):
        self.ledger = ledger
        self.monitoring_cost = monitoring_cost
        self.repricing_cost = repricing_cost
        self.retry_config = replace(
            retry_config or RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0),
            call_timeout=timeout,
        )

    @classmethod
    def from_config(cls, ledger: CreditLedger, config) -> "CreditMeter":
        """Build from a RepricerConfig."""
        return cls(
            ledger,
            monitoring_cost=config.credits.monitoring,
            repricing_cost=config.credits.repricing,
            timeout=config.scheduler.call_timeout_seconds,
        )

    @staticmethod
    def idempotency_key(tick_id: str, listing_id: str, reason: str) -> str:
        return f"{tick_id}:{listing_id}:{reason}"

    async def _call(self, func, *args):
        try:
            return await RetryableOperation(self.retry_config).execute(func, *args)
        except CreditLedgerError:
            raise
        except Exception as e:
            raise CreditLedgerError(
                f"Credit ledger call failed: {e}",
                {"operation": func.__name__, "transient": is_transient_error(e)}
            ) from e

    async def can_afford(self, organization_id: str, amount: int) -> bool:
        """
        Side-effect free balance check.

        Raises:
            CreditLedgerError: If the ledger cannot answer
        """
        if amount <= 0:
            return True
        return await self._call(self.ledger.check_balance, organization_id, amount)

    async def charge(self, organization_id: str, amount: int, reason: str,
                     tick_id: str, listing_id: str) -> ChargeResult:
        """
        Charge for one metered action.

        Raises:
            CreditLedgerError: If the ledger cannot answer
        """
        if amount <= 0:
            return ChargeResult(success=True)

        key = self.idempotency_key(tick_id, listing_id, reason)
        result = await self._call(self.ledger.charge, organization_id, amount, reason, key)

        if result.success:
            logger.debug(f"Charged {amount} credits to {organization_id} ({key}), balance {result.new_balance}")
        else:
            logger.warning(f"Charge of {amount} credits refused for {organization_id} ({key})")
        return result
