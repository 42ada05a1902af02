import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from vtm_option.models.trading_models import ContractResult, Direction

logger = logging.getLogger("broker_rest")


class BrokerError(Exception):
    """Broker call failed. Transient from the caller's point of view: retry next cycle."""


class BrokerTimeout(BrokerError):
    """Broker call exceeded its deadline."""


class BrokerGateway(ABC):
    """What the core needs from a broker: place an order, read a contract's settlement."""

    @abstractmethod
    async def place_order(self, stake: float, direction: Direction, asset: str) -> str:
        """Return the broker contract id, or raise BrokerError."""

    @abstractmethod
    async def get_contract_status(self, contract_id: str) -> ContractResult:
        """Return pending/won/lost and the payout, or raise BrokerError."""

    async def ping(self) -> bool:
        return True

    async def close(self):
        return None


class BrokerRest(BrokerGateway):
    """JSON-over-HTTP broker gateway.

    Endpoints:
      POST /orders            {"stake", "direction", "asset"} -> {"order_id"}
      GET  /contracts/{id}    -> {"status": "pending|won|lost", "payout"}
      GET  /ping              -> 2xx when reachable

    Every call is bounded by ``timeout`` seconds end to end.
    """

    def __init__(self, base_url: str, api_token: str = "", timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            resp = await asyncio.wait_for(self.client.request(method, path, **kwargs), timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json() if resp.content else {}
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise BrokerTimeout(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise BrokerError(f"{method} {path} returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise BrokerError(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            raise BrokerError(f"{method} {path} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise BrokerError(f"{method} {path} returned {type(data).__name__}, expected an object")
        return data

    async def place_order(self, stake: float, direction: Direction, asset: str) -> str:
        payload = {
            "stake": round(float(stake), 2),
            "direction": Direction(direction).value,
            "asset": asset,
        }
        logger.debug(f"Placing order: {payload}")
        data = await self._request("POST", "/orders", json=payload)
        order_id = data.get("order_id") or data.get("contract_id") or data.get("id")
        if not order_id:
            error = data.get("error") or "missing order id"
            raise BrokerError(f"Order rejected: {error}")
        return str(order_id)

    async def get_contract_status(self, contract_id: str) -> ContractResult:
        data = await self._request("GET", f"/contracts/{contract_id}")
        status = str(data.get("status", "pending")).lower()
        if status not in ("pending", "won", "lost"):
            raise BrokerError(f"Unknown contract status {status!r} for {contract_id}")
        try:
            payout = float(data.get("payout") or 0.0)
        except (TypeError, ValueError) as e:
            raise BrokerError(f"Invalid payout for {contract_id}: {data.get('payout')!r}") from e
        return ContractResult(status=status, payout=payout)

    async def ping(self) -> bool:
        try:
            await self._request("GET", "/ping")
            return True
        except BrokerError as e:
            logger.error(f"Broker ping failed: {e}")
            return False

    async def close(self):
        await self.client.aclose()
