from typing import Any, Dict, Optional, Set

import httpx

from core.logging import get_error_logger_safe, get_trading_logger_safe
from core.utils.exceptions import ConnectivityError, ValidationError
from services.broker_registry.models import BrokerConfig
from ..interfaces.broker_adapter import BrokerAdapter
from ..models import BrokerPortfolio, Fill, TradeProposal

_DEAD_ORDER_STATUSES = {"canceled", "expired", "rejected"}


class LiveBrokerAdapter(BrokerAdapter):
    """
    REST execution against an Alpaca-compatible trading API.

    Orders are submitted as market orders with the proposal id as
    ``client_order_id`` so a resubmitted proposal is recognised by the
    broker as well. Transport failures and 5xx responses surface as
    ConnectivityError; 4xx responses mean the broker refused the order.
    When a submission fails in transit the retry first looks the order up
    by client_order_id, so an order the broker did accept is recorded once.
    """

    syncs_portfolio = True

    def __init__(self, config: BrokerConfig, base_url: str, api_key: str, api_secret: str,
                 timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "APCA-API-KEY-ID": api_key,
            "APCA-API-SECRET-KEY": api_secret,
        }
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        # Proposals whose last submission failed in transit
        self._unconfirmed: Set[str] = set()
        self.logger = get_trading_logger_safe(f"live_adapter.{config.id}")
        self.error_logger = get_error_logger_safe(f"live_adapter.{config.id}")

    def get_execution_mode(self) -> str:
        return "live"

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, headers=self._headers,
                                             timeout=self._timeout)
        await self._request("GET", "/v2/account")
        self.logger.info("Live adapter connected", broker=self.config.id, base_url=self._base_url)

    async def stop(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self.logger.info("Live adapter stopped", broker=self.config.id)

    async def check_connection(self) -> bool:
        try:
            await self._request("GET", "/v2/account")
            return True
        except ConnectivityError:
            return False

    async def get_portfolio(self) -> BrokerPortfolio:
        account = await self._request("GET", "/v2/account")
        equity = float(account.get("equity") or 0.0)
        last_equity = float(account.get("last_equity") or equity)
        buying_power = account.get("buying_power")
        return BrokerPortfolio(
            value=equity,
            day_change=equity - last_equity,
            buying_power=float(buying_power) if buying_power is not None else None,
        )

    async def execute_trade(self, proposal: TradeProposal) -> Fill:
        order = None
        if proposal.proposal_id in self._unconfirmed:
            # An earlier submission may have reached the broker before the connection failed
            order = await self._find_order(proposal.proposal_id)
        if order is None:
            order = await self._submit_order(proposal)
        self._unconfirmed.discard(proposal.proposal_id)

        if order.get("status") in _DEAD_ORDER_STATUSES and not _filled_quantity(order):
            message = f"order {order.get('status')}"
            raise ValidationError(f"{self.config.display_name} rejected request: {message}", reason=message)

        # Market orders may be accepted before they fill; fall back to the quoted price
        filled_price = order.get("filled_avg_price")
        filled_qty = _filled_quantity(order)
        fill = Fill(
            order_id=str(order.get("id", proposal.proposal_id)),
            fill_price=float(filled_price) if filled_price else proposal.price,
            quantity=filled_qty or proposal.quantity,
            fees=0.0,
        )
        self.logger.info("LIVE ORDER PLACED", broker=self.config.id, order_id=fill.order_id,
                         side=proposal.side.value, symbol=proposal.symbol,
                         quantity=fill.quantity, fill_price=fill.fill_price)
        return fill

    async def _submit_order(self, proposal: TradeProposal) -> Dict[str, Any]:
        try:
            response = await self._send("POST", "/v2/orders", json={
                "symbol": proposal.symbol,
                "qty": str(proposal.quantity),
                "side": proposal.side.value,
                "type": "market",
                "time_in_force": "day",
                "client_order_id": proposal.proposal_id,
            })
            if response.status_code == 422:
                # client_order_id already taken: the order was placed by a lost earlier attempt
                existing = await self._find_order(proposal.proposal_id)
                if existing is not None:
                    self.logger.warning("Recovered order placed by an earlier attempt",
                                        broker=self.config.id, proposal_id=proposal.proposal_id,
                                        order_id=existing.get("id"))
                    return existing
            return self._parse(response)
        except ConnectivityError:
            self._unconfirmed.add(proposal.proposal_id)
            raise

    async def _find_order(self, client_order_id: str) -> Optional[Dict[str, Any]]:
        """Order placed with this client_order_id, or None if the broker never received it."""
        response = await self._send("GET", "/v2/orders:by_client_order_id",
                                    params={"client_order_id": client_order_id})
        if response.status_code == 404:
            return None
        return self._parse(response)

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        return self._parse(await self._send(method, path, **kwargs))

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        if self._client is None:
            raise ConnectivityError(f"{self.config.display_name} adapter not started",
                                    broker=self.config.id)
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            self.error_logger.error("Broker request failed", broker=self.config.id,
                                    method=method, path=path, error=str(e))
            raise ConnectivityError(f"{self.config.display_name} unreachable: {e}",
                                    broker=self.config.id) from e

    def _parse(self, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code >= 500:
            raise ConnectivityError(
                f"{self.config.display_name} returned HTTP {response.status_code}",
                broker=self.config.id,
            )
        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            self.logger.warning("Broker refused request", broker=self.config.id,
                                status_code=response.status_code, message=message)
            raise ValidationError(f"{self.config.display_name} rejected request: {message}",
                                  reason=message)
        return response.json()


def _filled_quantity(order: Dict[str, Any]) -> float:
    filled_qty = order.get("filled_qty")
    return float(filled_qty) if filled_qty and float(filled_qty) > 0 else 0.0
