"""
Exchange adapter interface shared by the Coinbase and Kraken clients.

The trading service talks to venues only through these methods. Adapters may
implement them synchronously (``ExchangeAdapter``) or as coroutines
(``AsyncCoinbaseAdapter``, ``KrakenAdapter``); the service handles both.
"""

import itertools
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .errors import ExchangeAPIError, ExchangeErrorType
from .orders import OrderRequest, OrderResult, OrderType, decimal_str


class ExchangeAdapter(ABC):
    """Abstract exchange adapter.

    All price/qty values use Decimal or their exact string form.
    """

    venue = "abstract"

    @abstractmethod
    def place_order(self, request: OrderRequest) -> OrderResult:
        """Place an order and return its normalized result."""

    @abstractmethod
    def cancel_order(self, order_id: str) -> bool:
        """Cancel an open order. Returns True if the exchange accepted the cancel."""

    @abstractmethod
    def get_order(self, order_id: str) -> OrderResult:
        """Fetch a single order by exchange id."""

    @abstractmethod
    def list_open_orders(self, product_id: Optional[str] = None) -> List[OrderResult]:
        pass

    @abstractmethod
    def list_order_history(self, product_id: Optional[str] = None, limit: int = 100) -> List[OrderResult]:
        pass

    @abstractmethod
    def get_balances(self) -> List[Dict[str, Any]]:
        """Balances as ``{currency, available, hold, total}`` dicts (string amounts)."""

    @abstractmethod
    def get_ticker(self, product_id: str) -> Dict[str, Any]:
        """Latest price as ``{product_id, price, bid, ask, time}``."""

    @abstractmethod
    def test_connection(self) -> Dict[str, Any]:
        pass


def balance_entry(currency: str, available: Any, hold: Any) -> Dict[str, Any]:
    available_d = Decimal(str(available or "0"))
    hold_d = Decimal(str(hold or "0"))
    return {
        "currency": currency,
        "available": str(available_d),
        "hold": str(hold_d),
        "total": str(available_d + hold_d),
    }


class PaperExchangeAdapter(ExchangeAdapter):
    """In-memory venue that records orders and fills them against set prices.

    Market orders fill immediately at the configured price; other orders rest
    as OPEN until cancelled. Used for dry runs and tests.
    """

    venue = "paper"

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None, balances: Optional[Dict[str, Decimal]] = None):
        self.prices: Dict[str, Decimal] = dict(prices or {})
        self.balances: Dict[str, Decimal] = dict(balances or {})
        self.orders: Dict[str, OrderResult] = {}
        self._ids = itertools.count(1)

    def _price(self, product_id: str) -> Decimal:
        if product_id not in self.prices:
            raise ExchangeAPIError(f"Unknown product {product_id}", ExchangeErrorType.INVALID_REQUEST, 400)
        return self.prices[product_id]

    def place_order(self, request: OrderRequest) -> OrderResult:
        request.validate()
        request.ensure_client_order_id()
        price = self._price(request.product_id)
        oid = f"paper-{next(self._ids)}"
        result = OrderResult(
            order_id=oid,
            product_id=request.product_id,
            side=request.side.value,
            order_type=request.order_type.value,
            status="OPEN",
            size=decimal_str(request.size),
            funds=decimal_str(request.funds),
            limit_price=decimal_str(request.limit_price),
            stop_price=decimal_str(request.stop_price),
            client_order_id=request.client_order_id,
            venue=self.venue,
        )
        if request.order_type is OrderType.MARKET:
            size = request.size if request.size is not None else request.funds / price
            result.status = "FILLED"
            result.filled_size = str(size)
            result.filled_value = str(size * price)
            result.average_filled_price = str(price)
        self.orders[oid] = result
        return result

    def cancel_order(self, order_id: str) -> bool:
        order = self.orders.get(order_id)
        if order is None or order.status != "OPEN":
            return False
        order.status = "CANCELLED"
        return True

    def get_order(self, order_id: str) -> OrderResult:
        if order_id not in self.orders:
            raise ExchangeAPIError(f"Order {order_id} not found", ExchangeErrorType.NOT_FOUND, 404)
        return self.orders[order_id]

    def list_open_orders(self, product_id: Optional[str] = None) -> List[OrderResult]:
        return [o for o in self.orders.values() if o.status == "OPEN" and (product_id is None or o.product_id == product_id)]

    def list_order_history(self, product_id: Optional[str] = None, limit: int = 100) -> List[OrderResult]:
        orders = [o for o in self.orders.values() if product_id is None or o.product_id == product_id]
        return list(reversed(orders))[:limit]

    def get_balances(self) -> List[Dict[str, Any]]:
        return [balance_entry(cur, amount, 0) for cur, amount in self.balances.items()]

    def get_ticker(self, product_id: str) -> Dict[str, Any]:
        price = self._price(product_id)
        return {"product_id": product_id, "price": str(price), "bid": str(price), "ask": str(price), "time": None}

    def test_connection(self) -> Dict[str, Any]:
        return {"success": True, "message": "Paper exchange ready", "products_count": len(self.prices)}
