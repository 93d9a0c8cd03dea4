import asyncio
import inspect
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import ExchangeAPIError, ExchangeErrorType
from .logging_setup import logger
from .orders import (
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderType,
    OrderValidationError,
    Position,
    TimeInForce,
    to_decimal,
)

# Balances in these currencies are cash, not positions
NON_POSITION_CURRENCIES = frozenset({"USD", "USDC", "USDT", "DAI", "EUR", "GBP"})


class TradingErrorType(Enum):
    AUTHENTICATION = "AUTHENTICATION"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INVALID_ORDER = "INVALID_ORDER"
    RATE_LIMIT = "RATE_LIMIT"
    SERVER_ERROR = "SERVER_ERROR"
    UNKNOWN = "UNKNOWN"


_ERROR_TYPE_MAP = {
    ExchangeErrorType.AUTHENTICATION: TradingErrorType.AUTHENTICATION,
    ExchangeErrorType.INSUFFICIENT_FUNDS: TradingErrorType.INSUFFICIENT_FUNDS,
    ExchangeErrorType.INVALID_REQUEST: TradingErrorType.INVALID_ORDER,
    ExchangeErrorType.NOT_FOUND: TradingErrorType.INVALID_ORDER,
    ExchangeErrorType.RATE_LIMIT: TradingErrorType.RATE_LIMIT,
    ExchangeErrorType.SERVER_ERROR: TradingErrorType.SERVER_ERROR,
    ExchangeErrorType.NETWORK: TradingErrorType.SERVER_ERROR,
    ExchangeErrorType.UNKNOWN: TradingErrorType.UNKNOWN,
}


class TradingError(Exception):
    def __init__(self, message: str, error_type: TradingErrorType = TradingErrorType.UNKNOWN, details: Any = None):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.details = details

    @classmethod
    def from_exchange_error(cls, error: ExchangeAPIError) -> "TradingError":
        error_type = _ERROR_TYPE_MAP.get(error.error_type, TradingErrorType.UNKNOWN)
        if error_type is TradingErrorType.AUTHENTICATION:
            message = f"Authentication failed. Please check your API credentials. ({error.message})"
        elif error_type is TradingErrorType.INSUFFICIENT_FUNDS:
            message = "Insufficient funds to place order"
        elif error_type is TradingErrorType.RATE_LIMIT:
            message = "Rate limit exceeded"
        else:
            message = error.message
        return cls(message, error_type, error.details)


def _side(side: Union[OrderSide, str]) -> OrderSide:
    if isinstance(side, OrderSide):
        return side
    try:
        return OrderSide(str(side).upper())
    except ValueError:
        raise TradingError(f"Invalid order side {side!r}", TradingErrorType.INVALID_ORDER)


class TradingService:
    """Venue-neutral order placement and account queries.

    The adapter may be synchronous (``CoinbaseAdapter``, ``PaperExchangeAdapter``)
    or async (``AsyncCoinbaseAdapter``, ``KrakenAdapter``); sync calls are run
    in a worker thread via ``asyncio.to_thread`` so the event loop never
    blocks on HTTP.
    """

    def __init__(self, adapter):
        self.adapter = adapter

    @property
    def venue(self) -> str:
        return getattr(self.adapter, "venue", "unknown")

    async def _call(self, method: str, *args, **kwargs):
        fn = getattr(self.adapter, method)
        try:
            if inspect.iscoroutinefunction(fn):
                return await fn(*args, **kwargs)
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ExchangeAPIError as e:
            logger.error(f"Exchange call failed | venue={self.venue} method={method} error_type={e.error_type.value} error={e}")
            raise TradingError.from_exchange_error(e) from e
        except OrderValidationError as e:
            raise TradingError(str(e), TradingErrorType.INVALID_ORDER) from e

    # --- orders -----------------------------------------------------------

    async def create_order(self, request: OrderRequest) -> OrderResult:
        try:
            request.validate()
        except OrderValidationError as e:
            raise TradingError(str(e), TradingErrorType.INVALID_ORDER) from e
        request.ensure_client_order_id()
        result = await self._call("place_order", request)
        logger.info(
            f"Order placed | venue={self.venue} order_id={result.order_id} {result.side} {result.order_type} "
            f"{result.product_id} size={result.size} funds={result.funds} price={result.limit_price}"
        )
        return result

    async def create_market_order(self, product_id: str, side, size=None, funds=None, client_order_id: Optional[str] = None) -> OrderResult:
        request = OrderRequest(
            product_id=product_id,
            side=_side(side),
            order_type=OrderType.MARKET,
            size=self._decimal(size, "size"),
            funds=self._decimal(funds, "funds"),
            client_order_id=client_order_id,
        )
        return await self.create_order(request)

    async def create_limit_order(
        self,
        product_id: str,
        side,
        size,
        limit_price,
        time_in_force: TimeInForce = TimeInForce.GOOD_TILL_CANCELLED,
        post_only: bool = False,
        end_time=None,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        request = OrderRequest(
            product_id=product_id,
            side=_side(side),
            order_type=OrderType.LIMIT,
            size=self._decimal(size, "size"),
            limit_price=self._decimal(limit_price, "limit_price"),
            time_in_force=time_in_force,
            post_only=post_only,
            end_time=end_time,
            client_order_id=client_order_id,
        )
        return await self.create_order(request)

    async def create_stop_order(self, product_id: str, side, size, stop_price, client_order_id: Optional[str] = None) -> OrderResult:
        request = OrderRequest(
            product_id=product_id,
            side=_side(side),
            order_type=OrderType.STOP,
            size=self._decimal(size, "size"),
            stop_price=self._decimal(stop_price, "stop_price"),
            client_order_id=client_order_id,
        )
        return await self.create_order(request)

    async def create_stop_limit_order(
        self,
        product_id: str,
        side,
        size,
        stop_price,
        limit_price,
        time_in_force: TimeInForce = TimeInForce.GOOD_TILL_CANCELLED,
        end_time=None,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        request = OrderRequest(
            product_id=product_id,
            side=_side(side),
            order_type=OrderType.STOP_LIMIT,
            size=self._decimal(size, "size"),
            stop_price=self._decimal(stop_price, "stop_price"),
            limit_price=self._decimal(limit_price, "limit_price"),
            time_in_force=time_in_force,
            end_time=end_time,
            client_order_id=client_order_id,
        )
        return await self.create_order(request)

    async def cancel_order(self, order_id: str) -> bool:
        if not order_id:
            raise TradingError("order_id is required", TradingErrorType.INVALID_ORDER)
        cancelled = await self._call("cancel_order", order_id)
        logger.info(f"Cancel requested | venue={self.venue} order_id={order_id} accepted={cancelled}")
        return cancelled

    async def get_order(self, order_id: str) -> OrderResult:
        return await self._call("get_order", order_id)

    async def get_open_orders(self, product_id: Optional[str] = None) -> List[OrderResult]:
        return await self._call("list_open_orders", product_id)

    async def get_order_history(self, product_id: Optional[str] = None, limit: int = 100) -> List[OrderResult]:
        return await self._call("list_order_history", product_id, limit)

    # --- account ----------------------------------------------------------

    async def get_account_balances(self) -> List[Dict[str, Any]]:
        return await self._call("get_balances")

    async def get_ticker(self, product_id: str) -> Dict[str, Any]:
        return await self._call("get_ticker", product_id)

    async def get_candles(self, product_id: str, granularity: str = "ONE_HOUR", start: Optional[int] = None, end: Optional[int] = None) -> List[Dict[str, Any]]:
        if not hasattr(self.adapter, "get_candles"):
            raise TradingError(f"Candles are not available on {self.venue}", TradingErrorType.INVALID_ORDER)
        return await self._call("get_candles", product_id, granularity, start, end)

    async def get_positions(self) -> List[Position]:
        """Non-cash balances valued at the current USD ticker.

        Entry price is the size-weighted average of filled BUY orders for the
        product, or None when no fills are known.
        """
        positions = []
        for balance in await self.get_account_balances():
            currency = balance["currency"].upper()
            size = Decimal(balance["total"])
            if currency in NON_POSITION_CURRENCIES or size <= 0:
                continue
            product_id = f"{currency}-USD"
            try:
                ticker = await self.get_ticker(product_id)
            except TradingError as e:
                if e.error_type is TradingErrorType.AUTHENTICATION:
                    raise
                logger.warning(f"Skipping position without USD ticker | product_id={product_id} error={e.message}")
                continue
            if ticker.get("price") is None:
                continue
            mark = Decimal(str(ticker["price"]))
            position = Position(product_id=product_id, size=size, mark_price=mark, value=size * mark)

            entry = await self._entry_price(product_id)
            if entry is not None and entry > 0:
                position.entry_price = entry
                position.pnl = (mark - entry) * size
                position.pnl_percentage = (mark - entry) / entry * Decimal("100")
            positions.append(position)
        return positions

    async def _entry_price(self, product_id: str) -> Optional[Decimal]:
        try:
            history = await self.get_order_history(product_id)
        except TradingError as e:
            logger.warning(f"Order history unavailable for entry price | product_id={product_id} error={e.message}")
            return None
        filled_size = Decimal("0")
        filled_value = Decimal("0")
        for order in history:
            if order.side != OrderSide.BUY.value:
                continue
            size = Decimal(order.filled_size or "0")
            if size <= 0:
                continue
            filled_size += size
            filled_value += Decimal(order.filled_value or "0")
        if filled_size == 0:
            return None
        return filled_value / filled_size

    async def test_connection(self) -> Dict[str, Any]:
        result = await self._call("test_connection")
        return {"venue": self.venue, **result}

    @staticmethod
    def _decimal(value, name: str) -> Optional[Decimal]:
        try:
            return to_decimal(value, name)
        except OrderValidationError as e:
            raise TradingError(str(e), TradingErrorType.INVALID_ORDER) from e
