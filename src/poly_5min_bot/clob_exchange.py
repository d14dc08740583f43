"""Polymarket CLOB exchange adapter using py-clob-client.

py-clob-client is synchronous; every call runs in a worker thread via
asyncio.to_thread so the event loop only suspends at I/O boundaries.
"""

import asyncio
import logging
from time import time_ns
from typing import Optional

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    ApiCreds, AssetType, BalanceAllowanceParams, OpenOrderParams, OrderArgs,
    OrderType, TradeParams,
)
from py_clob_client.order_builder.constants import BUY, SELL

from .config import BotConfig
from .errors import (
    AmbiguousOrderOutcome, AuthError, BotError, OrderRejected,
    TransientNetworkError, classify_exception,
)
from .exchange import Exchange, OrderStatusReport
from .types import Fill, OrderIntent, OrderRecord, OrderStatus, Side

logger = logging.getLogger(__name__)

# Conditional token balances are reported in 6-decimal base units
SHARE_UNITS = 1_000_000

# Slack when matching an ambiguous submission against exchange history
MATCH_WINDOW_SECS = 5

_CLOB_STATUS = {
    "LIVE": OrderStatus.ACKNOWLEDGED,
    "DELAYED": OrderStatus.ACKNOWLEDGED,
    "UNMATCHED": OrderStatus.ACKNOWLEDGED,
    "MATCHED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELLED,
    "CANCELLED": OrderStatus.CANCELLED,
    "INVALID": OrderStatus.REJECTED,
}


def _submit_error(exc: Exception) -> BotError:
    """
    Classify an exception raised while posting an order.

    Only an HTTP 4xx proves the order was not accepted. Anything without
    a status code may have reached the exchange and is ambiguous, unless
    the connection itself failed.
    """
    err = classify_exception(exc)
    status = getattr(exc, "status_code", None)

    if isinstance(err, AuthError):
        return err
    if isinstance(err, TransientNetworkError) and not err.request_sent:
        return err
    if status is not None and 400 <= status < 500 and status != 429:
        return OrderRejected(str(exc))
    if isinstance(err, OrderRejected):
        return err
    return AmbiguousOrderOutcome(str(exc))


class ClobExchange(Exchange):
    """
    Live Polymarket CLOB.

    Polymarket has no client idempotency keys. Ambiguous submissions are
    located by matching open orders and trades on (token, side, price,
    size) after the submission time.

    Required credentials:
        - private_key: Wallet private key for signing (0x...)
        - funder: Funder/proxy wallet address (0x...)
        - api_key, api_secret, passphrase: L2 API credentials
          (derived if not provided)
    """

    def __init__(self, config: BotConfig):
        self._config = config
        self._client: Optional[ClobClient] = None

    @property
    def supports_idempotency(self) -> bool:
        return False

    # ============== Setup ==============

    def _init_client(self) -> ClobClient:
        """Create and authenticate the client (sync, runs in a thread)."""
        if self._client is not None:
            return self._client

        cfg = self._config
        private_key = cfg.pm_private_key
        if private_key and not private_key.startswith("0x"):
            private_key = "0x" + private_key

        try:
            client = ClobClient(
                host=cfg.pm_rest_url,
                chain_id=cfg.chain_id,
                key=private_key,
                funder=cfg.pm_funder,
                signature_type=cfg.pm_signature_type,
            )

            if cfg.pm_api_key and cfg.pm_api_secret and cfg.pm_passphrase:
                client.set_api_creds(ApiCreds(
                    api_key=cfg.pm_api_key,
                    api_secret=cfg.pm_api_secret,
                    api_passphrase=cfg.pm_passphrase,
                ))
                logger.info("Polymarket client initialized with provided API credentials")
            else:
                client.set_api_creds(client.create_or_derive_api_creds())
                logger.info("Polymarket client initialized with derived API credentials")

        except Exception as e:
            err = classify_exception(e)
            if isinstance(err, TransientNetworkError):
                raise err from e
            raise AuthError(f"Failed to initialize Polymarket client: {e}") from e

        self._client = client
        return client

    async def initialize(self) -> None:
        """
        Connect and derive credentials.

        Raises:
            AuthError: if the credentials are rejected
        """
        await asyncio.to_thread(self._init_client)

    async def _call(self, fn, *args, **kwargs):
        client = await asyncio.to_thread(self._init_client)
        try:
            return await asyncio.to_thread(getattr(client, fn), *args, **kwargs)
        except Exception as e:
            raise classify_exception(e) from e

    # ============== Orders ==============

    def _post_order_sync(self, intent: OrderIntent) -> dict:
        client = self._init_client()
        cfg = self._config

        expiration = 0
        if cfg.order_type == "GTD":
            expiration = int(time_ns() // 1_000_000_000) + cfg.gtd_expiration_secs

        order_args = OrderArgs(
            token_id=intent.token_id,
            price=float(intent.limit_price),
            size=float(intent.size),
            side=BUY if intent.side == Side.BUY else SELL,
            expiration=expiration,
        )
        signed_order = client.create_order(order_args)
        return client.post_order(signed_order, getattr(OrderType, cfg.order_type))

    async def place_order(self, intent: OrderIntent) -> OrderStatusReport:
        try:
            response = await asyncio.to_thread(self._post_order_sync, intent)
        except Exception as e:
            raise _submit_error(e) from e

        if not isinstance(response, dict):
            raise AmbiguousOrderOutcome(f"Unexpected order response: {response!r}")

        order_id = response.get("orderID") or response.get("id") or ""
        error_msg = response.get("errorMsg", "")

        if not response.get("success", False) or not order_id:
            if error_msg:
                raise OrderRejected(error_msg)
            raise AmbiguousOrderOutcome(f"Order response without id: {response!r}")

        logger.info(
            f"Posted {intent.side.name} {intent.size} @ {intent.limit_price} "
            f"on {intent.token_id[:16]}... -> {order_id} ({response.get('status', '')})"
        )
        return OrderStatusReport(order_id=order_id, status=OrderStatus.ACKNOWLEDGED)

    async def get_order_status(self, record: OrderRecord) -> Optional[OrderStatusReport]:
        order_id = record.order_id
        if not order_id:
            order_id = await self._locate_order(record)
            if order_id is None:
                return None

        order = await self._call("get_order", order_id)
        if not order:
            return None

        status = _CLOB_STATUS.get(str(order.get("status", "")).upper(), OrderStatus.ACKNOWLEDGED)
        size_matched = float(order.get("size_matched") or 0.0)
        original_size = float(order.get("original_size") or record.intent.size)

        if status == OrderStatus.ACKNOWLEDGED and size_matched > 0:
            status = OrderStatus.PARTIALLY_FILLED
        if status == OrderStatus.FILLED and size_matched < original_size:
            status = OrderStatus.PARTIALLY_FILLED

        fills = []
        if size_matched > 0:
            fills = await self._order_fills(record, order_id)

        return OrderStatusReport(
            order_id=order_id,
            status=status,
            filled_quantity=size_matched,
            fills=fills,
        )

    async def _locate_order(self, record: OrderRecord) -> Optional[str]:
        """Find the exchange order of an ambiguous submission."""
        intent = record.intent
        side = "BUY" if intent.side == Side.BUY else "SELL"
        after_s = record.submitted_ms // 1000 - MATCH_WINDOW_SECS

        open_orders = await self._call("get_orders", OpenOrderParams(asset_id=intent.token_id)) or []
        for order in open_orders:
            if (
                str(order.get("side", "")).upper() == side
                and abs(float(order.get("price", 0)) - intent.limit_price) < 1e-9
                and abs(float(order.get("original_size", 0)) - intent.size) < 1e-6
                and int(order.get("created_at", 0) or 0) >= after_s
            ):
                logger.info(f"Located ambiguous order {record.idempotency_key} as {order['id']} (open)")
                return order["id"]

        trades = await self._call("get_trades", TradeParams(asset_id=intent.token_id, after=after_s)) or []
        for trade in trades:
            if (
                trade.get("trader_side") == "TAKER"
                and str(trade.get("side", "")).upper() == side
                and abs(float(trade.get("price", 0)) - intent.limit_price) < 1e-9
                and float(trade.get("size", 0)) <= intent.size + 1e-6
            ):
                order_id = trade.get("taker_order_id")
                if order_id:
                    logger.info(f"Located ambiguous order {record.idempotency_key} as {order_id} (trade)")
                    return order_id

        return None

    async def _order_fills(self, record: OrderRecord, order_id: str) -> list[Fill]:
        """Collect the fills of one order from the trade history."""
        intent = record.intent
        after_s = max(0, record.created_ms // 1000 - MATCH_WINDOW_SECS)
        trades = await self._call("get_trades", TradeParams(asset_id=intent.token_id, after=after_s)) or []

        fills = []
        for trade in trades:
            trade_id = trade.get("id", "")
            sequence = int(trade.get("match_time", 0) or 0)

            if trade.get("taker_order_id") == order_id:
                fills.append(Fill(
                    fill_id=f"{trade_id}:{order_id}",
                    order_id=order_id,
                    market_id=intent.market_id,
                    token_id=intent.token_id,
                    side=intent.side,
                    quantity=float(trade.get("size", 0)),
                    price=float(trade.get("price", 0)),
                    sequence=sequence,
                    ts_ms=sequence * 1000,
                ))
                continue

            for maker in trade.get("maker_orders", []) or []:
                if maker.get("order_id") == order_id:
                    fills.append(Fill(
                        fill_id=f"{trade_id}:{order_id}",
                        order_id=order_id,
                        market_id=intent.market_id,
                        token_id=intent.token_id,
                        side=intent.side,
                        quantity=float(maker.get("matched_amount", 0)),
                        price=float(maker.get("price", 0)),
                        sequence=sequence,
                        ts_ms=sequence * 1000,
                    ))

        return [f for f in fills if f.quantity > 0]

    async def cancel_order(self, order_id: str) -> bool:
        response = await self._call("cancel", order_id)
        if isinstance(response, dict):
            cancelled = response.get("canceled", []) or []
            if order_id in cancelled:
                return True
            reason = (response.get("not_canceled") or {}).get(order_id, "")
            logger.warning(f"Cancel of {order_id} not confirmed: {reason}")
        return False

    async def get_position(self, market_id: str, token_id: str) -> float:
        params = BalanceAllowanceParams(
            asset_type=AssetType.CONDITIONAL,
            token_id=token_id,
            signature_type=self._config.pm_signature_type,
        )
        response = await self._call("get_balance_allowance", params)
        raw_balance = int((response or {}).get("balance", 0) or 0)
        return raw_balance / SHARE_UNITS
