"""Feed message decoding.

Accepts the dashboard's own tagged payloads ({"type": "candleUpdate", ...},
{"type": "priceUpdate", "price": ...}) and Binance stream events
({"e": "kline", "k": {...}}, {"e": "24hrTicker", ...}), and returns a
FeedMessage tagged by its message type. Unknown types pass through.
"""

import json
from typing import Any

from pydantic import ValidationError

from chartfeed.errors import MalformedMessageError
from chartfeed.models.market import Candle, FeedMessage, MessageType, PriceUpdate

_CANDLE_FIELDS = ("timestamp", "open", "high", "low", "close", "volume")


def parse_message(raw: str | bytes | dict[str, Any]) -> FeedMessage:
    """Decode one inbound payload. Raises MalformedMessageError on bad structure."""
    if isinstance(raw, (str, bytes)):
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedMessageError(f"Non-JSON payload: {e}", raw) from e
    else:
        msg = raw

    if not isinstance(msg, dict):
        raise MalformedMessageError(f"Expected a JSON object, got {type(msg).__name__}", raw)

    event = msg.get("e")
    if event == "kline":
        return _parse_binance_kline(msg)
    if event == "24hrTicker":
        return _parse_binance_ticker(msg)

    msg_type = msg.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MalformedMessageError("Missing message type", raw)

    if msg_type == MessageType.CANDLE_UPDATE.value:
        return FeedMessage(type=msg_type, data=msg, candle=_parse_candle(msg))
    if msg_type == MessageType.PRICE_UPDATE.value:
        return FeedMessage(type=msg_type, data=msg, price=_parse_price(msg))
    return FeedMessage(type=msg_type, data=msg)


def _parse_candle(msg: dict[str, Any]) -> Candle:
    # Either flat fields or nested under "candle", as the chart socket sends them
    body = msg.get("candle") if isinstance(msg.get("candle"), dict) else msg
    fields = {k: body.get(k) for k in _CANDLE_FIELDS if body.get(k) is not None}
    if "timestamp" not in fields and msg.get("timestamp") is not None:
        fields["timestamp"] = msg["timestamp"]

    missing = [k for k in _CANDLE_FIELDS[:-1] if k not in fields]
    if missing:
        raise MalformedMessageError(f"candleUpdate missing fields: {missing}", msg)

    try:
        return Candle(
            **fields,
            symbol=msg.get("symbol") or body.get("symbol"),
            timeframe=msg.get("timeframe") or body.get("timeframe"),
        )
    except ValidationError as e:
        raise MalformedMessageError(f"Invalid candle: {e.errors()[0]['msg']}", msg) from e


def _parse_price(msg: dict[str, Any]) -> PriceUpdate:
    if msg.get("price") is None:
        raise MalformedMessageError("priceUpdate missing price", msg)
    try:
        return PriceUpdate(
            price=msg["price"],
            symbol=msg.get("symbol"),
            change=msg.get("change"),
            change_percent=msg.get("changePercent"),
            volume=msg.get("volume"),
            high=msg.get("high"),
            low=msg.get("low"),
            timestamp=msg.get("timestamp") if isinstance(msg.get("timestamp"), int) else None,
        )
    except ValidationError as e:
        raise MalformedMessageError(f"Invalid priceUpdate: {e.errors()[0]['msg']}", msg) from e


def _parse_binance_kline(msg: dict[str, Any]) -> FeedMessage:
    """Binance kline event: {"e": "kline", "s": "BTCUSDT", "k": {"t", "o", "h", "l", "c", "v", "i", "x"}}."""
    k = msg.get("k")
    if not isinstance(k, dict):
        raise MalformedMessageError("kline event without 'k' payload", msg)
    try:
        candle = Candle(
            timestamp=k["t"],
            open=float(k["o"]),
            high=float(k["h"]),
            low=float(k["l"]),
            close=float(k["c"]),
            volume=float(k.get("v", 0)),
            symbol=k.get("s") or msg.get("s"),
            timeframe=k.get("i"),
        )
    except (KeyError, TypeError, ValueError) as e:
        # ValidationError is a ValueError subclass
        raise MalformedMessageError(f"Invalid kline payload: {e}", msg) from e

    data = {"closed": bool(k.get("x", False)), "eventTime": msg.get("E")}
    return FeedMessage(type=MessageType.CANDLE_UPDATE.value, data=data, candle=candle)


def _parse_binance_ticker(msg: dict[str, Any]) -> FeedMessage:
    try:
        price = PriceUpdate(
            price=float(msg["c"]),
            symbol=msg.get("s"),
            change=float(msg["p"]) if "p" in msg else None,
            change_percent=float(msg["P"]) if "P" in msg else None,
            volume=float(msg["v"]) if "v" in msg else None,
            high=float(msg["h"]) if "h" in msg else None,
            low=float(msg["l"]) if "l" in msg else None,
            timestamp=msg.get("E"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedMessageError(f"Invalid ticker payload: {e}", msg) from e
    return FeedMessage(type=MessageType.PRICE_UPDATE.value, data=msg, price=price)
