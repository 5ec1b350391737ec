"""Candle data models and raw Binance kline decoding."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Sequence, Tuple


class TradingPair(str, Enum):
    """Trading pairs the pipeline knows how to ingest."""

    BTCUSDT = "BTCUSDT"
    ETHUSDT = "ETHUSDT"
    LDOUSDT = "LDOUSDT"

    def __str__(self) -> str:
        return self.value

    @property
    def table_suffix(self) -> str:
        """Lowercase symbol used to namespace per-pair tables."""
        return self.value.lower()


@dataclass(frozen=True)
class Candle:
    """Normalized OHLCV candle for a single interval."""
    time_open: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    num_trades: int

    def as_record(self) -> Tuple[int, float, float, float, float, float, int]:
        """Row tuple in klines table column order."""
        return (
            self.time_open,
            self.open,
            self.high,
            self.low,
            self.close,
            self.volume,
            self.num_trades,
        )


@dataclass(frozen=True)
class RawKline:
    """
    Kline exactly as returned by the Binance REST API.

    Binance encodes every decimal field as a string:
    [open_time, open, high, low, close, volume, close_time,
     quote_asset_volume, num_trades, taker_buy_base_asset_volume,
     taker_buy_quote_asset_volume, unused]
    """
    time_open: int
    open: str
    high: str
    low: str
    close: str
    volume: str
    time_close: int
    quote_asset_volume: str
    num_trades: int
    taker_buy_base_asset_volume: str
    taker_buy_quote_asset_volume: str
    unused: str

    FIELD_COUNT = 12

    @classmethod
    def from_payload(cls, payload: Sequence[Any]) -> "RawKline":
        """Build from one element of a klines response array."""
        if not isinstance(payload, (list, tuple)) or len(payload) != cls.FIELD_COUNT:
            raise ValueError(f"Expected a {cls.FIELD_COUNT}-field kline array, got {payload!r}")

        return cls(
            time_open=int(payload[0]),
            open=str(payload[1]),
            high=str(payload[2]),
            low=str(payload[3]),
            close=str(payload[4]),
            volume=str(payload[5]),
            time_close=int(payload[6]),
            quote_asset_volume=str(payload[7]),
            num_trades=int(payload[8]),
            taker_buy_base_asset_volume=str(payload[9]),
            taker_buy_quote_asset_volume=str(payload[10]),
            unused=str(payload[11]),
        )

    def process(self) -> Candle:
        """Convert string-encoded fields into a typed Candle."""
        return Candle(
            time_open=self.time_open,
            open=float(self.open),
            high=float(self.high),
            low=float(self.low),
            close=float(self.close),
            volume=float(self.volume),
            num_trades=self.num_trades,
        )


def decode_klines(payload: Any) -> List[Candle]:
    """Decode a klines response body into candles.

    Raises ValueError if the body is not a list of well-formed kline arrays.
    """
    if not isinstance(payload, list):
        raise ValueError(f"Expected a list of klines, got {type(payload).__name__}")

    return [RawKline.from_payload(item).process() for item in payload]
