"""Remote market data connectors."""

from .binance_rest import BinanceRESTClient, KlineConnector

__all__ = ["BinanceRESTClient", "KlineConnector"]
