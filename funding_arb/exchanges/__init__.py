from .base import ExchangeGateway
from .binance import BinanceGateway
from .paper import PaperGateway

__all__ = ["BinanceGateway", "ExchangeGateway", "PaperGateway"]
