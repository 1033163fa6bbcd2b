"""
Exchange Integrations Package

- BaseExchangeClient: capability set used by settlement and import
- BybitClient: Bybit v5 REST implementation
"""

from typing import Optional

from app.config.settings import Settings, get_settings
from app.integrations.exchanges.base import (
    BaseExchangeClient,
    CancelOrderResult,
    CloseOrderResult,
    ExchangeTrade,
    HoldSide,
)
from app.integrations.exchanges.bybit_client import BybitClient


def create_exchange_client(settings: Optional[Settings] = None) -> BaseExchangeClient:
    """
    Create the configured exchange client.

    Raises:
        ExchangeAuthFailedError: If credentials are not configured
    """
    return BybitClient.from_settings(settings or get_settings())


__all__ = [
    "BaseExchangeClient",
    "BybitClient",
    "CancelOrderResult",
    "CloseOrderResult",
    "ExchangeTrade",
    "HoldSide",
    "create_exchange_client",
]
