"""Marketplace adapter registry.

Orchestration code resolves adapters through :func:`get_adapter` only, so a
new marketplace is added by registering its adapter class here.
"""

from typing import Any, Dict, Type, Union

from marketsync.models_sqlalchemy.models import Marketplace
from marketsync.services.errors import UnsupportedMarketplaceError

from .base import MarketplaceAdapter
from .amazon import AmazonAdapter
from .mercado_livre import MercadoLivreAdapter
from .shopee import ShopeeAdapter


ADAPTERS: Dict[Marketplace, Type[MarketplaceAdapter]] = {
    Marketplace.MERCADO_LIVRE: MercadoLivreAdapter,
    Marketplace.AMAZON: AmazonAdapter,
    Marketplace.SHOPEE: ShopeeAdapter,
}

# URL slugs accepted by the HTTP layer, e.g. /webhooks/mercado-livre.
_SLUGS = {
    "mercado-livre": Marketplace.MERCADO_LIVRE,
    "mercadolivre": Marketplace.MERCADO_LIVRE,
    "amazon": Marketplace.AMAZON,
    "shopee": Marketplace.SHOPEE,
}


def parse_marketplace(value: Union[str, Marketplace]) -> Marketplace:
    if isinstance(value, Marketplace):
        return value
    key = str(value).strip()
    if key.lower() in _SLUGS:
        return _SLUGS[key.lower()]
    try:
        return Marketplace(key.upper().replace("-", "_"))
    except ValueError:
        raise UnsupportedMarketplaceError(key) from None


def register_adapter(marketplace: Marketplace, adapter_cls: Type[MarketplaceAdapter]) -> None:
    ADAPTERS[marketplace] = adapter_cls


def get_adapter(marketplace: Union[str, Marketplace], **kwargs: Any) -> MarketplaceAdapter:
    resolved = parse_marketplace(marketplace)
    adapter_cls = ADAPTERS.get(resolved)
    if adapter_cls is None:
        raise UnsupportedMarketplaceError(resolved.value)
    return adapter_cls(**kwargs)


__all__ = [
    "ADAPTERS",
    "AmazonAdapter",
    "MarketplaceAdapter",
    "MercadoLivreAdapter",
    "ShopeeAdapter",
    "get_adapter",
    "parse_marketplace",
    "register_adapter",
]
