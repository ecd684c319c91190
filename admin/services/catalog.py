from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import stripe
from flask import current_app

from billing.services.stripe_client import object_id


@dataclass
class ProductInfo:
    id: str
    name: str
    active: Optional[bool] = None


class CatalogResolver:
    """
    Request-scoped memo over price and product lookups. Unknown ids degrade to
    the raw id as display name; other provider errors propagate.
    """

    def __init__(self, gateway):
        self.gateway = gateway
        self._prices: Dict[str, Dict[str, Any]] = {}
        self._products: Dict[str, ProductInfo] = {}

    def price(self, price_id: str) -> Dict[str, Any]:
        if price_id in self._prices:
            return self._prices[price_id]
        try:
            price = self.gateway.retrieve_price(price_id)
        except stripe.InvalidRequestError:
            current_app.logger.warning("[admin.catalog] unknown price %s", price_id)
            price = {"id": price_id}
        self._prices[price_id] = price
        if isinstance(price.get("product"), dict):
            self._remember(price["product"])
        return price

    def product(self, product_id: str) -> ProductInfo:
        if product_id in self._products:
            return self._products[product_id]
        try:
            product = self.gateway.retrieve_product(product_id)
        except stripe.InvalidRequestError:
            current_app.logger.warning("[admin.catalog] unknown product %s", product_id)
            info = ProductInfo(id=product_id, name=product_id)
            self._products[product_id] = info
            return info
        return self._remember(product)

    def _remember(self, product: Dict[str, Any]) -> ProductInfo:
        pid = product.get("id")
        if product.get("deleted"):
            info = ProductInfo(id=pid, name=pid, active=False)
        else:
            active = product.get("active")
            info = ProductInfo(
                id=pid,
                name=product.get("name") or pid,
                active=active if isinstance(active, bool) else None,
            )
        self._products[pid] = info
        return info

    def resolve(self, price_ref: Any) -> Tuple[Optional[Dict[str, Any]], Optional[ProductInfo]]:
        """
        price_ref is a price id or a (possibly partially) expanded price.
        Returns (price, product) with the price carrying unit_amount etc.
        """
        price_id = object_id(price_ref)
        if not price_id:
            return None, None
        if isinstance(price_ref, dict) and price_ref.get("unit_amount") is not None and price_ref.get("product"):
            price = price_ref
            self._prices.setdefault(price_id, price)
        else:
            price = self.price(price_id)

        product_ref = price.get("product")
        if isinstance(product_ref, dict):
            return price, self._products.get(product_ref.get("id")) or self._remember(product_ref)
        if product_ref:
            return price, self.product(product_ref)
        return price, None
