"""
Inventory validation for subscription renewals.

Splits a subscription's items into what can ship this cycle (priced at the
current catalog price) and what must be skipped, with a customer-readable
reason for each skip. Read-only: nothing here mutates the catalog or the
subscription.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol

from src.models.subscription import (
    AvailableItem,
    ProductSnapshot,
    SkippedItem,
    ValidationResult,
)
from src.services.catalog import CatalogQuery

logger = logging.getLogger(__name__)

UNKNOWN_PRODUCT_NAME = "Unknown Product"


class ItemLike(Protocol):
    product_id: str
    quantity: int


def _exclusion_reason(product: ProductSnapshot, quantity: int) -> Optional[str]:
    """First failing check wins; None means the item can ship."""
    if not product.is_active:
        return "Product has been discontinued"
    if not product.in_stock:
        return "Product is currently out of stock"
    if product.stock_count is not None and product.stock_count < quantity:
        return f"Insufficient stock (available: {product.stock_count}, needed: {quantity})"
    return None


class InventoryValidator:
    def __init__(self, catalog: CatalogQuery):
        self.catalog = catalog

    async def validate_subscription_items(self, items: Iterable[ItemLike]) -> ValidationResult:
        """Check every item against the live catalog.

        A lookup failure on one item excludes that item only; the rest are
        still validated.
        """
        result = ValidationResult()

        for item in items:
            try:
                product = await self.catalog.get_product(item.product_id)
            except Exception as e:
                logger.warning(f"Catalog lookup failed for product {item.product_id}: {e!r}")
                result.skipped_items.append(SkippedItem(
                    product_id=item.product_id,
                    product_name=UNKNOWN_PRODUCT_NAME,
                    reason="Error checking product availability",
                ))
                continue

            if product is None:
                result.skipped_items.append(SkippedItem(
                    product_id=item.product_id,
                    product_name=UNKNOWN_PRODUCT_NAME,
                    reason="Product not found in catalog",
                ))
                continue

            reason = _exclusion_reason(product, item.quantity)
            if reason:
                result.skipped_items.append(SkippedItem(
                    product_id=product.id,
                    product_name=product.name,
                    reason=reason,
                ))
                continue

            available = AvailableItem(product=product, quantity=item.quantity)
            result.available_items.append(available)
            result.total_cents += available.line_total_cents

        return result

    async def check_product_availability(
        self, product_id: str, quantity: int = 1,
    ) -> tuple[bool, Optional[ProductSnapshot], Optional[str]]:
        """Single-product check, e.g. before adding an item to a subscription."""
        try:
            product = await self.catalog.get_product(product_id)
        except Exception as e:
            logger.warning(f"Availability check failed for product {product_id}: {e!r}")
            return False, None, "Error checking availability"

        if product is None:
            return False, None, "Product not found"
        if not product.is_active:
            return False, product, "Product discontinued"
        if not product.in_stock:
            return False, product, "Out of stock"
        if product.stock_count is not None and product.stock_count < quantity:
            return False, product, f"Insufficient stock (available: {product.stock_count}, needed: {quantity})"
        return True, product, None
