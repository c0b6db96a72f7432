"""Default product catalog and seeding."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from .dao import ProductDAO

logger = logging.getLogger(__name__)

DEFAULT_PRODUCTS: List[Dict[str, Any]] = [
    {
        "name": "Pure Cow Ghee",
        "grams": 100,
        "liter": 0.1,
        "price": 120,
        "description": "Pure cow ghee made from traditional bilona method. Perfect for small families or first-time buyers.",
        "image": "/bottle-100g.svg",
        "badge": None,
        "free_delivery": False,
    },
    {
        "name": "Pure Cow Ghee",
        "grams": 250,
        "liter": 0.25,
        "price": 300,
        "description": "Handcrafted pure cow ghee with rich aroma. Ideal for daily cooking and traditional recipes.",
        "image": "/bottle-250g.svg",
        "badge": None,
        "free_delivery": False,
    },
    {
        "name": "Pure Cow Ghee",
        "grams": 500,
        "liter": 0.5,
        "price": 600,
        "description": "Premium quality cow ghee. No preservatives, no chemicals. Traditional goodness in every spoon.",
        "image": "/bottle-500g.svg",
        "badge": "Popular",
        "free_delivery": False,
    },
    {
        "name": "Pure Cow Ghee",
        "grams": 750,
        "liter": 0.75,
        "price": 900,
        "description": "Authentic cow ghee prepared using age-old methods. Rich taste and maximum purity guaranteed.",
        "image": "/bottle-750g.svg",
        "badge": None,
        "free_delivery": False,
    },
    {
        "name": "Pure Cow Ghee",
        "grams": 1000,
        "liter": 1,
        "price": 1200,
        "description": "Best value 1 KG pack! Pure cow ghee with authentic granular texture. Free delivery included.",
        "image": "/bottle-1kg.svg",
        "badge": "Free Delivery",
        "free_delivery": True,
    },
    {
        "name": "Premium Cow Ghee Pack",
        "grams": 2000,
        "liter": 2,
        "price": 2400,
        "description": "Premium 2 KG family pack of pure cow ghee. Best value for regular use. Free delivery included.",
        "image": "/bottle-2kg.svg",
        "badge": "Premium Pack",
        "free_delivery": True,
    },
]


def seed_products(products: ProductDAO) -> int:
    """Insert the default catalog into an empty products table.

    Returns the number of rows inserted (0 when the catalog already has data).
    """
    if products.count() > 0:
        return 0
    inserted = products.insert_many(DEFAULT_PRODUCTS)
    logger.info("Products seeded", extra={"extra": {"count": inserted}})
    return inserted
