"""
Server-side price catalog.

Prices are in minor currency units (cents). Client-supplied prices are
never trusted; every checkout line is priced from these tables.
"""
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional

from errors import UnknownCatalogItemError

class ProductId(str, Enum):
    DP_MINI_BASE = "dp-mini-base"
    DP_PRO_BASE = "dp-pro-base"
    LICENSE_BASE = "license-base"
    FEATURE_3D_MODELS = "feature-3d-models"
    FEATURE_PARALLAX = "feature-parallax"
    FEATURE_IMAGE_ADDITION = "feature-image-addition"
    FEATURE_NDI = "feature-ndi"

class OptionCategory(str, Enum):
    OBJECTIVES = "objectives"
    EYEPIECES = "eyepieces"
    MOUNTING = "mounting"
    STABILIZATION = "stabilization"
    CARE = "care"

PRICES: Dict[ProductId, int] = {
    ProductId.DP_MINI_BASE: 299000,
    ProductId.DP_PRO_BASE: 899000,
    ProductId.LICENSE_BASE: 60000,
    ProductId.FEATURE_3D_MODELS: 12900,
    ProductId.FEATURE_PARALLAX: 4900,
    ProductId.FEATURE_IMAGE_ADDITION: 4900,
    ProductId.FEATURE_NDI: 22000,
}

OPTION_PRICES: Dict[OptionCategory, Dict[str, int]] = {
    OptionCategory.OBJECTIVES: {"50mm": 0, "60mm": 18000, "75mm": 35000},
    OptionCategory.EYEPIECES: {"screen": 0, "hd": 29000, "4k": 58000},
    OptionCategory.MOUNTING: {"handle": 0, "arm": 22000},
    OptionCategory.STABILIZATION: {"3axis": 0, "enhanced": 45000},
    OptionCategory.CARE: {"none": 0, "basic": 29000, "plus": 49000},
}

def product_id(raw: Optional[str]) -> ProductId:
    try:
        return ProductId(raw)
    except ValueError:
        raise UnknownCatalogItemError(f"Invalid product ID: '{raw}'")

def option_price(category: str, selection: str) -> int:
    try:
        selections = OPTION_PRICES[OptionCategory(category)]
    except ValueError:
        raise UnknownCatalogItemError(f"Invalid option category: '{category}'")
    if selection not in selections:
        raise UnknownCatalogItemError(f"Invalid option '{selection}' for '{category}'")
    return selections[selection]

def calculate_item_price(raw_id: Optional[str], options: Optional[Mapping[str, str]] = None) -> int:
    """Base price of the product plus every selected option."""
    total = PRICES[product_id(raw_id)]
    for category, selection in (options or {}).items():
        total += option_price(category, selection)
    return total

def feature_ids_in_cart(ids: Iterable[str]) -> str:
    """Comma-joined feature product ids, as stored in checkout metadata."""
    return ",".join(i for i in ids if str(i).startswith("feature-"))
