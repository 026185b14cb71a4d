"""Protected product operations: barcode lookup and description generation.

Both sit behind authentication and the subscription gate. The collaborators
are protocols so a deployment can plug in a real barcode database or a
hosted language model; the defaults are an in-memory catalog and a template
generator.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from descgate.logging import get_logger
from descgate.service.errors import InvalidInputError, NotFoundError

logger = get_logger(__name__)

_BARCODE_RE = re.compile(r"^(?:\d{8}|\d{12}|\d{13})$")

BRAND_TONES: Dict[str, str] = {
    "luxury": "refined and premium",
    "casual": "friendly and conversational",
    "professional": "clear and authoritative",
    "fun": "playful and energetic",
    "minimalist": "clean and concise",
}

DESCRIPTION_LENGTHS: Dict[str, int] = {"short": 1, "medium": 2, "extensive": 3}

LANGUAGES = (
    "english", "german", "french", "spanish", "portuguese", "italian", "dutch",
    "russian", "japanese", "korean", "chinese", "arabic", "hindi",
)

_PRODUCT_TYPES = (
    (("watch", "clock", "timepiece"), "timepiece"),
    (("phone", "mobile", "smartphone"), "smartphone"),
    (("headphone", "earphone", "audio", "speaker"), "audio device"),
    (("shirt", "dress", "clothing", "apparel", "fashion"), "fashion item"),
    (("laptop", "computer"), "computer"),
    (("kitchen", "cook", "appliance"), "kitchen appliance"),
    (("book", "novel", "magazine"), "book"),
    (("toy", "game"), "toy/game"),
    (("beauty", "cosmetic", "makeup"), "beauty product"),
    (("food", "snack", "drink", "beverage"), "food/beverage"),
    (("tool", "hardware", "equipment"), "tool/equipment"),
)


def normalize_barcode(barcode: Any) -> str:
    """Strip spaces and dashes, then require an 8, 12 or 13 digit UPC/EAN code."""
    if not isinstance(barcode, str) or not barcode:
        raise InvalidInputError("barcode is required", error_code="INVALID_BARCODE")
    cleaned = re.sub(r"[\s-]", "", barcode)
    if not _BARCODE_RE.match(cleaned):
        raise InvalidInputError(
            "invalid barcode format",
            error_code="INVALID_BARCODE",
            public_message="Invalid barcode format. Must be 8, 12, or 13 digit UPC/EAN code.",
        )
    return cleaned


def product_type(name: Optional[str], category: Optional[str]) -> str:
    text = f"{name or ''} {category or ''}".lower()
    for keywords, label in _PRODUCT_TYPES:
        if any(keyword in text for keyword in keywords):
            return label
    return "product"


@dataclass
class ProductInfo:
    barcode: str
    name: str
    brand: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    source: str = "catalog"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DescriptionRequest:
    product: Dict[str, Any]
    language: str = "english"
    brand_tone: str = "professional"
    length: str = "medium"
    target_audience: Optional[str] = None
    key_features: List[str] = field(default_factory=list)


class ProductCatalog(Protocol):
    async def lookup(self, barcode: str) -> ProductInfo: ...


class DescriptionGenerator(Protocol):
    async def generate(self, request: DescriptionRequest) -> str: ...


class InMemoryProductCatalog:
    def __init__(self, products: Optional[Dict[str, ProductInfo]] = None) -> None:
        self._products: Dict[str, ProductInfo] = dict(products or {})

    def add(self, product: ProductInfo) -> None:
        self._products[normalize_barcode(product.barcode)] = product

    async def lookup(self, barcode: str) -> ProductInfo:
        code = normalize_barcode(barcode)
        product = self._products.get(code)
        if product is None:
            logger.info("barcode_lookup_not_found", barcode=code)
            raise NotFoundError(
                "product not found",
                detail={"barcode": code},
                public_message="Product not found",
            )
        return product


class TemplateDescriptionGenerator:
    """Deterministic generator used when no language model is configured."""

    async def generate(self, request: DescriptionRequest) -> str:
        name = str(request.product.get("name") or "").strip()
        if not name:
            raise InvalidInputError("product name is required")
        tone = BRAND_TONES.get(request.brand_tone, BRAND_TONES["professional"])
        kind = product_type(name, request.product.get("category"))
        brand = request.product.get("brand")
        article = "an" if kind[0] in "aeiou" else "a"

        sentences = [
            f"Meet the {name}{f' by {brand}' if brand else ''}, {article} {kind} presented in a {tone} voice."
        ]
        if request.key_features:
            sentences.append("Highlights: " + ", ".join(request.key_features[:5]) + ".")
        if request.target_audience:
            sentences.append(f"Made for {request.target_audience}.")
        if DESCRIPTION_LENGTHS.get(request.length, 2) >= 2 and request.product.get("description"):
            sentences.append(str(request.product["description"]).strip())
        if DESCRIPTION_LENGTHS.get(request.length, 2) >= 3:
            sentences.append(f"Order your {name} today.")
        return " ".join(sentences)
