"""Extract product data from storefront HTML."""
import logging
import re
from typing import Optional
from urllib.parse import urljoin

from selectolax.parser import HTMLParser, Node

from lunarbot.models import ProductInfo

logger = logging.getLogger(__name__)

# Phrases that mean "cannot be bought right now" on Dutch/Belgian storefronts
UNAVAILABLE_MARKERS = (
    "uitverkocht",
    "niet beschikbaar",
    "niet leverbaar",
    "tijdelijk uitverkocht",
    "out of stock",
    "sold out",
)

_PRICE_RE = re.compile(r"(\d+(?:[., ]\d{3})*(?:[.,]\d{1,2})?)")


def parse_price(text: Optional[str]) -> Optional[float]:
    """
    Parse a displayed price into a float.

    Handles "€ 1.299,99", "1,299.99", "29,-", "19.95" and "€ 5".
    Returns None when no number is present.
    """
    if not text:
        return None
    cleaned = text.replace("\xa0", " ").replace(",-", ",00").strip()
    match = _PRICE_RE.search(cleaned)
    if not match:
        return None
    number = match.group(1).replace(" ", "")

    last_comma = number.rfind(",")
    last_dot = number.rfind(".")
    if last_comma > last_dot:
        # Comma is the decimal separator
        number = number.replace(".", "").replace(",", ".")
    elif last_dot > last_comma:
        decimals = len(number) - last_dot - 1
        if last_comma == -1 and decimals == 3:
            # "1.299" is a thousands separator, not decimals
            number = number.replace(".", "")
        else:
            number = number.replace(",", "")
    try:
        return float(number)
    except ValueError:
        return None


def is_unavailable_text(text: Optional[str]) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(marker in lowered for marker in UNAVAILABLE_MARKERS)


def _first(tree: HTMLParser | Node, selectors: str) -> Optional[Node]:
    for selector in selectors.split(","):
        node = tree.css_first(selector.strip())
        if node is not None:
            return node
    return None


def _text(node: Optional[Node]) -> str:
    return node.text(strip=True) if node is not None else ""


def parse_product_page(
    html: str,
    url: str,
    name_selectors: str,
    price_selectors: str,
    buy_selectors: str,
    sku_selectors: str = "[data-sku], .sku",
    image_selectors: str = "img",
) -> Optional[ProductInfo]:
    """Build a ProductInfo from a product detail page. None when no product name is found."""
    if not html:
        return None
    tree = HTMLParser(html)

    name = _text(_first(tree, name_selectors))
    if not name:
        logger.debug(f"No product name found on {url}")
        return None

    price = parse_price(_text(_first(tree, price_selectors)))

    buy_node = _first(tree, buy_selectors)
    availability = buy_node is not None and not is_unavailable_text(_text(buy_node))

    sku_node = _first(tree, sku_selectors)
    sku = None
    if sku_node is not None:
        sku = sku_node.attributes.get("data-sku") or _text(sku_node) or None

    image_node = _first(tree, image_selectors)
    image_url = image_node.attributes.get("src") if image_node is not None else None

    return ProductInfo(
        name=name,
        price=price,
        availability=availability,
        url=url,
        image_url=image_url,
        sku=sku,
    )


def parse_search_results(
    html: str,
    base_url: str,
    item_selectors: str,
    name_selectors: str,
    price_selectors: str,
    stock_selectors: str,
) -> list[ProductInfo]:
    """Extract product tiles from a search results page. Tiles without name or link are skipped."""
    if not html:
        return []
    tree = HTMLParser(html)
    products: list[ProductInfo] = []
    for selector in item_selectors.split(","):
        tiles = tree.css(selector.strip())
        if not tiles:
            continue
        for tile in tiles:
            name = _text(_first(tile, name_selectors))
            link = tile.css_first("a[href]")
            href = link.attributes.get("href") if link is not None else None
            if not name or not href:
                continue
            image = tile.css_first("img")
            products.append(
                ProductInfo(
                    name=name,
                    price=parse_price(_text(_first(tile, price_selectors))),
                    availability=not is_unavailable_text(_text(_first(tile, stock_selectors))),
                    url=urljoin(base_url, href),
                    image_url=image.attributes.get("src") if image is not None else None,
                    sku=tile.attributes.get("data-sku"),
                )
            )
        break
    return products
