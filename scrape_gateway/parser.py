"""Item page parser and search-result merging"""

import re
from typing import Any, Dict, List, Optional

import orjson
from bs4 import BeautifulSoup

PRICE_PATTERNS = [
    re.compile(r'"price_amount":\s*"?([0-9]+(?:[.,][0-9]+)?)', re.I),
    re.compile(r'"priceNumeric":\s*"?([0-9]+(?:[.,][0-9]+)?)', re.I),
    re.compile(r'"price_numeric":\s*"?([0-9]+(?:[.,][0-9]+)?)', re.I),
    re.compile(r'"price":\s*"?([0-9]+(?:[.,][0-9]+)?)"?', re.I),
    re.compile(r'"amount":\s*"?([0-9]+(?:[.,][0-9]+)?)', re.I),
    re.compile(r'"numerical":\s*"?([0-9]+(?:[.,][0-9]+)?)', re.I),
]
VISIBLE_PRICE_RE = re.compile(r"([0-9]+(?:[.,][0-9]+)?)\s*€")
ADDED_SINCE_JSON_RE = re.compile(r'"added_since":"([^"]+)"')
ADDED_SINCE_TEXT_RE = re.compile(
    r"Il y a\s+(\d+)\s+(minute|minutes|heure|heures|jour|jours|semaine|semaines|mois|an|ans)\b",
    re.I,
)
PROTECTION_NOTE_RE = re.compile(r"au lieu de\s*([0-9][\d\s.,]*\s*€)", re.I)
FAVOURITES_RE = re.compile(r'aria-label="[^"]*favoris[^"]*?(\d+)\s+utilisateurs?', re.I)


def clean_text(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    return re.sub(r"\s+", " ", text).strip() or None


def parse_number(value: Any) -> Optional[float]:
    """Numbers from values like ``12,50 €`` or ``"3.2"``"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    match = re.search(r"([0-9]+(?:\.[0-9]+)?)", re.sub(r"\s", "", str(value)).replace(",", "."))
    return float(match.group(1)) if match else None


class ItemPageParser:
    """Extract listing details from a marketplace item page"""

    def __init__(self, html: str):
        self.html = html
        self.soup = BeautifulSoup(html, "html.parser")
        self.hits: Dict[str, Dict[str, Any]] = {}

    def parse(self) -> Dict[str, Any]:
        """
        Parse the page.

        Returns:
            Dict with title, description, condition, price, flags, fees,
            added_since, images and favourite_count (missing values are None)
        """
        for data in self._structured_blocks():
            self._collect(data)

        product = self._json_ld_product()
        price_node = self.hits.get("price")
        flags = self.hits.get("flags", {})
        protection = self.hits.get("protection", {})

        price_amount = self._price_from_node(price_node) or self._price_from_html()
        price_currency = "EUR"
        if price_node:
            nested = price_node.get("price") if isinstance(price_node.get("price"), dict) else {}
            price_currency = price_node.get("currency") or price_node.get("currencyCode") or nested.get("currency") or "EUR"

        prot_final = parse_number((protection.get("finalPrice") or {}).get("amount"))
        prot_orig = parse_number((protection.get("originalPrice") or {}).get("amount"))
        if prot_final and prot_orig and prot_orig > prot_final:
            amount = f"{prot_orig:.2f}".replace(".", ",")
            protection_note = f"remise en cours (au lieu de {amount} €)"
        else:
            protection_note = self._protection_note_from_html()

        description_node = self.hits.get("description", {})
        description = (
            clean_text(description_node.get("description"))
            or self._testid_text("item-description")
            or clean_text(product.get("description"))
            or clean_text(self._meta("og:description"))
        )
        title = (
            clean_text(product.get("name"))
            or clean_text(self._meta("og:title"))
            or self._testid_text("item-title")
        )

        return {
            "title": title,
            "description": description,
            "condition": clean_text((self.hits.get("status") or {}).get("value")),
            "price_amount": price_amount,
            "price_currency": price_currency,
            "can_buy": flags.get("canBuy"),
            "can_instant_buy": flags.get("canInstantBuy"),
            "is_reserved": flags.get("isReserved"),
            "is_hidden": flags.get("isHidden"),
            "protection_fee_amount": prot_final,
            "protection_fee_note": protection_note,
            "shipping_fee": parse_number((self.hits.get("shipping") or {}).get("amount")),
            "added_since": self._added_since(),
            "images": self._images(),
            "favourite_count": self._favourite_count(),
        }

    def _structured_blocks(self) -> List[Any]:
        blocks = []
        for script in self.soup.find_all("script"):
            raw = script.string or ""
            kind = (script.get("type") or "").lower()
            if kind == "application/json" or script.get("id") == "__NEXT_DATA__":
                try:
                    data = orjson.loads(raw)
                except orjson.JSONDecodeError:
                    continue
                if isinstance(data, list):
                    blocks.extend(data)
                else:
                    blocks.append(data)
        return blocks

    def _collect(self, node: Any) -> None:
        """Walk a JSON tree and keep the first node of each interesting kind"""
        if isinstance(node, list):
            for child in node:
                self._collect(child)
            return
        if not isinstance(node, dict):
            return

        def keep(kind: str, value: Dict[str, Any]) -> None:
            self.hits.setdefault(kind, value)

        price = node.get("price")
        if (
            (price is not None and (node.get("currency") or node.get("currencyCode") or isinstance(price, dict)))
            or ((node.get("amount") is not None or node.get("numerical") is not None)
                and (node.get("currency") or node.get("currencyCode")))
            or any(k in node for k in ("totalPrice", "finalPrice", "priceNumeric", "price_numeric", "price_amount"))
        ):
            keep("price", node)
        if isinstance(node.get("shippingDetails"), dict) and node["shippingDetails"].get("price"):
            keep("shipping", node["shippingDetails"]["price"])
        protection = node.get("buyerProtection")
        if isinstance(protection, dict) and (protection.get("finalPrice") or protection.get("originalPrice")):
            keep("protection", protection)
        if any(isinstance(node.get(k), bool) for k in ("canBuy", "canInstantBuy", "isReserved", "isHidden")):
            keep("flags", node)
        if node.get("code") == "status" and node.get("value"):
            keep("status", node)
        if node.get("code") == "upload_date" and node.get("value"):
            keep("added", node)
        if isinstance(node.get("description"), str):
            keep("description", node)
        if isinstance(node.get("photos"), list) and node["photos"]:
            keep("photos", node)
        if isinstance(node.get("favourite_count"), int):
            keep("favourites", node)
        elif isinstance(node.get("favouriteCount"), int):
            keep("favourites", {"favourite_count": node["favouriteCount"]})

        for child in node.values():
            self._collect(child)

    def _json_ld_product(self) -> Dict[str, Any]:
        products = []
        for script in self.soup.find_all("script", attrs={"type": "application/ld+json"}):
            try:
                data = orjson.loads(script.string or "")
            except orjson.JSONDecodeError:
                continue
            products.extend(data if isinstance(data, list) else [data])

        products = [p for p in products if isinstance(p, dict)]
        for product in products:
            if str(product.get("@type", "")).lower() == "product":
                return product
        return products[0] if products else {}

    def _meta(self, name: str) -> Optional[str]:
        tag = self.soup.find("meta", attrs={"property": name}) or self.soup.find("meta", attrs={"name": name})
        return tag.get("content") if tag else None

    def _testid_text(self, testid: str) -> Optional[str]:
        element = self.soup.find(attrs={"data-testid": testid})
        return clean_text(element.get_text(" ")) if element else None

    @staticmethod
    def _price_from_node(node: Optional[Dict[str, Any]]) -> Optional[float]:
        if not node:
            return None
        price = node.get("price")
        if isinstance(price, dict):
            candidates = [price.get("numerical"), price.get("amount")]
        else:
            candidates = [price]
        candidates += [node.get(k) for k in (
            "amount", "numerical", "priceNumeric", "price_numeric", "price_amount", "totalPrice", "finalPrice"
        )]
        for candidate in candidates:
            if candidate is not None:
                return parse_number(candidate)
        return None

    def _price_from_html(self) -> Optional[float]:
        meta_price = parse_number(self._meta("product:price:amount"))
        if meta_price:
            return meta_price

        for pattern in PRICE_PATTERNS:
            match = pattern.search(self.html)
            if match:
                price = parse_number(match.group(1))
                if price:
                    return price

        # Last resort: first visible amount above 0.10 €
        for raw in VISIBLE_PRICE_RE.findall(self.soup.get_text(" ")):
            price = parse_number(raw)
            if price and price > 0.1:
                return price
        return None

    def _protection_note_from_html(self) -> Optional[str]:
        index = self.html.lower().find("protection")
        if index < 0:
            return None
        match = PROTECTION_NOTE_RE.search(self.html[max(0, index - 200):index + 210])
        if not match:
            return None
        reference = re.sub(r"\s+", " ", match.group(1)).strip()
        return f"remise en cours (au lieu de {reference})"

    def _added_since(self) -> Optional[str]:
        added = self.hits.get("added")
        if added:
            return clean_text(added.get("value"))
        match = ADDED_SINCE_JSON_RE.search(self.html)
        if match:
            return clean_text(match.group(1))
        match = ADDED_SINCE_TEXT_RE.search(self.soup.get_text(" "))
        return f"Il y a {match.group(1)} {match.group(2)}" if match else None

    def _images(self) -> List[str]:
        urls = [
            link.get("href")
            for link in self.soup.find_all("link", attrs={"rel": "preload", "as": "image"})
            if link.get("href")
        ]
        if not urls:
            og_image = self._meta("og:image")
            if og_image:
                urls.append(og_image)

        photos = (self.hits.get("photos") or {}).get("photos") or []
        urls += [p.get("url") for p in photos if isinstance(p, dict) and p.get("url")]
        return list(dict.fromkeys(urls))

    def _favourite_count(self) -> int:
        favourites = self.hits.get("favourites")
        if favourites:
            return favourites["favourite_count"]
        match = FAVOURITES_RE.search(self.html)
        return int(match.group(1)) if match else 0


def parse_item_page(html: str) -> Dict[str, Any]:
    return ItemPageParser(html).parse()


def prune_nulls(value: Any) -> Any:
    """
    Drop None values, empty containers, price objects without an amount and
    empty protection-fee objects, recursively. Keeps 0, False and strings.
    """
    def prune(val: Any) -> Any:
        if val is None:
            return None
        if isinstance(val, list):
            items = [p for p in (prune(v) for v in val) if p is not None]
            return items or None
        if isinstance(val, dict):
            if "amount" in val and "currency_code" in val and val["amount"] is None:
                return None
            if set(val) == {"amount", "note"} and val["amount"] is None and not val["note"]:
                return None
            out = {k: p for k, p in ((k, prune(v)) for k, v in val.items()) if p is not None}
            return out or None
        return val

    pruned = prune(value)
    return pruned if isinstance(pruned, dict) else {}


def merge_with_enriched(item: Dict[str, Any], enriched: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Overlay parsed item-page data onto a search result.

    The search result's price is kept when it has one; the page price is
    only used as a fallback.
    """
    merged = dict(item)

    if enriched:
        for key in ("title", "description", "condition", "added_since"):
            if enriched.get(key):
                merged[key] = enriched[key]

        price = merged.get("price") if isinstance(merged.get("price"), dict) else {}
        if price.get("amount") is None and enriched.get("price_amount") is not None:
            merged["price"] = {
                "amount": enriched["price_amount"],
                "currency_code": enriched.get("price_currency") or price.get("currency_code") or "EUR",
            }

        for key in ("can_buy", "can_instant_buy", "is_reserved", "is_hidden", "shipping_fee"):
            if key in enriched:
                merged[key] = enriched[key]

        if "protection_fee_amount" in enriched or enriched.get("protection_fee_note"):
            merged["protection_fee"] = {
                "amount": enriched.get("protection_fee_amount") or None,
                "note": enriched.get("protection_fee_note") or None,
            }

        for key in ("images", "photos_data"):
            if isinstance(enriched.get(key), list) and enriched[key]:
                merged[key] = enriched[key]

        if isinstance(enriched.get("favourite_count"), int) and not isinstance(enriched["favourite_count"], bool):
            merged["favourite_count"] = enriched["favourite_count"]

    return prune_nulls(merged)
