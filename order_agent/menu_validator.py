# order_agent/menu_validator.py
"""
Menu Validator

Matches what the customer typed against the restaurant's catalog.

- Splits the message into fragments ("2 margheritas e uma coca").
- Reads a leading quantity, in digits or words ("2", "duas", "3x").
- Matches each fragment: exact name, then a product name contained in the
  fragment, then a name holding every word of the fragment, then fuzzy
  ("margerita" ≈ "Margherita").
"""

from __future__ import annotations

import difflib
import re
import unicodedata
from typing import Dict, List, Optional, Set, Tuple

from .models import OrderLine, Product

NUMBER_WORDS: Dict[str, int] = {
    "um": 1, "uma": 1, "dois": 2, "duas": 2, "tres": 3, "quatro": 4,
    "cinco": 5, "seis": 6, "sete": 7, "oito": 8, "nove": 9, "dez": 10,
}

FILLER = re.compile(
    r"^(eu\s+)?(quero|queria|gostaria\s+de|vou\s+querer|me\s+(manda|ve|da)|manda|"
    r"adiciona|acrescenta|coloca|mais|pode\s+ser|por\s+favor)\s+"
)
SPLITTER = re.compile(r",|;|\n|\s+e\s+|\s+\+\s+")
QUANTITY = re.compile(r"^(\d{1,2})\s*x?\s+|^(" + "|".join(NUMBER_WORDS) + r")\s+")


def normalize(text: str) -> str:
    text = unicodedata.normalize("NFKD", text.lower())
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = re.sub(r"[^\w\s,;+\n]", " ", text)
    return re.sub(r"[ \t]+", " ", text).strip()


def _words(text: str) -> Set[str]:
    # plural "s" dropped, short words ignored
    return {w.rstrip("s") for w in text.split() if len(w) > 2}


def parse_fragment(fragment: str) -> Tuple[int, str]:
    """
    Return (quantity, remaining text) for one fragment.
    """
    candidate = fragment.strip()
    while True:
        stripped = FILLER.sub("", candidate)
        if stripped == candidate:
            break
        candidate = stripped

    quantity = 1
    match = QUANTITY.match(candidate)
    if match:
        quantity = int(match.group(1)) if match.group(1) else NUMBER_WORDS[match.group(2)]
        candidate = candidate[match.end():]
    return max(quantity, 1), candidate.strip()


class MenuValidator:
    """
    Validates ordered text against the available products of a restaurant.
    """

    def __init__(self, fuzzy_threshold: float = 0.7) -> None:
        self.fuzzy_threshold = fuzzy_threshold

    def match_items(
        self,
        message: str,
        products: List[Product],
    ) -> Tuple[List[OrderLine], List[str]]:
        """
        Returns:
        - lines  : order lines for fragments that matched a product
        - unknown: fragments that looked like an item but matched nothing
        """
        if not products:
            return [], []

        by_name = {normalize(p.name): p for p in products}
        names = list(by_name)

        lines: List[OrderLine] = []
        unknown: List[str] = []

        for raw in SPLITTER.split(normalize(message)):
            quantity, candidate = parse_fragment(raw)
            if len(candidate) < 3:
                continue

            product = self._best_match(candidate, by_name, names)
            if product is None:
                unknown.append(candidate)
                continue
            lines.append(
                OrderLine(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=quantity,
                    unit_price=product.price,
                )
            )
        return lines, unknown

    def _best_match(self, candidate: str, by_name: Dict[str, Product], names: List[str]) -> Optional[Product]:
        # Exact match first
        if candidate in by_name:
            return by_name[candidate]

        # Longest product name mentioned inside the fragment
        contained = [n for n in names if re.search(rf"\b{re.escape(n)}\b", candidate)]
        if contained:
            return by_name[max(contained, key=len)]

        # Every word of the fragment belongs to exactly one product name
        wanted = _words(candidate)
        if wanted:
            covering = [n for n in names if wanted <= _words(n)]
            if len(covering) == 1:
                return by_name[covering[0]]

        # Fuzzy match
        best_match = None
        best_ratio = 0.0
        for name in names:
            ratio = difflib.SequenceMatcher(None, candidate, name).ratio()
            if ratio > best_ratio:
                best_ratio = ratio
                best_match = name

        if best_match and best_ratio >= self.fuzzy_threshold:
            return by_name[best_match]
        return None
