"""
Facet engine.

Facet dimensions and their values come from the context-filtered products only,
so picking a color never hides the other colors. The count next to a value is
the number of context products carrying that value that also satisfy every
*other* dimension the user has selected, i.e. how many products would be on
screen if that value were ticked.
"""
import math
import threading
import time
from functools import cmp_to_key
from typing import Any, Dict, Iterable, List, Optional

import config
from filtering import (
    PREDEFINED_COLORS,
    product_brand,
    product_colors,
    product_filter_values,
    product_id,
    selected_filters,
    user_predicates,
)
from schemas import FilterSelection


def _as_number(value: str) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare_values(a: str, b: str) -> int:
    na, nb = _as_number(a), _as_number(b)
    if na is not None and nb is not None:
        return (na > nb) - (na < nb)
    ka, kb = a.casefold(), b.casefold()
    if ka == kb:
        return (a > b) - (a < b)
    return (ka > kb) - (ka < kb)


def sort_values(values: Iterable[str]) -> List[str]:
    return sorted(values, key=cmp_to_key(_compare_values))


def _entries(counts: Dict[str, int], selected: Iterable[str]) -> List[Dict[str, Any]]:
    chosen = set(selected)
    return [{"value": v, "count": counts[v], "selected": v in chosen} for v in sort_values(counts)]


def compute_facets(context_products: Iterable[dict], selection: Optional[FilterSelection] = None) -> Dict[str, Any]:
    selection = selection or FilterSelection()
    preds = user_predicates(selection)

    colors: Dict[str, int] = {}
    brands: Dict[str, int] = {}
    filters: Dict[str, Dict[str, int]] = {}
    prices: List[float] = []
    seen = set()
    total = 0
    matching = 0

    for product in context_products:
        if not isinstance(product, dict):
            continue
        pid = product_id(product)
        if pid:
            if pid in seen:
                continue
            seen.add(pid)
        total += 1

        try:
            p_colors = product_colors(product)
            p_brand = product_brand(product)
            p_filters = product_filter_values(product)
        except (AttributeError, TypeError, ValueError):
            continue

        failing = {dim for dim, pred in preds.items() if not pred(product)}
        if not failing:
            matching += 1

        def counts_for(dim) -> bool:
            return not failing or failing == {dim}

        for color in p_colors:
            colors.setdefault(color, 0)
            if counts_for("colors"):
                colors[color] += 1
        if p_brand:
            brands.setdefault(p_brand, 0)
            if counts_for("brands"):
                brands[p_brand] += 1
        for key, values in p_filters.items():
            bucket = filters.setdefault(key, {})
            include = counts_for(("filters", key))
            for value in values:
                bucket.setdefault(value, 0)
                if include:
                    bucket[value] += 1

        price = product.get("price")
        if isinstance(price, (int, float)) and not isinstance(price, bool) and price >= 0:
            prices.append(float(price))

    chosen_filters = selected_filters(selection)
    return {
        "colors": _entries(colors, [c for c in selection.colors if c in PREDEFINED_COLORS]),
        "brands": _entries(brands, [b.strip() for b in selection.brands]),
        "filters": {
            key: _entries(filters[key], chosen_filters.get(key, ()))
            for key in sort_values(filters)
            if filters[key]
        },
        "priceRange": {
            "min": math.floor(min(prices)) if prices else 0,
            "max": math.ceil(max(prices)) if prices else 0,
        },
        "total": total,
        "matching": matching,
    }


class FacetCache:
    """Short-lived cache of context projections keyed by the serialized context."""

    def __init__(self, ttl: int = config.FACET_CACHE_TTL, max_entries: int = 256):
        self.ttl = min(ttl, 60)
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: Dict[str, Any] = {}

    def get(self, key: str):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if time.monotonic() - stored_at >= self.ttl:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value) -> None:
        with self._lock:
            stamp = time.monotonic()
            self._entries.pop(key, None)
            # insertion order is age order
            for old in list(self._entries):
                if stamp - self._entries[old][0] < self.ttl:
                    break
                del self._entries[old]
            while len(self._entries) >= self.max_entries:
                del self._entries[next(iter(self._entries))]
            self._entries[key] = (stamp, value)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


facet_cache = FacetCache()
