"""
Catalog filter engine.

Pure functions over product documents. Context predicates (category, business
type, search) narrow the catalog to where the user is; user predicates (price,
colors, brands, named filters) narrow it further. Nothing here raises on
malformed products: a product whose fields cannot be read simply does not
match.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from schemas import CatalogContext, FilterSelection

PREDEFINED_COLORS = (
    "Blue", "Green", "Red", "Yellow", "Purple", "Orange",
    "Pink", "Brown", "Gray", "Black", "White", "Silver",
)

PAGE_SIZE = 24

LEGACY_FILTER_KEYS = ("material", "size", "color", "usage")

Predicate = Callable[[dict], bool]


def normalize_value(value: Any) -> str:
    """'porcelain', 'Porcelain' and ' PORCELAIN ' all become 'Porcelain'."""
    text = str(value).strip()
    return text[:1].upper() + text[1:].lower()


def normalize_filters(raw: Any) -> List[Dict[str, Any]]:
    """Return filters in the ``[{key, values}]`` form whatever shape they were stored in."""
    if not raw:
        return []
    if isinstance(raw, dict):
        out = []
        lowered = {str(k).lower(): v for k, v in raw.items()}
        for key in LEGACY_FILTER_KEYS:
            values = lowered.get(key)
            if isinstance(values, list) and values:
                out.append({"key": key.title(), "values": list(values)})
        for key, values in raw.items():
            if str(key).lower() in LEGACY_FILTER_KEYS:
                continue
            if isinstance(values, list) and values:
                key = str(key)
                out.append({"key": key[:1].upper() + key[1:], "values": list(values)})
        return out
    if isinstance(raw, list):
        out = []
        for entry in raw:
            if not isinstance(entry, dict) or not entry.get("key") or not isinstance(entry.get("values"), list):
                continue
            values = [str(v).strip() for v in entry["values"] if v is not None and str(v).strip()]
            out.append({"key": str(entry["key"]).strip(), "values": values})
        return out
    return []


# ---------- product accessors ----------

def product_id(product: dict) -> str:
    return str(product.get("_id") or product.get("id") or "")


def product_price(product: dict) -> float:
    try:
        return float(product.get("price") or 0)
    except (TypeError, ValueError):
        return 0.0


def product_colors(product: dict) -> Set[str]:
    colors = set()
    for variant in product.get("color_variants") or []:
        name = (variant.get("color_name") or "").strip() if isinstance(variant, dict) else ""
        if name in PREDEFINED_COLORS:
            colors.add(name)
    return colors


def product_brand(product: dict) -> str:
    return (product.get("brand_name") or "").strip()


def product_filter_values(product: dict) -> Dict[str, Set[str]]:
    values: Dict[str, Set[str]] = {}
    for entry in normalize_filters(product.get("filters")):
        bucket = values.setdefault(normalize_value(entry["key"]), set())
        bucket.update(normalize_value(v) for v in entry["values"] if str(v).strip())
    return values


def created_timestamp(product: dict) -> float:
    value = product.get("created_at") or product.get("createdAt")
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return 0.0
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    return 0.0


def parse_price_bound(value: Optional[Union[str, float]]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _safe(predicate: Predicate) -> Predicate:
    def run(product: dict) -> bool:
        try:
            return bool(predicate(product))
        except (AttributeError, KeyError, TypeError, ValueError):
            return False
    return run


# ---------- predicates ----------

def matches_search(product: dict, search: str) -> bool:
    needle = search.lower()
    if needle in (product.get("title") or "").lower():
        return True
    if needle in (product.get("brand_name") or "").lower():
        return True
    return any(needle in str(tag).lower() for tag in product.get("tags") or [])


def matches_category(product: dict, category_ids: Set[str]) -> bool:
    ids = {str(product.get("primary_category_id") or "")}
    ids.update(str(i) for i in product.get("additional_category_ids") or [])
    return bool(ids & category_ids)


def matches_business(product: dict, business: str) -> bool:
    return business in (product.get("business_type_slugs") or [])


def matches_price(product: dict, low: Optional[float], high: Optional[float]) -> bool:
    price = float(product.get("price") or 0)
    if low is not None and price < low:
        return False
    if high is not None and price > high:
        return False
    return True


def selected_filters(selection: FilterSelection) -> Dict[str, Set[str]]:
    merged: Dict[str, Set[str]] = {}
    for key, values in (selection.filters or {}).items():
        wanted = {normalize_value(v) for v in values or [] if str(v).strip()}
        if wanted:
            merged.setdefault(normalize_value(key), set()).update(wanted)
    return merged


def context_predicates(context: CatalogContext, category_ids: Optional[Set[str]] = None) -> List[Predicate]:
    preds: List[Predicate] = []
    if context.search:
        search = context.search
        preds.append(lambda p: matches_search(p, search))
    if context.category:
        ids = set(category_ids or ())
        preds.append(lambda p: matches_category(p, ids))
    if context.business:
        business = context.business
        preds.append(lambda p: matches_business(p, business))
    if context.featured:
        preds.append(lambda p: p.get("featured") is True)
    if context.status:
        status = context.status
        preds.append(lambda p: p.get("status") == status)
    return [_safe(p) for p in preds]


def user_predicates(selection: FilterSelection) -> Dict[Any, Predicate]:
    """User facet predicates keyed by dimension: 'price', 'colors', 'brands' or ('filters', key)."""
    preds: Dict[Any, Predicate] = {}
    low = parse_price_bound(selection.price_min)
    high = parse_price_bound(selection.price_max)
    if low is not None or high is not None:
        preds["price"] = lambda p: matches_price(p, low, high)
    if selection.colors:
        colors = set(selection.colors)
        preds["colors"] = lambda p: bool(product_colors(p) & colors)
    if selection.brands:
        brands = {b.strip() for b in selection.brands}
        preds["brands"] = lambda p: product_brand(p) in brands
    for key, wanted in selected_filters(selection).items():
        preds[("filters", key)] = (lambda k, w: lambda p: bool(product_filter_values(p).get(k, set()) & w))(key, wanted)
    return {dim: _safe(p) for dim, p in preds.items()}


def _all(preds: Iterable[Predicate], product: dict) -> bool:
    return all(p(product) for p in preds)


def context_filter(context: CatalogContext, products: Iterable[dict],
                   category_ids: Optional[Set[str]] = None) -> List[dict]:
    preds = context_predicates(context, category_ids)
    return [p for p in products if isinstance(p, dict) and _all(preds, p)]


def user_filter(selection: FilterSelection, products: Iterable[dict]) -> List[dict]:
    preds = list(user_predicates(selection).values())
    return [p for p in products if isinstance(p, dict) and _all(preds, p)]


# ---------- ordering and paging ----------

def sort_products(products: Iterable[dict], sort: str = "newest") -> List[dict]:
    """Total order: the sort key, then newest first, then id ascending."""
    def tie(p):
        return (-created_timestamp(p), product_id(p))

    if sort == "price-asc":
        key = lambda p: (product_price(p),) + tie(p)
    elif sort == "price-desc":
        key = lambda p: (-product_price(p),) + tie(p)
    else:
        key = tie
    return sorted(products, key=key)


def paginate(items: List[dict], page: int, page_size: int = PAGE_SIZE) -> Tuple[List[dict], int]:
    total = len(items)
    if page < 1:
        return [], total
    start = (page - 1) * page_size
    return items[start:start + page_size], total


def apply(selection: FilterSelection, products: Iterable[dict],
          category_ids: Optional[Set[str]] = None) -> List[dict]:
    """Context filter, user filter and sort; the result is not paginated."""
    narrowed = context_filter(selection.context(), products, category_ids)
    return sort_products(user_filter(selection, narrowed), selection.sort)
