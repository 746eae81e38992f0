"""
Catalog URL state.

The filter selection and the catalog query string are two views of the same
state. ``parse_query`` and ``to_query`` convert between them; ``to_query``
produces a canonical string (fixed key order, sorted list values, defaults
omitted) so that equal
selections always give byte-identical URLs.

``CatalogUrlState`` drives that state the way the storefront does: checkbox
toggles push a history entry at once, typed inputs (price, search) are
debounced, and every change of a selection dimension sends the user back to
page 1.
"""
import asyncio
import json
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, quote, unquote, urlencode

from errors import ValidationError
from schemas import SORT_KEYS, FilterSelection

DEBOUNCE_SECONDS = 0.5
CATALOG_PATH = "/catalog"


def _quote_keep_commas(value, safe="", encoding=None, errors=None):
    # urlencode passes its own safe set; list separators stay readable
    return quote(value, safe=",", encoding=encoding, errors=errors)


def _split_list(raw: Optional[str]) -> List[str]:
    out: List[str] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if part and part not in out:
            out.append(part)
    return out


def _parse_filters(raw: Optional[str]) -> Dict[str, List[str]]:
    if not raw:
        return {}
    parsed = None
    for candidate in (raw, unquote(raw)):
        try:
            parsed = json.loads(candidate)
            break
        except ValueError:
            continue
    if not isinstance(parsed, dict):
        return {}
    out: Dict[str, List[str]] = {}
    for key, values in parsed.items():
        if not isinstance(values, list):
            continue
        cleaned = []
        for v in values:
            if isinstance(v, str) and v.strip() and v not in cleaned:
                cleaned.append(v)
        if cleaned:
            out[str(key)] = cleaned
    return out


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def split_url(url: str) -> Tuple[str, str]:
    path, _, query = url.partition("?")
    return path or CATALOG_PATH, query


def parse_query(query: Union[str, Mapping[str, str]], strict: bool = False) -> FilterSelection:
    """Read a selection from a query string (``?`` optional) or a mapping of params."""
    if isinstance(query, str):
        if "?" in query:
            query = query.split("?", 1)[1]
        params = dict(parse_qsl(query.lstrip("?")))
    else:
        params = {k: v for k, v in query.items() if v is not None}

    sort = params.get("sort") or "newest"
    if sort not in SORT_KEYS:
        if strict:
            raise ValidationError(f"Unknown sort key '{sort}'", {"allowed": list(SORT_KEYS)})
        sort = "newest"

    try:
        page = int(params.get("page") or 1)
    except ValueError:
        page = 1

    return FilterSelection(
        category=_blank_to_none(params.get("category")),
        business=_blank_to_none(params.get("business")),
        search=_blank_to_none(params.get("search")),
        price_min=_blank_to_none(params.get("priceMin")),
        price_max=_blank_to_none(params.get("priceMax")),
        colors=_split_list(params.get("colors")),
        brands=_split_list(params.get("brands")),
        filters=_parse_filters(params.get("filters")),
        sort=sort,
        page=max(page, 1),
    )


def to_query(selection: FilterSelection) -> str:
    pairs = []
    if selection.category:
        pairs.append(("category", selection.category))
    if selection.business:
        pairs.append(("business", selection.business))
    if selection.search:
        pairs.append(("search", selection.search))
    if selection.sort != "newest":
        pairs.append(("sort", selection.sort))
    if selection.price_min:
        pairs.append(("priceMin", selection.price_min))
    if selection.price_max:
        pairs.append(("priceMax", selection.price_max))
    if selection.colors:
        pairs.append(("colors", ",".join(sorted(selection.colors))))
    if selection.brands:
        pairs.append(("brands", ",".join(sorted(selection.brands))))
    filters = {k: sorted(v) for k, v in selection.filters.items() if v}
    if filters:
        pairs.append(("filters", json.dumps(filters, separators=(",", ":"), ensure_ascii=False, sort_keys=True)))
    if selection.page > 1:
        pairs.append(("page", str(selection.page)))
    return urlencode(pairs, quote_via=_quote_keep_commas)


def build_url(selection: FilterSelection, path: str = CATALOG_PATH) -> str:
    query = to_query(selection)
    return f"{path}?{query}" if query else path


# ---------- transitions (each resets paging) ----------

def _toggled(values: List[str], value: str) -> List[str]:
    if value in values:
        return [v for v in values if v != value]
    return values + [value]


def _changed(selection: FilterSelection, **update) -> FilterSelection:
    update["page"] = 1
    return selection.model_copy(update=update)


def toggle_color(selection: FilterSelection, color: str) -> FilterSelection:
    return _changed(selection, colors=_toggled(list(selection.colors), color))


def toggle_brand(selection: FilterSelection, brand: str) -> FilterSelection:
    return _changed(selection, brands=_toggled(list(selection.brands), brand))


def toggle_filter(selection: FilterSelection, key: str, value: str) -> FilterSelection:
    if "," in value:
        raise ValidationError("Filter values must not contain commas")
    filters = {k: list(v) for k, v in selection.filters.items()}
    updated = _toggled(filters.get(key, []), value)
    if updated:
        filters[key] = updated
    else:
        filters.pop(key, None)
    return _changed(selection, filters=filters)


def set_sort(selection: FilterSelection, sort: str) -> FilterSelection:
    if sort not in SORT_KEYS:
        raise ValidationError(f"Unknown sort key '{sort}'", {"allowed": list(SORT_KEYS)})
    return _changed(selection, sort=sort)


def set_price(selection: FilterSelection, price_min: Optional[str], price_max: Optional[str]) -> FilterSelection:
    return _changed(selection, price_min=_blank_to_none(price_min), price_max=_blank_to_none(price_max))


def set_search(selection: FilterSelection, search: Optional[str]) -> FilterSelection:
    return _changed(selection, search=_blank_to_none(search))


def set_category(selection: FilterSelection, category: Optional[str]) -> FilterSelection:
    return _changed(selection, category=_blank_to_none(category))


def set_business(selection: FilterSelection, business: Optional[str]) -> FilterSelection:
    return _changed(selection, business=_blank_to_none(business))


def clear_filters(selection: FilterSelection) -> FilterSelection:
    return _changed(selection, price_min=None, price_max=None, colors=[], brands=[], filters={})


def with_page(selection: FilterSelection, page: int) -> FilterSelection:
    return selection.model_copy(update={"page": max(int(page), 1)})


def has_active_filters(selection: FilterSelection) -> bool:
    return bool(selection.price_min or selection.price_max or selection.colors
                or selection.brands or selection.filters)


# ---------- client-side machinery ----------

class Debouncer:
    """Call ``callback`` with the latest value once ``delay`` seconds pass without a new one."""

    def __init__(self, callback: Callable, delay: float = DEBOUNCE_SECONDS):
        self.callback = callback
        self.delay = delay
        self._task: Optional[asyncio.Task] = None
        self._value = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def __call__(self, value) -> None:
        self.cancel()
        self._value = value
        self._task = asyncio.get_running_loop().create_task(self._fire())

    async def _fire(self) -> None:
        await asyncio.sleep(self.delay)
        self._task = None
        self.callback(self._value)

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def flush(self) -> None:
        if self.pending:
            self.cancel()
            self.callback(self._value)


class FilterOverlay:
    """Filter drawer on narrow screens."""

    CLOSED = "closed"
    OPEN = "open"

    def __init__(self):
        self.state = self.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == self.OPEN

    def tap_filter(self) -> None:
        self.state = self.OPEN

    def tap_overlay(self) -> None:
        self.state = self.CLOSED

    def tap_close(self) -> None:
        self.state = self.CLOSED

    def on_navigate(self, before: FilterSelection, after: FilterSelection) -> None:
        if (before.category, before.business, before.search) != (after.category, after.business, after.search):
            self.state = self.CLOSED


class CatalogUrlState:
    """
    Selection bound to a browser-like history.

    Each committed change pushes one entry (scroll position is left alone);
    ``back`` and ``forward`` re-read the selection from the stored URL.
    """

    def __init__(self, url: str = CATALOG_PATH, debounce_delay: float = DEBOUNCE_SECONDS):
        self.path, query = split_url(url)
        self.selection = parse_query(query)
        self.history: List[str] = [self.url]
        self.index = 0
        self.overlay = FilterOverlay()
        self.price_input = (self.selection.price_min or "", self.selection.price_max or "")
        self.search_input = self.selection.search or ""
        self._price = Debouncer(self._commit_price, debounce_delay)
        self._search = Debouncer(self._commit_search, debounce_delay)

    @property
    def url(self) -> str:
        return build_url(self.selection, self.path)

    def _push(self, selection: FilterSelection) -> None:
        before = self.selection
        self.selection = selection
        url = self.url
        if url == self.history[self.index]:
            return
        del self.history[self.index + 1:]
        self.history.append(url)
        self.index += 1
        self.overlay.on_navigate(before, selection)

    def _restore(self) -> FilterSelection:
        before = self.selection
        self.path, query = split_url(self.history[self.index])
        self.selection = parse_query(query)
        self.price_input = (self.selection.price_min or "", self.selection.price_max or "")
        self.search_input = self.selection.search or ""
        self.overlay.on_navigate(before, self.selection)
        return self.selection

    def open(self, url: str) -> None:
        path, query = split_url(url)
        self.path = path
        self._push(parse_query(query))

    def toggle_color(self, color: str) -> None:
        self._push(toggle_color(self.selection, color))

    def toggle_brand(self, brand: str) -> None:
        self._push(toggle_brand(self.selection, brand))

    def toggle_filter(self, key: str, value: str) -> None:
        self._push(toggle_filter(self.selection, key, value))

    def set_sort(self, sort: str) -> None:
        self._push(set_sort(self.selection, sort))

    def set_category(self, category: Optional[str]) -> None:
        self._push(set_category(self.selection, category))

    def set_business(self, business: Optional[str]) -> None:
        self._push(set_business(self.selection, business))

    def go_to_page(self, page: int) -> None:
        self._push(with_page(self.selection, page))

    def clear_filters(self) -> None:
        self._price.cancel()
        self.price_input = ("", "")
        self._push(clear_filters(self.selection))

    def type_price_min(self, value: str) -> None:
        self.price_input = (value, self.price_input[1])
        self._price(self.price_input)

    def type_price_max(self, value: str) -> None:
        self.price_input = (self.price_input[0], value)
        self._price(self.price_input)

    def type_search(self, value: str) -> None:
        self.search_input = value
        self._search(value)

    def _commit_price(self, bounds: Tuple[str, str]) -> None:
        self._push(set_price(self.selection, *bounds))

    def _commit_search(self, text: str) -> None:
        self._push(set_search(self.selection, text))

    def flush(self) -> None:
        self._price.flush()
        self._search.flush()

    def back(self) -> FilterSelection:
        if self.index > 0:
            self.index -= 1
        return self._restore()

    def forward(self) -> FilterSelection:
        if self.index < len(self.history) - 1:
            self.index += 1
        return self._restore()
