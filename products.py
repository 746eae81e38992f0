"""
Product store: reads, writes and facet projections over the "product" collection.

Context filters (category subtree, business type, search, featured, status)
run inside MongoDB; user facet filters, sorting and catalog paging run in the
filter engine on the context-filtered documents.
"""
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import filtering
from database import create_document, now, oid, serialize_doc
from errors import Conflict, NotFound, SlugConflict, ValidationError
from facets import facet_cache
from schemas import CatalogContext, FilterSelection, Product, ProductFilter, ProductInput, ProductPatch
from slugs import generate_unique_slug
from taxonomy import TreeCache, category_tree
from uploads import collect_image_urls, is_allowed_image_url

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = 200
SLUG_RACE_RETRIES = 3
REQUIRED_FIELDS = ("title", "hero_image", "heroImage")

PROJECTION_FIELDS = {
    "color_variants": 1,
    "brand_name": 1,
    "filters": 1,
    "price": 1,
    "status": 1,
}

LIST_FIELDS = ("additional_category_ids", "additional_brand_ids", "business_type_slugs", "tags",
               "gallery", "specifications", "color_variants", "related_product_ids")

REFERENCE_FIELDS = {"name": 1, "slug": 1, "level": 1}
RELATED_FIELDS = {"title": 1, "slug": 1, "hero_image": 1, "price": 1}


def clean_filters(raw: Any) -> List[Dict[str, Any]]:
    """Validate filters on write and return them in the ``[{key, values}]`` form."""
    if raw is None:
        return []
    if not isinstance(raw, (list, dict)):
        raise ValidationError("Filters must be a list of {key, values} or a map of key to values")
    cleaned = []
    seen_keys = set()
    for entry in filtering.normalize_filters(raw):
        key = entry["key"]
        normalized_key = filtering.normalize_value(key)
        if normalized_key in seen_keys:
            raise ValidationError(f"Filter key '{key}' appears more than once")
        seen_keys.add(normalized_key)
        values = []
        for value in entry["values"]:
            value = str(value).strip()
            if "," in value:
                raise ValidationError(f"Filter value '{value}' must not contain commas")
            if value not in values:
                values.append(value)
        if values:
            cleaned.append(ProductFilter(key=key, values=values).model_dump())
    return cleaned


def to_public(doc: dict) -> dict:
    out = serialize_doc(doc)
    out["filters"] = filtering.normalize_filters(doc.get("filters"))
    return out


def _refs(item: dict, single: Optional[str], many: str) -> List[str]:
    ids = [item.get(single)] if single else []
    values = item.get(many)
    if isinstance(values, list):
        ids.extend(values)
    return [str(i) for i in ids if i]


class ProductStore:
    def __init__(self, db: Database, purge: Optional[Callable[[List[str]], Any]] = None,
                 categories: TreeCache = category_tree):
        self.db = db
        self.collection = db["product"]
        self.purge = purge
        self.categories = categories

    # ---------- reads ----------

    def _lookup(self, collection_name: str, ids, fields: dict) -> Dict[str, dict]:
        object_ids = [o for o in (oid(i) for i in ids) if o is not None]
        if not object_ids:
            return {}
        cursor = self.db[collection_name].find({"_id": {"$in": object_ids}}, fields)
        return {str(d["_id"]): serialize_doc(d) for d in cursor}

    def populate(self, items: List[dict], related: bool = False) -> List[dict]:
        """
        Attach the referenced categories and brands (name, slug, level) to public
        product records, and with ``related`` the related products (title, slug,
        hero image, price). The id fields are left as they are; dangling ids are
        skipped.
        """
        category_ids, brand_ids, related_ids = set(), set(), set()
        for item in items:
            category_ids.update(_refs(item, "primary_category_id", "additional_category_ids"))
            brand_ids.update(_refs(item, "primary_brand_id", "additional_brand_ids"))
            if related:
                related_ids.update(_refs(item, None, "related_product_ids"))
        categories = self._lookup("category", category_ids, REFERENCE_FIELDS)
        brands = self._lookup("brand", brand_ids, REFERENCE_FIELDS)
        products = self._lookup("product", related_ids, RELATED_FIELDS)

        for item in items:
            item["primary_category"] = categories.get(str(item.get("primary_category_id")))
            item["additional_categories"] = [categories[i] for i in _refs(item, None, "additional_category_ids")
                                             if i in categories]
            item["primary_brand"] = brands.get(str(item.get("primary_brand_id")))
            item["additional_brands"] = [brands[i] for i in _refs(item, None, "additional_brand_ids") if i in brands]
            if related:
                item["related_products"] = [products[i] for i in _refs(item, None, "related_product_ids")
                                            if i in products]
        return items

    def context_query(self, context: CatalogContext) -> dict:
        query: Dict[str, Any] = {}
        conditions = []
        if context.category:
            ids = sorted(self.categories.descendants(self.db, context.category))
            conditions.append({"$or": [
                {"primary_category_id": {"$in": ids}},
                {"additional_category_ids": {"$in": ids}},
            ]})
        if context.business:
            query["business_type_slugs"] = context.business
        if context.featured:
            query["featured"] = True
        if context.status:
            query["status"] = context.status
        if context.search:
            pattern = re.escape(context.search.strip())
            conditions.append({"$or": [
                {"title": {"$regex": pattern, "$options": "i"}},
                {"brand_name": {"$regex": pattern, "$options": "i"}},
                {"tags": {"$regex": pattern, "$options": "i"}},
            ]})
        if conditions:
            query["$and"] = conditions
        return query

    def find(self, context: CatalogContext, limit: int = DEFAULT_LIMIT, skip: int = 0,
             selection: Optional[FilterSelection] = None) -> Tuple[List[dict], int]:
        """Context-filtered products; a selection with facet picks or a sort narrows and orders them in memory."""
        limit = max(1, min(int(limit), MAX_LIMIT))
        skip = max(0, int(skip))
        query = self.context_query(context)
        if selection is not None and (filtering.user_predicates(selection) or selection.sort != "newest"):
            docs = filtering.sort_products(filtering.user_filter(selection, self.collection.find(query)), selection.sort)
            return self.populate([to_public(d) for d in docs[skip:skip + limit]]), len(docs)
        cursor = self.collection.find(query).sort([("created_at", -1), ("_id", 1)]).skip(skip).limit(limit)
        items = self.populate([to_public(d) for d in cursor])
        return items, self.collection.count_documents(query)

    def list(self, selection: FilterSelection, page: Optional[int] = None,
             page_size: int = filtering.PAGE_SIZE) -> Dict[str, Any]:
        page = selection.page if page is None else page
        docs = list(self.collection.find(self.context_query(selection.context())))
        ordered = filtering.sort_products(filtering.user_filter(selection, docs), selection.sort)
        items, total = filtering.paginate(ordered, page, page_size)
        items = self.populate([to_public(d) for d in items])
        return {"items": items, "total": total, "page": page, "page_size": page_size}

    def projection(self, context: CatalogContext) -> List[dict]:
        key = context.cache_key()
        cached = facet_cache.get(key)
        if cached is not None:
            return cached
        records = list(self.collection.find(self.context_query(context), PROJECTION_FIELDS))
        facet_cache.set(key, records)
        return records

    def _find(self, product_id: str) -> dict:
        _id = oid(product_id)
        doc = self.collection.find_one({"_id": _id}) if _id is not None else None
        if not doc:
            raise NotFound("Product not found")
        return doc

    def get(self, id_or_slug: str) -> dict:
        doc = None
        _id = oid(id_or_slug)
        if _id is not None:
            doc = self.collection.find_one({"_id": _id})
        if not doc:
            doc = self.collection.find_one({"slug": id_or_slug})
        if not doc:
            raise NotFound("Product not found")
        return self.populate([to_public(doc)], related=True)[0]

    # ---------- writes ----------

    @staticmethod
    def _check_images(fields: dict) -> None:
        urls = []
        if fields.get("hero_image"):
            urls.append(fields["hero_image"])
        urls.extend(fields.get("gallery") or [])
        for variant in fields.get("color_variants") or []:
            urls.extend(variant.get("images") or [])
        rejected = [u for u in urls if not is_allowed_image_url(u)]
        if rejected:
            raise ValidationError("Image URLs must come from an allowed content host", rejected)

    def create(self, data: Union[ProductInput, dict]) -> dict:
        try:
            payload = data if isinstance(data, ProductInput) else ProductInput.model_validate(data)
        except PydanticValidationError as e:
            errors = e.errors(include_url=False)
            missing = any(err["loc"] and err["loc"][0] in REQUIRED_FIELDS for err in errors)
            raise ValidationError("Title and heroImage are required" if missing else "Validation error", errors)

        fields = payload.model_dump()
        fields["filters"] = clean_filters(fields["filters"])
        fields["price"] = fields["price"] or 0
        self._check_images(fields)

        for attempt in range(SLUG_RACE_RETRIES):
            slug = generate_unique_slug(self.collection, payload.title)
            try:
                new_id = create_document("product", Product(slug=slug, **fields), self.db)
                break
            except DuplicateKeyError:
                logger.warning("Slug %s taken concurrently, retrying (%d)", slug, attempt + 1)
        else:
            raise SlugConflict("Product with this slug already exists")

        facet_cache.clear()
        logger.info("Created product %s (%s)", slug, new_id)
        return self.get(new_id)

    def update(self, product_id: str, data: Union[ProductPatch, dict]) -> dict:
        try:
            payload = data if isinstance(data, ProductPatch) else ProductPatch.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError("Validation error", e.errors(include_url=False))
        current = self._find(product_id)

        dumped = payload.model_dump()
        changes = {k: dumped[k] for k in payload.model_fields_set}
        for key in list(changes):
            if changes[key] is not None:
                continue
            if key in LIST_FIELDS:
                changes[key] = []
            elif key == "price":
                changes[key] = 0
            elif key not in ("primary_category_id", "primary_brand_id", "filters"):
                del changes[key]
        if "filters" in changes:
            changes["filters"] = clean_filters(changes["filters"])
        if "title" in changes:
            changes["title"] = changes["title"].strip()
            if not changes["title"]:
                raise ValidationError("Title cannot be empty")
        if "hero_image" in changes:
            changes["hero_image"] = changes["hero_image"].strip()
            if not changes["hero_image"]:
                raise ValidationError("heroImage is required")
        self._check_images(changes)

        title_changed = "title" in changes and changes["title"] != (current.get("title") or "").strip()
        for attempt in range(SLUG_RACE_RETRIES):
            if title_changed:
                changes["slug"] = generate_unique_slug(self.collection, changes["title"], exclude_id=product_id)
            changes["updated_at"] = now()
            try:
                self.collection.update_one({"_id": current["_id"]}, {"$set": changes})
                break
            except DuplicateKeyError:
                if not title_changed:
                    raise Conflict("Product with this slug already exists")
                logger.warning("Slug %s taken concurrently, retrying (%d)", changes["slug"], attempt + 1)
        else:
            raise SlugConflict("Product with this slug already exists. Please try again.")

        facet_cache.clear()
        return self.get(product_id)

    def delete(self, product_id: str) -> None:
        current = self._find(product_id)
        urls = collect_image_urls(current)
        self.collection.delete_one({"_id": current["_id"]})
        facet_cache.clear()
        logger.info("Deleted product %s", current.get("slug"))
        if urls and self.purge is not None:
            try:
                self.purge(urls)
            except Exception:
                logger.exception("Could not schedule image purge for product %s", product_id)

    def stats(self) -> Dict[str, Any]:
        distribution = {}
        for status in ("In Stock", "Out of Stock", "Pre-Order"):
            distribution[status] = self.collection.count_documents({"status": status})
        recent = self.collection.find({}, {"title": 1, "hero_image": 1, "created_at": 1, "status": 1, "slug": 1})
        recent = recent.sort([("created_at", -1), ("_id", 1)]).limit(5)
        return {
            "totalProducts": self.collection.count_documents({}),
            "totalCategories": self.db["category"].count_documents({}),
            "totalBrands": self.db["brand"].count_documents({}),
            "featuredProducts": self.collection.count_documents({"featured": True}),
            "inStockProducts": distribution["In Stock"],
            "outOfStockProducts": distribution["Out of Stock"],
            "preOrderProducts": distribution["Pre-Order"],
            "statusDistribution": distribution,
            "recentProducts": [serialize_doc(d) for d in recent],
        }
