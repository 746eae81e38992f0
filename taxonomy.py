"""
Hierarchical taxonomies (categories and brands).

``TreeCache`` keeps the whole forest of one collection in memory for a bounded
time and answers subtree questions from it. ``TaxonomyStore`` is the admin CRUD
on top; every write flushes the tree cache of its namespace.
"""
import logging
import threading
import time
from typing import Dict, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
import facets
from database import create_document, now, oid, serialize_doc
from errors import Conflict, NotFound, ValidationError
from schemas import LEVELS, TaxonomyInput, TaxonomyPatch
from slugs import slug_of

logger = logging.getLogger(__name__)

MAX_DEPTH = 8

NODE_FIELDS = {"name": 1, "slug": 1, "level": 1, "parent": 1, "image": 1, "tagline": 1}


class TreeCache:
    def __init__(self, collection_name: str, ttl: int = config.CATEGORY_CACHE_TTL):
        self.collection_name = collection_name
        self.ttl = ttl
        self._lock = threading.Lock()
        self._nodes: Optional[Dict[str, dict]] = None
        self._children: Dict[Optional[str], List[str]] = {}
        self._by_slug: Dict[str, str] = {}
        self._loaded_at = 0.0

    def invalidate(self) -> None:
        with self._lock:
            self._nodes = None
            self._children = {}
            self._by_slug = {}
            self._loaded_at = 0.0
        logger.debug("%s tree cache invalidated", self.collection_name)

    def _load(self, db: Database):
        with self._lock:
            if self._nodes is not None and time.monotonic() - self._loaded_at < self.ttl:
                return self._nodes, self._children, self._by_slug

            nodes: Dict[str, dict] = {}
            children: Dict[Optional[str], List[str]] = {}
            by_slug: Dict[str, str] = {}
            for doc in db[self.collection_name].find({}, NODE_FIELDS):
                node_id = str(doc["_id"])
                nodes[node_id] = doc
                by_slug[doc.get("slug")] = node_id
            for node_id, doc in nodes.items():
                parent = doc.get("parent")
                parent = str(parent) if parent and str(parent) in nodes else None
                children.setdefault(parent, []).append(node_id)
            for ids in children.values():
                ids.sort(key=lambda i: (nodes[i].get("name") or "").lower())

            self._nodes, self._children, self._by_slug = nodes, children, by_slug
            self._loaded_at = time.monotonic()
            logger.debug("%s tree cache loaded with %d nodes", self.collection_name, len(nodes))
            return nodes, children, by_slug

    def descendants(self, db: Database, slug: str) -> Set[str]:
        """Ids of the node named by ``slug`` and all nodes below it; empty when unknown."""
        if not slug:
            return set()
        try:
            _, children, by_slug = self._load(db)
        except PyMongoError as e:
            logger.warning("Could not load %s tree: %s", self.collection_name, e)
            return set()

        root = by_slug.get(slug)
        if root is None:
            return set()
        found: Set[str] = set()
        stack = [root]
        while stack:
            node_id = stack.pop()
            if node_id in found:
                continue
            found.add(node_id)
            stack.extend(children.get(node_id, []))
        return found

    def tree(self, db: Database) -> List[dict]:
        nodes, children, _ = self._load(db)

        def build(node_id: str, seen: Set[str]) -> dict:
            node = serialize_doc(nodes[node_id])
            kids = [build(c, seen | {node_id}) for c in children.get(node_id, []) if c not in seen]
            if kids:
                node["children"] = kids
            return node

        return [build(root, set()) for root in children.get(None, [])]


category_tree = TreeCache("category")
brand_tree = TreeCache("brand")

TREES = {"category": category_tree, "brand": brand_tree}

# Product fields that point into each namespace
PRODUCT_REFERENCES = {
    "category": ("primary_category_id", "additional_category_ids"),
    "brand": ("primary_brand_id", "additional_brand_ids"),
}


class TaxonomyStore:
    def __init__(self, db: Database, kind: str):
        if kind not in TREES:
            raise ValueError(f"Unknown taxonomy '{kind}'")
        self.db = db
        self.kind = kind
        self.collection = db[kind]
        self.cache = TREES[kind]

    @property
    def label(self) -> str:
        return self.kind.capitalize()

    def _find(self, node_id: str) -> dict:
        _id = oid(node_id)
        doc = self.collection.find_one({"_id": _id}) if _id is not None else None
        if not doc:
            raise NotFound(f"{self.label} not found")
        return doc

    def _flush(self) -> None:
        self.cache.invalidate()
        facets.facet_cache.clear()

    def list(self, level: Optional[str] = None, parent: Optional[str] = None) -> List[dict]:
        query = {}
        if level:
            query["level"] = level
        if parent is not None:
            query["parent"] = None if parent in ("", "null") else parent
        return [serialize_doc(d) for d in self.collection.find(query).sort("name", 1)]

    def tree(self) -> List[dict]:
        return self.cache.tree(self.db)

    def get(self, node_id: str) -> dict:
        return serialize_doc(self._find(node_id))

    def ancestry(self, node_id: str) -> Dict[str, str]:
        ancestry = {}
        current = self._find(node_id)
        for _ in range(MAX_DEPTH):
            ancestry[current["level"]] = str(current["_id"])
            parent_id = oid(current.get("parent")) if current.get("parent") else None
            current = self.collection.find_one({"_id": parent_id}) if parent_id else None
            if not current:
                break
        return ancestry

    def _check_placement(self, node_id: Optional[str], parent_id: Optional[str], level: str) -> None:
        if parent_id is None:
            return
        if node_id and parent_id == node_id:
            raise ValidationError(f"A {self.kind} cannot be its own parent")
        parent_oid = oid(parent_id)
        parent = self.collection.find_one({"_id": parent_oid}) if parent_oid else None
        if not parent:
            raise ValidationError(f"Parent {self.kind} not found")
        if LEVELS.index(level) != LEVELS.index(parent["level"]) + 1:
            raise ValidationError(
                f"A {level} cannot be placed under a {parent['level']}",
                {"expected_level": LEVELS[LEVELS.index(parent["level"]) + 1]
                 if parent["level"] != LEVELS[-1] else None},
            )
        depth = 1
        current = parent
        while current.get("parent"):
            if node_id and str(current["parent"]) == node_id:
                raise ValidationError(f"Moving this {self.kind} there would create a cycle")
            depth += 1
            if depth > MAX_DEPTH:
                raise ValidationError(f"{self.label} tree is deeper than {MAX_DEPTH} levels")
            next_oid = oid(current["parent"])
            current = self.collection.find_one({"_id": next_oid}) if next_oid else None
            if not current:
                break

    def create(self, data: Union[TaxonomyInput, dict]) -> dict:
        try:
            payload = data if isinstance(data, TaxonomyInput) else TaxonomyInput.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError("Name and level are required", e.errors(include_url=False))
        slug = slug_of(payload.slug or payload.name)
        if not slug:
            raise ValidationError("Name must contain letters or digits")
        parent = payload.parent or None
        self._check_placement(None, parent, payload.level)

        doc = {
            "name": payload.name.strip(),
            "slug": slug,
            "level": payload.level,
            "parent": parent,
            "image": payload.image,
            "tagline": payload.tagline.strip(),
        }
        try:
            new_id = create_document(self.kind, doc, self.db)
        except DuplicateKeyError:
            raise Conflict(f"{self.label} with this slug already exists")
        self._flush()
        logger.info("Created %s %s (%s)", self.kind, slug, new_id)
        return self.get(new_id)

    def update(self, node_id: str, data: Union[TaxonomyPatch, dict]) -> dict:
        try:
            patch = data if isinstance(data, TaxonomyPatch) else TaxonomyPatch.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError("Validation error", e.errors(include_url=False))
        current = self._find(node_id)
        changes = patch.model_dump(exclude_unset=True)

        if changes.get("slug"):
            changes["slug"] = slug_of(changes["slug"])
        elif changes.get("name"):
            changes["slug"] = slug_of(changes["name"])
        else:
            changes.pop("slug", None)
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValidationError("Name cannot be empty")
        if "slug" in changes and not changes["slug"]:
            raise ValidationError("Slug must contain letters or digits")

        level = changes.get("level") or current["level"]
        parent = changes.get("parent", current.get("parent")) or None
        if "parent" in changes:
            changes["parent"] = parent
        if "level" in changes or "parent" in changes:
            self._check_placement(node_id, parent, level)
            if "level" in changes:
                child_levels = {c["level"] for c in self.collection.find({"parent": node_id}, {"level": 1})}
                expected = LEVELS[LEVELS.index(level) + 1] if level != LEVELS[-1] else None
                if child_levels and child_levels != {expected}:
                    raise ValidationError(f"Children of this {self.kind} would no longer be one level below it")

        changes["updated_at"] = now()
        try:
            self.collection.update_one({"_id": current["_id"]}, {"$set": changes})
        except DuplicateKeyError:
            raise Conflict(f"{self.label} with this slug already exists")
        self._flush()
        return self.get(node_id)

    def delete(self, node_id: str) -> None:
        current = self._find(node_id)
        if self.collection.count_documents({"parent": node_id}) > 0:
            raise Conflict(
                f"Cannot delete {self.kind} with children. Please delete or reassign its children first."
            )
        primary, additional = PRODUCT_REFERENCES[self.kind]
        referencing = self.db["product"].count_documents(
            {"$or": [{primary: node_id}, {additional: node_id}]}
        )
        if referencing > 0:
            raise Conflict(
                f"Cannot delete {self.kind}. {referencing} product(s) are using this {self.kind}.",
                {"products": referencing},
            )
        self.collection.delete_one({"_id": current["_id"]})
        self._flush()
        logger.info("Deleted %s %s", self.kind, current.get("slug"))
