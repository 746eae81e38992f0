"""
Database Schemas for the Hospitality Supply Catalog

Each stored Pydantic model represents a MongoDB collection. The collection name
is the lowercase of the class name (e.g., EnquiryItem -> "enquiryitem").

Input models accept both snake_case and camelCase keys (``heroImage``,
``cartItems``...) so the storefront can post its own field names.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

# ---------- Vocabularies ----------

Level = Literal["department", "category", "subcategory", "type"]
LEVELS = ("department", "category", "subcategory", "type")

ProductStatus = Literal["In Stock", "Out of Stock", "Pre-Order"]
SortKey = Literal["newest", "price-asc", "price-desc"]
SORT_KEYS = ("newest", "price-asc", "price-desc")

EnquirySource = Literal[
    "website-form", "product-card", "product-detail", "cart",
    "whom-we-serve", "whatsapp", "phone", "email", "manual",
]
UserType = Literal["business", "customer", "unknown"]
EnquiryStatus = Literal["new", "in-progress", "awaiting-customer", "closed", "spam"]
Priority = Literal["low", "normal", "high"]
Sender = Literal["customer", "admin"]
Channel = Literal["whatsapp", "phone", "email", "internal-note"]

HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _clean_ids(values: Optional[List[Any]]) -> List[str]:
    return [str(v).strip() for v in (values or []) if v is not None and str(v).strip()]


# ---------- Taxonomy (categories and brands) ----------

class Category(BaseModel):
    """
    Categories collection schema
    Collection: "category"
    """
    name: str = Field(..., description="Display name")
    slug: str = Field(..., description="URL-friendly unique slug")
    level: Level = Field(..., description="Depth in the department tree")
    parent: Optional[str] = Field(None, description="Parent category id")
    image: str = Field("", description="Category image URL")
    tagline: str = Field("", description="Short marketing line")


class Brand(Category):
    """
    Brands collection schema
    Collection: "brand"
    """


class TaxonomyInput(ApiModel):
    name: str = Field(..., min_length=1)
    level: Level
    slug: Optional[str] = None
    parent: Optional[str] = None
    image: str = ""
    tagline: str = ""


class TaxonomyPatch(ApiModel):
    name: Optional[str] = None
    level: Optional[Level] = None
    slug: Optional[str] = None
    parent: Optional[str] = None
    image: Optional[str] = None
    tagline: Optional[str] = None


# ---------- Products ----------

class ProductSpecification(ApiModel):
    label: str
    value: str
    unit: str = ""


class ColorVariant(ApiModel):
    color_name: str
    color_hex: str
    images: List[str] = Field(default_factory=list)

    @field_validator("color_name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        return v.strip()

    @field_validator("color_hex")
    @classmethod
    def _check_hex(cls, v: str) -> str:
        if not HEX_COLOR.match(v or ""):
            raise ValueError(f"Invalid color hex '{v}', expected #RRGGBB")
        return v


class ProductFilter(ApiModel):
    key: str
    values: List[str] = Field(default_factory=list)


class ProductInput(ApiModel):
    title: str = Field(..., min_length=1)
    hero_image: str = Field(..., min_length=1)
    summary: str = ""
    description: str = ""
    primary_category_id: Optional[str] = None
    additional_category_ids: List[str] = Field(default_factory=list)
    primary_brand_id: Optional[str] = None
    additional_brand_ids: List[str] = Field(default_factory=list)
    business_type_slugs: List[str] = Field(default_factory=list)
    brand_name: str = ""
    price: Optional[float] = Field(0, ge=0)
    tags: List[str] = Field(default_factory=list)
    gallery: List[str] = Field(default_factory=list)
    specifications: List[ProductSpecification] = Field(default_factory=list)
    color_variants: List[ColorVariant] = Field(default_factory=list)
    # Either [{key, values}] or the legacy {material: [...], ...} map
    filters: Any = None
    related_product_ids: List[str] = Field(default_factory=list)
    featured: bool = False
    status: ProductStatus = "In Stock"
    is_premium: bool = False

    @field_validator("title", "hero_image", "brand_name", "summary", "description")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()

    @field_validator("price", mode="before")
    @classmethod
    def _blank_price(cls, v):
        if v is None or v == "":
            return 0
        return v

    @field_validator("tags")
    @classmethod
    def _lower_tags(cls, v: List[str]) -> List[str]:
        return [t.strip().lower() for t in v if t and t.strip()]

    @field_validator("additional_category_ids", "additional_brand_ids", "related_product_ids", "business_type_slugs")
    @classmethod
    def _drop_blank(cls, v: List[str]) -> List[str]:
        return _clean_ids(v)

    @field_validator("primary_category_id", "primary_brand_id")
    @classmethod
    def _blank_ref(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not str(v).strip():
            return None
        return str(v).strip()


class ProductPatch(ApiModel):
    """Partial product update. A ``slug`` in the payload is ignored."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    title: Optional[str] = None
    hero_image: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    primary_category_id: Optional[str] = None
    additional_category_ids: Optional[List[str]] = None
    primary_brand_id: Optional[str] = None
    additional_brand_ids: Optional[List[str]] = None
    business_type_slugs: Optional[List[str]] = None
    brand_name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    tags: Optional[List[str]] = None
    gallery: Optional[List[str]] = None
    specifications: Optional[List[ProductSpecification]] = None
    color_variants: Optional[List[ColorVariant]] = None
    filters: Any = None
    related_product_ids: Optional[List[str]] = None
    featured: Optional[bool] = None
    status: Optional[ProductStatus] = None
    is_premium: Optional[bool] = None

    @field_validator("tags")
    @classmethod
    def _lower_tags(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        return [t.strip().lower() for t in v if t and t.strip()]

    @field_validator("additional_category_ids", "additional_brand_ids", "related_product_ids", "business_type_slugs")
    @classmethod
    def _drop_blank(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        return _clean_ids(v)


class Product(BaseModel):
    """
    Products collection schema
    Collection: "product"
    """
    title: str
    slug: str
    summary: str = ""
    description: str = ""
    primary_category_id: Optional[str] = None
    additional_category_ids: List[str] = Field(default_factory=list)
    primary_brand_id: Optional[str] = None
    additional_brand_ids: List[str] = Field(default_factory=list)
    business_type_slugs: List[str] = Field(default_factory=list)
    brand_name: str = ""
    price: float = Field(0, ge=0, description="0 means price on request")
    tags: List[str] = Field(default_factory=list)
    hero_image: str
    gallery: List[str] = Field(default_factory=list)
    specifications: List[Dict[str, str]] = Field(default_factory=list)
    color_variants: List[Dict[str, Any]] = Field(default_factory=list)
    filters: List[Dict[str, Any]] = Field(default_factory=list)
    related_product_ids: List[str] = Field(default_factory=list)
    featured: bool = False
    status: ProductStatus = "In Stock"
    is_premium: bool = False


# ---------- Catalog queries ----------

class CatalogContext(BaseModel):
    """The 'where the user is' part of a catalog request."""
    category: Optional[str] = None
    business: Optional[str] = None
    search: Optional[str] = None
    featured: Optional[bool] = None
    status: Optional[str] = None

    def cache_key(self) -> str:
        return self.model_dump_json()


class FilterSelection(BaseModel):
    category: Optional[str] = None
    business: Optional[str] = None
    search: Optional[str] = None
    price_min: Optional[str] = None
    price_max: Optional[str] = None
    colors: List[str] = Field(default_factory=list)
    brands: List[str] = Field(default_factory=list)
    filters: Dict[str, List[str]] = Field(default_factory=dict)
    sort: SortKey = "newest"
    page: int = 1

    def context(self) -> CatalogContext:
        return CatalogContext(category=self.category, business=self.business, search=self.search)


# ---------- CRM ----------

class Customer(BaseModel):
    """
    Customers collection schema
    Collection: "customer"
    """
    name: str = ""
    company_name: str = ""
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class Enquiry(BaseModel):
    """
    Enquiries collection schema
    Collection: "enquiry"
    """
    public_id: str
    customer_id: str
    source: EnquirySource = "website-form"
    user_type: UserType = "unknown"
    status: EnquiryStatus = "new"
    priority: Priority = "normal"
    assigned_to: str = ""
    notes: str = ""
    categories: List[str] = Field(default_factory=list)
    message: str = ""
    committed: bool = False


class EnquiryItem(BaseModel):
    """
    Cart snapshot lines of an enquiry
    Collection: "enquiryitem"
    """
    enquiry_id: str
    product_id: str
    product_name: str
    quantity: int = Field(..., ge=1)
    notes: str = ""


class EnquiryMessage(BaseModel):
    """
    Append-only communication log
    Collection: "enquirymessage"
    """
    enquiry_id: str
    sender: Sender = "admin"
    channel: Channel = "internal-note"
    message: str
    created_by: str = ""


class CartItem(ApiModel):
    product_id: str = Field(..., min_length=1)
    product_name: Optional[str] = None
    quantity: int = Field(1, ge=1)
    notes: str = ""


class LeadInput(ApiModel):
    phone: str
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    company: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def _blank_email(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class EnquiryContext(ApiModel):
    source: EnquirySource = "website-form"
    user_type: UserType = "unknown"
    message: str = ""
    categories: List[str] = Field(default_factory=list)


class EnquiryCreate(ApiModel):
    source: EnquirySource = "website-form"
    user_type: UserType = "unknown"
    phone: str = ""
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    company: Optional[str] = None
    message: str = ""
    categories: List[str] = Field(default_factory=list)
    # older forms post a single category
    category: Optional[str] = None
    cart_items: List[CartItem] = Field(default_factory=list)

    @field_validator("email", mode="before")
    @classmethod
    def _blank_email(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def lead(self) -> LeadInput:
        return LeadInput(phone=self.phone, name=self.name, email=self.email, company=self.company)

    def context(self) -> EnquiryContext:
        categories = self.categories or ([self.category] if self.category else [])
        return EnquiryContext(source=self.source, user_type=self.user_type,
                              message=self.message, categories=categories)


class EnquiryUpdate(ApiModel):
    status: Optional[EnquiryStatus] = None
    priority: Optional[Priority] = None
    assigned_to: Optional[str] = None
    notes: Optional[str] = None


class MessageCreate(ApiModel):
    sender: Sender = "admin"
    channel: Channel = "internal-note"
    message: str = ""
    created_by: str = ""


class LeadProfile(ApiModel):
    phone: str = Field(..., pattern=r"^\d{10}$")
    name: Optional[str] = None
    user_type: UserType = "unknown"
    saved_at: int = Field(..., description="Milliseconds since epoch")
