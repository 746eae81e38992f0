import logging
import os
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, Body, Depends, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, PyMongoError

import config
import database
from database import ensure_indexes, get_db
from enquiries import EnquiryFunnel
from errors import CatalogError
from facets import compute_facets
from products import ProductStore
from schemas import CatalogContext, EnquiryCreate, EnquiryUpdate, MessageCreate
from taxonomy import TaxonomyStore
from uploads import purge_images
from url_state import parse_query, to_query

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Hospitality Supply Catalog API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def prepare_indexes():
    if database.db is None:
        logger.warning("DATABASE_URI is not set; catalog endpoints will return 500")
        return
    try:
        ensure_indexes(database.db)
    except PyMongoError as e:
        logger.error("Could not create indexes: %s", e)


# ---------- error envelopes ----------

def error_response(status_code: int, message: str, details: Any = None) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "error": message}
    if details is not None:
        body["details"] = jsonable_encoder(details)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(CatalogError)
def handle_catalog_error(request: Request, exc: CatalogError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc.status_code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
def handle_request_validation(request: Request, exc: RequestValidationError):
    return error_response(400, "Validation error", exc.errors())


@app.exception_handler(PyMongoError)
def handle_database_error(request: Request, exc: PyMongoError):
    logger.error("%s %s database error: %s", request.method, request.url.path, exc)
    if isinstance(exc, ConnectionFailure):
        return error_response(500, "Database temporarily unavailable, please retry")
    return error_response(500, "Database error")


@app.exception_handler(Exception)
def handle_unexpected(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error")


@app.middleware("http")
async def no_store_on_writes(request: Request, call_next):
    response = await call_next(request)
    if request.method != "GET":
        response.headers["Cache-Control"] = "no-store"
    return response


def cacheable(response: Response) -> None:
    response.headers["Cache-Control"] = config.CATALOG_CACHE_CONTROL


@app.get("/")
def read_root():
    return {"message": "Hospitality Supply Catalog API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URI else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        return response
    response["database_name"] = database.db.name
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# ---------- seed ----------

SEED_IMAGE = "https://images.unsplash.com/photo-1603199506016-b9a594b593c0"


@app.post("/seed")
def seed(db: Database = Depends(get_db)):
    """Load a small demo catalog when the store is empty."""
    categories = TaxonomyStore(db, "category")
    brands = TaxonomyStore(db, "brand")
    products = ProductStore(db)
    created = {"categories": 0, "brands": 0, "products": 0}

    if db["category"].count_documents({}) == 0:
        tableware = categories.create({"name": "Tableware", "level": "department", "image": SEED_IMAGE})
        plates = categories.create({"name": "Plates", "level": "category", "parent": tableware["id"]})
        categories.create({"name": "Dinner Plates", "level": "subcategory", "parent": plates["id"]})
        categories.create({"name": "Cups", "level": "category", "parent": tableware["id"]})
        categories.create({"name": "Kitchen", "level": "department", "tagline": "Back of house essentials"})
        created["categories"] = 5

    if db["brand"].count_documents({}) == 0:
        for name in ("Regal Porcelain", "Brassworks"):
            brands.create({"name": name, "level": "department"})
        created["brands"] = 2

    if db["product"].count_documents({}) == 0:
        by_slug = {c["slug"]: c["id"] for c in categories.list()}
        sample = [
            {
                "title": "Brass Plate",
                "hero_image": SEED_IMAGE,
                "primary_category_id": by_slug.get("plates"),
                "brand_name": "Brassworks",
                "price": 200,
                "tags": ["brass", "serving"],
                "business_type_slugs": ["hotels", "restaurants"],
                "color_variants": [{"color_name": "Blue", "color_hex": "#1E3A8A"}],
                "filters": {"material": ["brass"], "usage": ["serving"]},
            },
            {
                "title": "Porcelain Dinner Plate",
                "hero_image": SEED_IMAGE,
                "primary_category_id": by_slug.get("dinner-plates"),
                "brand_name": "Regal Porcelain",
                "price": 400,
                "tags": ["porcelain"],
                "business_type_slugs": ["hotels"],
                "color_variants": [{"color_name": "Red", "color_hex": "#B91C1C"}],
                "filters": [{"key": "Material", "values": ["Porcelain"]}, {"key": "Size", "values": ["10", "12"]}],
                "featured": True,
            },
            {
                "title": "Stoneware Cup",
                "hero_image": SEED_IMAGE,
                "primary_category_id": by_slug.get("cups"),
                "brand_name": "Regal Porcelain",
                "price": 150,
                "tags": ["cup", "cafe"],
                "business_type_slugs": ["cafes"],
                "color_variants": [{"color_name": "Blue", "color_hex": "#2563EB"}],
                "filters": {"material": ["stoneware"]},
            },
        ]
        for p in sample:
            products.create(p)
        created["products"] = len(sample)

    return {"success": True, "status": "ok", "created": created}


# ---------- products ----------

def catalog_context(request: Request, featured: Optional[bool] = None, status: Optional[str] = None) -> CatalogContext:
    params = request.query_params
    return CatalogContext(
        category=params.get("category") or None,
        business=params.get("business") or None,
        search=(params.get("search") or "").strip() or None,
        featured=featured,
        status=status or None,
    )


@app.get("/products")
def list_products(request: Request, response: Response, featured: Optional[bool] = None,
                  status: Optional[str] = None, limit: int = 100, skip: int = 0,
                  db: Database = Depends(get_db)):
    context = catalog_context(request, featured, status)
    selection = parse_query(request.query_params)
    limit = max(1, min(limit, 200))
    skip = max(0, skip)
    products, total = ProductStore(db).find(context, limit, skip, selection)
    cacheable(response)
    return {"success": True, "products": products, "total": total, "limit": limit, "skip": skip}


@app.post("/products", status_code=201)
def create_product(data: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    product = ProductStore(db).create(data)
    return {"success": True, "product": product}


@app.get("/products/facets")
def product_facets(request: Request, response: Response, featured: Optional[bool] = None,
                   status: Optional[str] = None, db: Database = Depends(get_db)):
    context = catalog_context(request, featured, status)
    selection = parse_query(request.query_params)
    facets = compute_facets(ProductStore(db).projection(context), selection)
    cacheable(response)
    return {"success": True, "facets": facets}


@app.get("/products/{id_or_slug}")
def get_product(id_or_slug: str, db: Database = Depends(get_db)):
    return {"success": True, "product": ProductStore(db).get(id_or_slug)}


@app.put("/products/{product_id}")
def update_product(product_id: str, data: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    return {"success": True, "product": ProductStore(db).update(product_id, data)}


@app.delete("/products/{product_id}")
def delete_product(product_id: str, background_tasks: BackgroundTasks, db: Database = Depends(get_db)):
    store = ProductStore(db, purge=lambda urls: background_tasks.add_task(purge_images, urls))
    store.delete(product_id)
    return {"success": True, "message": "Product deleted successfully"}


@app.get("/catalog")
def catalog_page(request: Request, response: Response, db: Database = Depends(get_db)):
    """One catalog screen: the page of results, its facets and the canonical query string."""
    selection = parse_query(request.query_params, strict=True)
    store = ProductStore(db)
    page = store.list(selection)
    facets = compute_facets(store.projection(selection.context()), selection)
    cacheable(response)
    return {
        "success": True,
        "products": page["items"],
        "total": page["total"],
        "page": page["page"],
        "pageSize": page["page_size"],
        "facets": facets,
        "query": to_query(selection),
    }


@app.get("/admin/stats")
def admin_stats(db: Database = Depends(get_db)):
    return {"success": True, "stats": ProductStore(db).stats()}


# ---------- categories and brands ----------

def _taxonomy_routes(kind: str, plural: str):
    def list_nodes(tree: bool = False, level: Optional[str] = None, parent: Optional[str] = None,
                   db: Database = Depends(get_db)):
        store = TaxonomyStore(db, kind)
        if tree:
            return {"success": True, plural: store.tree()}
        return {"success": True, plural: store.list(level, parent)}

    def create_node(data: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
        return {"success": True, kind: TaxonomyStore(db, kind).create(data)}

    def get_node(node_id: str, db: Database = Depends(get_db)):
        store = TaxonomyStore(db, kind)
        return {"success": True, kind: store.get(node_id), "ancestry": store.ancestry(node_id)}

    def update_node(node_id: str, data: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
        return {"success": True, kind: TaxonomyStore(db, kind).update(node_id, data)}

    def delete_node(node_id: str, db: Database = Depends(get_db)):
        TaxonomyStore(db, kind).delete(node_id)
        return {"success": True, "message": f"{kind.capitalize()} deleted successfully"}

    app.add_api_route(f"/{plural}", list_nodes, methods=["GET"])
    app.add_api_route(f"/{plural}", create_node, methods=["POST"], status_code=201)
    app.add_api_route(f"/{plural}/{{node_id}}", get_node, methods=["GET"])
    app.add_api_route(f"/{plural}/{{node_id}}", update_node, methods=["PUT"])
    app.add_api_route(f"/{plural}/{{node_id}}", delete_node, methods=["DELETE"])


_taxonomy_routes("category", "categories")
_taxonomy_routes("brand", "brands")


# ---------- enquiries ----------

@app.post("/enquiries", status_code=201)
def create_enquiry(payload: EnquiryCreate, db: Database = Depends(get_db)):
    result = EnquiryFunnel(db).submit(payload.cart_items, payload.lead(), payload.context())
    return {
        "success": True,
        "enquiry": result["enquiry"],
        "publicId": result["public_id"],
        "items": result["items"],
        "customer": result["customer"],
        "whatsappUrl": result["whatsapp_url"],
    }


@app.get("/enquiries")
def list_enquiries(status: Optional[str] = None, priority: Optional[str] = None,
                   assigned_to: Optional[str] = None, category: Optional[str] = None,
                   search: Optional[str] = None, limit: int = 50, skip: int = 0,
                   db: Database = Depends(get_db)):
    result = EnquiryFunnel(db).list(status, priority, assigned_to, category, search, limit, skip)
    return {"success": True, **result}


@app.get("/enquiries/{enquiry_id}")
def get_enquiry(enquiry_id: str, db: Database = Depends(get_db)):
    record = EnquiryFunnel(db).read(enquiry_id)
    return {
        "success": True,
        "enquiry": record["enquiry"],
        "items": record["items"],
        "messages": record["messages"],
        "customer": record["customer"],
        "customerEnquiryCount": record["customer_enquiry_count"],
    }


@app.put("/enquiries/{enquiry_id}")
def update_enquiry(enquiry_id: str, payload: EnquiryUpdate, db: Database = Depends(get_db)):
    return {"success": True, "enquiry": EnquiryFunnel(db).update_meta(enquiry_id, payload)}


@app.post("/enquiries/{enquiry_id}/messages", status_code=201)
def add_enquiry_message(enquiry_id: str, payload: MessageCreate, db: Database = Depends(get_db)):
    return {"success": True, "message": EnquiryFunnel(db).append_message(enquiry_id, payload)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
