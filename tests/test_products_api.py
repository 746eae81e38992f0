import config
import main
from conftest import IMAGE, variant


def titles(products):
    return {p["title"] for p in products}


def test_category_subtree_listing(client, catalog):
    resp = client.get("/products", params={"category": "plates"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert titles(body["products"]) == {"Brass Plate", "Dinner Plate"}
    assert body["total"] == 2
    assert body["limit"] == 100
    assert body["skip"] == 0


def test_category_facets(client, catalog):
    facets = client.get("/products/facets", params={"category": "plates"}).json()["facets"]
    assert [c["value"] for c in facets["colors"]] == ["Blue", "Red"]
    assert facets["priceRange"] == {"min": 200, "max": 400}
    assert facets["total"] == 2


def test_selected_color_keeps_other_colors(client, catalog):
    facets = client.get("/products/facets", params={"category": "plates", "colors": "Blue"}).json()["facets"]
    colors = {c["value"]: c for c in facets["colors"]}
    assert list(colors) == ["Blue", "Red"]
    assert colors["Blue"]["count"] == 1
    assert colors["Blue"]["selected"] is True
    assert colors["Red"]["count"] == 1
    assert colors["Red"]["selected"] is False

    products = client.get("/products", params={"category": "plates", "colors": "Blue"}).json()["products"]
    assert titles(products) == {"Brass Plate"}


def test_unknown_category_matches_nothing(client, catalog):
    body = client.get("/products", params={"category": "no-such-slug"}).json()
    assert body["products"] == []
    assert body["total"] == 0


def test_search_is_case_insensitive(client, catalog):
    body = client.get("/products", params={"search": "BRASS"}).json()
    assert titles(body["products"]) == {"Brass Plate"}


def test_limit_is_capped(client, catalog):
    assert client.get("/products", params={"limit": 1000}).json()["limit"] == 200


def test_catalog_cache_headers(client, catalog):
    assert client.get("/products").headers["cache-control"] == config.CATALOG_CACHE_CONTROL
    assert client.get("/products/facets").headers["cache-control"] == config.CATALOG_CACHE_CONTROL
    assert client.get("/catalog").headers["cache-control"] == config.CATALOG_CACHE_CONTROL


def test_writes_are_not_cached(client):
    resp = client.post("/products", json={"title": "Bowl", "heroImage": IMAGE})
    assert resp.status_code == 201
    assert resp.headers["cache-control"] == "no-store"


def test_get_by_id_and_slug(client, catalog):
    a = catalog["A"]
    assert client.get(f"/products/{a['id']}").json()["product"]["title"] == "Brass Plate"
    assert client.get("/products/brass-plate").json()["product"]["id"] == a["id"]


def test_missing_product_is_404(client):
    resp = client.get("/products/does-not-exist")
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "error": "Product not found"}


def test_create_requires_title_and_hero_image(client):
    resp = client.post("/products", json={"title": "Bowl"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Title and heroImage are required"


def test_create_rejects_bad_hex_and_negative_price(client):
    resp = client.post("/products", json={"title": "Bowl", "heroImage": IMAGE,
                                          "colorVariants": [variant("Blue", "blue")]})
    assert resp.status_code == 400
    resp = client.post("/products", json={"title": "Bowl", "heroImage": IMAGE, "price": -1})
    assert resp.status_code == 400


def test_create_rejects_foreign_image_host(client):
    resp = client.post("/products", json={"title": "Bowl", "heroImage": "https://evil.example.com/x.jpg"})
    assert resp.status_code == 400


def test_create_defaults(client):
    product = client.post("/products", json={"title": "Bowl", "heroImage": IMAGE, "price": ""}).json()["product"]
    assert product["slug"] == "bowl"
    assert product["price"] == 0
    assert product["status"] == "In Stock"
    assert product["gallery"] == []
    assert product["filters"] == []


def test_duplicate_titles_get_numbered_slugs(client):
    first = client.post("/products", json={"title": "Brass Plate", "heroImage": IMAGE}).json()["product"]
    second = client.post("/products", json={"title": "Brass  Plate!", "heroImage": IMAGE}).json()["product"]
    third = client.post("/products", json={"title": "brass plate", "heroImage": IMAGE}).json()["product"]
    assert [first["slug"], second["slug"], third["slug"]] == ["brass-plate", "brass-plate-1", "brass-plate-2"]


def test_legacy_filters_are_stored_as_list(client):
    body = {"title": "Bowl", "heroImage": IMAGE, "filters": {"material": ["Porcelain"], "finish": ["matte"]}}
    product = client.post("/products", json=body).json()["product"]
    assert product["filters"] == [
        {"key": "Material", "values": ["Porcelain"]},
        {"key": "Finish", "values": ["matte"]},
    ]


def test_filter_values_with_commas_are_rejected(client):
    body = {"title": "Bowl", "heroImage": IMAGE, "filters": [{"key": "Size", "values": ["10,12"]}]}
    assert client.post("/products", json=body).status_code == 400


def test_rename_regenerates_slug(client, catalog):
    a = catalog["A"]
    resp = client.put(f"/products/{a['id']}", json={"title": "Royal Brass Plate", "slug": "ignored"})
    assert resp.status_code == 200
    assert resp.json()["product"]["slug"] == "royal-brass-plate"


def test_update_without_title_keeps_slug(client, catalog):
    a = catalog["A"]
    product = client.put(f"/products/{a['id']}", json={"price": 250, "slug": "manual"}).json()["product"]
    assert product["slug"] == "brass-plate"
    assert product["price"] == 250


def test_update_unknown_product(client):
    assert client.put("/products/64b7f0c2a1b2c3d4e5f60718", json={"price": 1}).status_code == 404


def test_product_write_refreshes_facets(client, catalog):
    before = client.get("/products/facets", params={"category": "plates"}).json()["facets"]
    assert before["total"] == 2
    client.post("/products", json={"title": "Side Plate", "heroImage": IMAGE,
                                   "primaryCategoryId": catalog["plates"]["id"],
                                   "colorVariants": [variant("Green")], "price": 90})
    after = client.get("/products/facets", params={"category": "plates"}).json()["facets"]
    assert after["total"] == 3
    assert [c["value"] for c in after["colors"]] == ["Blue", "Green", "Red"]


def test_delete_schedules_image_purge(client, catalog, monkeypatch):
    purged = []
    monkeypatch.setattr(main, "purge_images", lambda urls: purged.append(list(urls)))
    c = catalog["C"]
    resp = client.delete(f"/products/{c['id']}")
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "Product deleted successfully"}
    assert purged == [[IMAGE]]
    assert client.get(f"/products/{c['id']}").status_code == 404


def test_catalog_page(client, catalog):
    body = client.get("/catalog", params={"category": "plates", "colors": "Blue"}).json()
    assert titles(body["products"]) == {"Brass Plate"}
    assert body["total"] == 1
    assert body["page"] == 1
    assert body["pageSize"] == 24
    assert body["query"] == "category=plates&colors=Blue"
    assert [c["value"] for c in body["facets"]["colors"]] == ["Blue", "Red"]


def test_catalog_price_sort(client, catalog):
    body = client.get("/catalog", params={"sort": "price-desc"}).json()
    assert [p["title"] for p in body["products"]] == ["Dinner Plate", "Brass Plate", "Tea Cup"]


def test_catalog_out_of_range_page(client, catalog):
    body = client.get("/catalog", params={"page": 5}).json()
    assert body["products"] == []
    assert body["total"] == 3


def test_catalog_unknown_sort(client):
    resp = client.get("/catalog", params={"sort": "cheapest"})
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_admin_stats(client, catalog):
    stats = client.get("/admin/stats").json()["stats"]
    assert stats["totalProducts"] == 3
    assert stats["totalCategories"] == 3
    assert stats["inStockProducts"] == 3
    assert len(stats["recentProducts"]) == 3


def test_seed_is_idempotent(client):
    first = client.post("/seed").json()
    assert first["created"]["products"] == 3
    second = client.post("/seed").json()
    assert second["created"] == {"categories": 0, "brands": 0, "products": 0}
    body = client.get("/products", params={"category": "plates"}).json()
    assert body["total"] == 2


def test_detail_resolves_categories_brands_and_related(client, catalog):
    brand = client.post("/brands", json={"name": "Regal", "level": "department"}).json()["brand"]
    a, c = catalog["A"], catalog["C"]
    resp = client.put(f"/products/{a['id']}", json={
        "primaryBrandId": brand["id"],
        "additionalCategoryIds": [catalog["cups"]["id"], "64b7f0c2a1b2c3d4e5f60718"],
        "relatedProductIds": [c["id"], "not-an-id"],
    })
    assert resp.status_code == 200

    product = client.get("/products/brass-plate").json()["product"]
    assert product["primary_category_id"] == catalog["plates"]["id"]
    assert product["primary_category"] == {"id": catalog["plates"]["id"], "name": "Plates",
                                           "slug": "plates", "level": "category"}
    assert [cat["slug"] for cat in product["additional_categories"]] == ["cups"]
    assert product["primary_brand"]["name"] == "Regal"
    assert product["additional_brands"] == []
    assert product["related_products"] == [{"id": c["id"], "title": "Tea Cup", "slug": "tea-cup",
                                            "hero_image": IMAGE, "price": 150}]


def test_listing_resolves_categories(client, catalog):
    products = client.get("/products", params={"category": "plates"}).json()["products"]
    by_title = {p["title"]: p for p in products}
    assert by_title["Brass Plate"]["primary_category"]["slug"] == "plates"
    assert by_title["Dinner Plate"]["primary_category"]["level"] == "subcategory"
    assert by_title["Dinner Plate"]["primary_brand"] is None
    assert "related_products" not in by_title["Brass Plate"]

    page = client.get("/catalog", params={"category": "cups"}).json()
    assert page["products"][0]["primary_category"]["name"] == "Cups"
