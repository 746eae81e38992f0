import mongomock
import pytest
from fastapi.testclient import TestClient

import facets
import taxonomy
from database import ensure_indexes, get_db
from main import app

IMAGE = "https://images.unsplash.com/photo-test"


def _reset_caches():
    taxonomy.category_tree.invalidate()
    taxonomy.brand_tree.invalidate()
    facets.facet_cache.clear()


@pytest.fixture
def db():
    database = mongomock.MongoClient()["regal_test"]
    ensure_indexes(database)
    _reset_caches()
    yield database
    _reset_caches()


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def variant(name, hex_code="#123456"):
    return {"colorName": name, "colorHex": hex_code}


@pytest.fixture
def catalog(client):
    """Plates (with Dinner below it), Cups, and products A, B, C placed in them."""
    plates = client.post("/categories", json={"name": "Plates", "level": "category"}).json()["category"]
    dinner = client.post(
        "/categories", json={"name": "Dinner", "level": "subcategory", "parent": plates["id"]}
    ).json()["category"]
    cups = client.post("/categories", json={"name": "Cups", "level": "category"}).json()["category"]

    def product(title, category, color, price, **extra):
        body = {
            "title": title,
            "heroImage": IMAGE,
            "primaryCategoryId": category["id"],
            "colorVariants": [variant(color)],
            "price": price,
        }
        body.update(extra)
        resp = client.post("/products", json=body)
        assert resp.status_code == 201, resp.json()
        return resp.json()["product"]

    a = product("Brass Plate", plates, "Blue", 200, brandName="Brassworks")
    b = product("Dinner Plate", dinner, "Red", 400, brandName="Regal")
    c = product("Tea Cup", cups, "Blue", 150, brandName="Regal")
    return {"plates": plates, "dinner": dinner, "cups": cups, "A": a, "B": b, "C": c}
