import pytest

from errors import ValidationError
from taxonomy import TaxonomyStore, category_tree


def test_delete_referenced_category_names_count(client, catalog):
    dinner = catalog["dinner"]
    resp = client.delete(f"/categories/{dinner['id']}")
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert "1 product(s)" in body["error"]
    assert body["details"] == {"products": 1}


def test_delete_parent_with_children_is_refused(client, catalog):
    resp = client.delete(f"/categories/{catalog['plates']['id']}")
    assert resp.status_code == 400
    assert "children" in resp.json()["error"]


def test_delete_after_products_removed_invalidates_tree(client, db, catalog):
    assert category_tree.descendants(db, "plates") == {catalog["plates"]["id"], catalog["dinner"]["id"]}

    client.delete(f"/products/{catalog['B']['id']}")
    assert client.delete(f"/categories/{catalog['dinner']['id']}").status_code == 200
    client.delete(f"/products/{catalog['A']['id']}")
    resp = client.delete(f"/categories/{catalog['plates']['id']}")
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "Category deleted successfully"}
    assert category_tree.descendants(db, "plates") == set()


def test_tree_listing(client, catalog):
    tree = client.get("/categories", params={"tree": "true"}).json()["categories"]
    assert [n["name"] for n in tree] == ["Cups", "Plates"]
    plates = tree[1]
    assert [c["name"] for c in plates["children"]] == ["Dinner"]
    assert "children" not in tree[0]


def test_filtered_listing(client, catalog):
    roots = client.get("/categories", params={"parent": "null"}).json()["categories"]
    assert {c["slug"] for c in roots} == {"plates", "cups"}
    subs = client.get("/categories", params={"level": "subcategory"}).json()["categories"]
    assert [c["slug"] for c in subs] == ["dinner"]


def test_get_category_with_ancestry(client, catalog):
    body = client.get(f"/categories/{catalog['dinner']['id']}").json()
    assert body["category"]["slug"] == "dinner"
    assert body["ancestry"] == {"subcategory": catalog["dinner"]["id"], "category": catalog["plates"]["id"]}


def test_unknown_category_is_404(client):
    assert client.get("/categories/64b7f0c2a1b2c3d4e5f60718").status_code == 404
    assert client.get("/categories/not-an-id").status_code == 404


def test_duplicate_slug_is_refused(client, catalog):
    resp = client.post("/categories", json={"name": "PLATES", "level": "category"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Category with this slug already exists"


def test_level_must_follow_parent(client, catalog):
    resp = client.post("/categories", json={"name": "Saucers", "level": "type", "parent": catalog["cups"]["id"]})
    assert resp.status_code == 400
    assert resp.json()["details"] == {"expected_level": "subcategory"}


def test_missing_parent_is_refused(client):
    resp = client.post("/categories", json={"name": "Saucers", "level": "category",
                                            "parent": "64b7f0c2a1b2c3d4e5f60718"})
    assert resp.status_code == 400


def test_node_cannot_be_its_own_parent(client, catalog):
    plates = catalog["plates"]
    resp = client.put(f"/categories/{plates['id']}", json={"parent": plates["id"]})
    assert resp.status_code == 400


def test_cycles_are_refused(db):
    store = TaxonomyStore(db, "category")
    a = store.create({"name": "A", "level": "department"})
    b = store.create({"name": "B", "level": "category", "parent": a["id"]})
    c = store.create({"name": "C", "level": "subcategory", "parent": b["id"]})
    with pytest.raises(ValidationError):
        store.update(a["id"], {"parent": c["id"], "level": "type"})


def test_rename_updates_slug_and_tree(client, db, catalog):
    cups = catalog["cups"]
    assert category_tree.descendants(db, "cups") == {cups["id"]}
    resp = client.put(f"/categories/{cups['id']}", json={"name": "Tea Cups"})
    assert resp.json()["category"]["slug"] == "tea-cups"
    assert category_tree.descendants(db, "cups") == set()
    assert category_tree.descendants(db, "tea-cups") == {cups["id"]}
    products = client.get("/products", params={"category": "tea-cups"}).json()["products"]
    assert [p["title"] for p in products] == ["Tea Cup"]


def test_brands_share_the_rules(client):
    parent = client.post("/brands", json={"name": "Regal", "level": "department"}).json()["brand"]
    child = client.post("/brands", json={"name": "Regal Home", "level": "category", "parent": parent["id"]})
    assert child.status_code == 201
    resp = client.delete(f"/brands/{parent['id']}")
    assert resp.status_code == 400
    tree = client.get("/brands", params={"tree": "true"}).json()["brands"]
    assert tree[0]["children"][0]["slug"] == "regal-home"


def test_brand_in_use_cannot_be_deleted(client):
    brand = client.post("/brands", json={"name": "Regal", "level": "department"}).json()["brand"]
    client.post("/products", json={"title": "Cup", "heroImage": "https://images.unsplash.com/x",
                                   "primaryBrandId": brand["id"]})
    resp = client.delete(f"/brands/{brand['id']}")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Cannot delete brand. 1 product(s) are using this brand."


@pytest.mark.parametrize("patch", [{"slug": "!!!"}, {"name": "???"}])
def test_update_refuses_a_slug_without_letters_or_digits(client, db, catalog, patch):
    cups = catalog["cups"]
    resp = client.put(f"/categories/{cups['id']}", json=patch)
    assert resp.status_code == 400
    assert db["category"].find_one({"slug": ""}) is None
    assert client.get(f"/categories/{cups['id']}").json()["category"]["slug"] == "cups"
