import pytest

from errors import SlugConflict, ValidationError
from slugs import generate_unique_slug, slug_of


@pytest.mark.parametrize("text,expected", [
    ("Brass Plate", "brass-plate"),
    ("  Royal -- Brass  Plate!! ", "royal-brass-plate"),
    ("Café Crème 10\"", "caf-cr-me-10"),
    ("UPPER_case", "upper-case"),
    ("---", ""),
])
def test_slug_of(text, expected):
    assert slug_of(text) == expected


@pytest.mark.parametrize("text", ["Brass Plate", "a--b", "  Mixed CASE 42 ", "ünïcode"])
def test_slug_of_is_idempotent(text):
    assert slug_of(slug_of(text)) == slug_of(text)


def test_unique_slug_counts_up(db):
    products = db["product"]
    assert generate_unique_slug(products, "Cup") == "cup"
    products.insert_one({"slug": "cup"})
    products.insert_one({"slug": "cup-1"})
    assert generate_unique_slug(products, "Cup") == "cup-2"


def test_unique_slug_ignores_own_document(db):
    products = db["product"]
    own = products.insert_one({"slug": "cup"}).inserted_id
    assert generate_unique_slug(products, "Cup", exclude_id=str(own)) == "cup"


def test_unique_slug_is_bounded(db):
    products = db["product"]
    products.insert_one({"slug": "cup"})
    products.insert_one({"slug": "cup-1"})
    with pytest.raises(SlugConflict):
        generate_unique_slug(products, "Cup", max_attempts=2)


def test_empty_title_has_no_slug(db):
    with pytest.raises(ValidationError):
        generate_unique_slug(db["product"], "!!!")
