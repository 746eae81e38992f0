import json

import pytest

from enquiries import EnquiryFunnel
from errors import ValidationError
from lead_profile import STORAGE_KEY, CaptureRequest, EnquiryLauncher, JsonFileStorage, LeadProfileStore
from schemas import CartItem, EnquiryContext


class RecordingSubmit:
    def __init__(self):
        self.calls = []

    def __call__(self, cart_items, lead, context):
        self.calls.append((cart_items, lead, context))
        return {"public_id": f"ENQ-TEST-{len(self.calls):05d}"}


@pytest.fixture
def store():
    return LeadProfileStore({})


def test_empty_store(store):
    assert store.get() is None
    assert not store.has_profile()


def test_set_and_get(store):
    saved = store.set("98765-43210", "  Asha ", "business")
    assert saved.phone == "9876543210"
    loaded = store.get()
    assert loaded.phone == "9876543210"
    assert loaded.name == "Asha"
    assert loaded.user_type == "business"
    assert loaded.saved_at > 0
    assert store.has_profile()


def test_stored_payload_uses_client_field_names(store):
    store.set("9876543210", None, "customer")
    payload = json.loads(store.storage[STORAGE_KEY])
    assert set(payload) == {"phone", "userType", "savedAt"}


def test_set_requires_ten_digits(store):
    with pytest.raises(ValidationError):
        store.set("12345")
    assert store.get() is None


@pytest.mark.parametrize("raw", ["{not json", '{"phone": "123"}', "[]", '"text"'])
def test_corrupt_payload_reads_as_none(raw):
    store = LeadProfileStore({STORAGE_KEY: raw})
    assert store.get() is None
    assert not store.has_profile()


def test_clear(store):
    store.set("9876543210")
    store.clear()
    store.clear()
    assert store.get() is None


def test_json_file_storage_persists(tmp_path):
    path = tmp_path / "profile.json"
    LeadProfileStore(JsonFileStorage(str(path))).set("9876543210", "Asha")
    again = LeadProfileStore(JsonFileStorage(str(path)))
    assert again.get().name == "Asha"
    again.clear()
    assert LeadProfileStore(JsonFileStorage(str(path))).get() is None


def test_json_file_storage_tolerates_garbage(tmp_path):
    path = tmp_path / "profile.json"
    path.write_text("garbage")
    storage = JsonFileStorage(str(path))
    assert len(storage) == 0
    storage["k"] = "v"
    assert dict(storage) == {"k": "v"}


def test_first_enquiry_asks_for_details(store):
    submit = RecordingSubmit()
    launcher = EnquiryLauncher(store, submit)
    items = [CartItem(product_id="p1", product_name="Brass Plate", quantity=2)]
    request = launcher.start(items, EnquiryContext(source="cart"))
    assert isinstance(request, CaptureRequest)
    assert request.phone == ""
    assert not request.has_existing_profile
    assert submit.calls == []

    result = launcher.complete_capture(request, "9876543210", "Asha", is_business=True)
    assert result == {"public_id": "ENQ-TEST-00001"}
    cart, lead, context = submit.calls[0]
    assert cart == items
    assert lead.phone == "9876543210"
    assert lead.name == "Asha"
    assert context.source == "cart"
    assert context.user_type == "business"
    assert store.get().user_type == "business"


def test_saved_profile_skips_the_form(store):
    store.set("9876543210", "Asha", "customer")
    submit = RecordingSubmit()
    launcher = EnquiryLauncher(store, submit)
    result = launcher.start([], EnquiryContext(source="product-card"))
    assert result == {"public_id": "ENQ-TEST-00001"}
    _, lead, context = submit.calls[0]
    assert lead.phone == "9876543210"
    assert context.user_type == "customer"


def test_business_pages_override_saved_type(store):
    store.set("9876543210", None, "customer")
    submit = RecordingSubmit()
    EnquiryLauncher(store, submit).start([], default_user_type="business")
    assert submit.calls[0][2].user_type == "business"


def test_change_info_prefills(store):
    store.set("9876543210", "Asha", "business")
    launcher = EnquiryLauncher(store, RecordingSubmit())
    request = launcher.change_info([])
    assert request.phone == "9876543210"
    assert request.name == "Asha"
    assert request.user_type == "business"
    assert request.has_existing_profile


def test_launcher_with_real_funnel(db):
    store = LeadProfileStore({})
    launcher = EnquiryLauncher(store, EnquiryFunnel(db).submit)
    request = launcher.start([{"product_id": "p1", "product_name": "Cup"}])
    first = launcher.complete_capture(request, "9876543210", "Asha")
    second = launcher.start([])
    assert first["enquiry"]["customer_id"] == second["enquiry"]["customer_id"]
    assert second["enquiry"]["type"] == "enquiry only"
