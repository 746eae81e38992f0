"""
Enquiry funnel: turns a cart snapshot and a lead into a stored enquiry.

Customers are matched by phone or email so repeat visitors collapse into one
record. An enquiry and its items become visible together: the enquiry is
written with ``committed`` false, its items are inserted, and only then is the
flag flipped. Readers never see uncommitted enquiries, and a failure in
between removes whatever was written.
"""
import logging
import re
import secrets
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, now, oid, serialize_doc
from errors import IdGenFailure, NotFound, Transient, ValidationError
from schemas import (
    CartItem,
    Customer,
    Enquiry,
    EnquiryContext,
    EnquiryItem,
    EnquiryMessage,
    EnquiryUpdate,
    LeadInput,
    MessageCreate,
)
from whatsapp import business_link, render_enquiry_message

logger = logging.getLogger(__name__)

PUBLIC_ID_ATTEMPTS = 3
STATUSES = ("new", "in-progress", "awaiting-customer", "closed", "spam")

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_NON_DIGITS = re.compile(r"\D")


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def generate_public_id() -> str:
    millis = int(time.time() * 1000)
    return f"ENQ-{to_base36(millis)}-{to_base36(secrets.randbits(24)).zfill(5)}"


def normalize_phone(phone: Optional[str]) -> str:
    cleaned = _NON_DIGITS.sub("", phone or "")
    if len(cleaned) != 10:
        raise ValidationError("Please enter a valid 10-digit phone number")
    return cleaned


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lowercase an address already checked by ``EmailStr``; blank gives None."""
    email = (email or "").strip().lower()
    return email or None


def mask_phone(phone: str) -> str:
    return "*" * max(len(phone) - 4, 0) + phone[-4:]


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    if current == "spam":
        return False
    if current == "closed":
        return target == "in-progress"
    return True


def enquiry_type(item_count: int) -> str:
    return "cart + enquiry" if item_count > 0 else "enquiry only"


class EnquiryFunnel:
    def __init__(self, db: Database, id_factory: Callable[[], str] = generate_public_id):
        self.db = db
        self.enquiries = db["enquiry"]
        self.items = db["enquiryitem"]
        self.messages = db["enquirymessage"]
        self.customers = db["customer"]
        self.id_factory = id_factory

    # ---------- customers ----------

    def upsert_customer(self, lead: LeadInput) -> dict:
        phone = normalize_phone(lead.phone)
        email = normalize_email(lead.email)
        name = (lead.name or "").strip()
        company = (lead.company or "").strip()

        clauses: List[Dict[str, Any]] = [{"phone": phone}]
        if email:
            clauses.append({"email": email})

        for _ in range(2):
            existing = self.customers.find_one({"$or": clauses})
            if existing:
                updates = {}
                if name and existing.get("name") != name:
                    updates["name"] = name
                if company and existing.get("company_name") != company:
                    updates["company_name"] = company
                if not existing.get("phone") and self.customers.count_documents({"phone": phone}) == 0:
                    updates["phone"] = phone
                if email and not existing.get("email") and self.customers.count_documents({"email": email}) == 0:
                    updates["email"] = email
                if updates:
                    updates["updated_at"] = now()
                    self.customers.update_one({"_id": existing["_id"]}, {"$set": updates})
                    existing.update(updates)
                return existing

            customer = Customer(name=name, company_name=company, email=email, phone=phone)
            try:
                new_id = create_document("customer", customer.model_dump(exclude_none=True), self.db)
            except DuplicateKeyError:
                # another submit from the same contact won the race
                continue
            return self.customers.find_one({"_id": oid(new_id)})
        raise Transient("Could not resolve customer, please retry")

    # ---------- enquiries ----------

    def _insert_enquiry(self, fields: dict) -> dict:
        for attempt in range(PUBLIC_ID_ATTEMPTS):
            public_id = self.id_factory()
            doc = Enquiry(public_id=public_id, committed=False, **fields).model_dump()
            try:
                new_id = create_document("enquiry", doc, self.db)
            except DuplicateKeyError:
                logger.warning("Enquiry id %s already used, retrying (%d)", public_id, attempt + 1)
                continue
            return self.enquiries.find_one({"_id": oid(new_id)})
        raise IdGenFailure("Could not generate a unique enquiry id")

    def _snapshot_name(self, item: CartItem) -> str:
        if item.product_name and item.product_name.strip():
            return item.product_name.strip()
        _id = oid(item.product_id)
        product = self.db["product"].find_one({"_id": _id}, {"title": 1}) if _id is not None else None
        return (product or {}).get("title") or "Product"

    def submit(self, cart_items: Iterable[Union[CartItem, dict]], lead: Union[LeadInput, dict],
               context: Optional[Union[EnquiryContext, dict]] = None) -> Dict[str, Any]:
        try:
            lead = lead if isinstance(lead, LeadInput) else LeadInput.model_validate(lead)
            context = context if isinstance(context, EnquiryContext) else EnquiryContext.model_validate(context or {})
            items = [i if isinstance(i, CartItem) else CartItem.model_validate(i) for i in cart_items]
        except PydanticValidationError as e:
            errors = e.errors(include_url=False)
            if any(err["loc"][:1] == ("email",) for err in errors):
                raise ValidationError("Please provide a valid email address", errors)
            raise ValidationError("Validation error", errors)
        normalize_phone(lead.phone)

        customer = self.upsert_customer(lead)
        enquiry = self._insert_enquiry({
            "customer_id": str(customer["_id"]),
            "source": context.source,
            "user_type": context.user_type,
            "categories": [c.strip() for c in context.categories if c and c.strip()],
            "message": context.message.strip(),
        })
        enquiry_id = str(enquiry["_id"])

        try:
            lines = [
                EnquiryItem(
                    enquiry_id=enquiry_id,
                    product_id=item.product_id,
                    product_name=self._snapshot_name(item),
                    quantity=item.quantity,
                    notes=item.notes.strip(),
                ).model_dump()
                for item in items
            ]
            stamp = now()
            for line in lines:
                line["created_at"] = stamp
                line["updated_at"] = stamp
            if lines:
                self.items.insert_many(lines)
            self.enquiries.update_one({"_id": enquiry["_id"]}, {"$set": {"committed": True}})
        except Exception:
            logger.error("Rolling back enquiry %s", enquiry["public_id"])
            self.items.delete_many({"enquiry_id": enquiry_id})
            self.enquiries.delete_one({"_id": enquiry["_id"]})
            raise

        logger.info("Enquiry %s created for customer %s", enquiry["public_id"], mask_phone(customer.get("phone") or ""))
        record = self.read(enquiry_id)
        text = render_enquiry_message(
            enquiry["public_id"], record["items"], name=lead.name, user_type=context.user_type,
            message=context.message.strip(),
        )
        record["public_id"] = enquiry["public_id"]
        record["whatsapp_url"] = business_link(text)
        return record

    def _find(self, enquiry_id: str) -> dict:
        _id = oid(enquiry_id)
        query = {"_id": _id} if _id is not None else {"public_id": enquiry_id}
        query["committed"] = True
        doc = self.enquiries.find_one(query)
        if not doc:
            raise NotFound("Enquiry not found")
        return doc

    def _public(self, doc: dict, item_count: Optional[int] = None) -> dict:
        out = serialize_doc(doc)
        out.pop("committed", None)
        if item_count is None:
            item_count = self.items.count_documents({"enquiry_id": str(doc["_id"])})
        out["type"] = enquiry_type(item_count)
        return out

    def read(self, enquiry_id: str) -> Dict[str, Any]:
        doc = self._find(enquiry_id)
        key = str(doc["_id"])
        items = [serialize_doc(i) for i in self.items.find({"enquiry_id": key}).sort("_id", 1)]
        messages = [
            serialize_doc(m)
            for m in self.messages.find({"enquiry_id": key}).sort([("created_at", -1), ("_id", -1)])
        ]
        customer = None
        count = 0
        customer_oid = oid(doc.get("customer_id"))
        if customer_oid is not None:
            customer = serialize_doc(self.customers.find_one({"_id": customer_oid}))
            count = self.enquiries.count_documents({"customer_id": doc["customer_id"], "committed": True})
        return {
            "enquiry": self._public(doc, len(items)),
            "items": items,
            "messages": messages,
            "customer": customer,
            "customer_enquiry_count": count,
        }

    def update_meta(self, enquiry_id: str, patch: Union[EnquiryUpdate, dict]) -> dict:
        try:
            patch = patch if isinstance(patch, EnquiryUpdate) else EnquiryUpdate.model_validate(patch)
        except PydanticValidationError as e:
            raise ValidationError("Validation error", e.errors(include_url=False))
        doc = self._find(enquiry_id)
        changes = {k: v for k, v in patch.model_dump().items() if v is not None}
        if "status" in changes and not can_transition(doc.get("status", "new"), changes["status"]):
            raise ValidationError(f"Cannot change status from {doc.get('status')} to {changes['status']}")
        for field in ("assigned_to", "notes"):
            if field in changes:
                changes[field] = changes[field].strip()
        if changes:
            changes["updated_at"] = now()
            self.enquiries.update_one({"_id": doc["_id"]}, {"$set": changes})
            doc.update(changes)
        return self._public(doc)

    def append_message(self, enquiry_id: str, payload: Union[MessageCreate, dict]) -> dict:
        try:
            payload = payload if isinstance(payload, MessageCreate) else MessageCreate.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError("Validation error", e.errors(include_url=False))
        text = (payload.message or "").strip()
        if not text:
            raise ValidationError("Message is required")
        doc = self._find(enquiry_id)
        message = EnquiryMessage(
            enquiry_id=str(doc["_id"]),
            sender=payload.sender,
            channel=payload.channel,
            message=text,
            created_by=payload.created_by.strip(),
        )
        new_id = create_document("enquirymessage", message, self.db)
        return serialize_doc(self.messages.find_one({"_id": oid(new_id)}))

    def list(self, status: Optional[str] = None, priority: Optional[str] = None,
             assigned_to: Optional[str] = None, category: Optional[str] = None,
             search: Optional[str] = None, limit: int = 50, skip: int = 0) -> Dict[str, Any]:
        query: Dict[str, Any] = {"committed": True}
        if status:
            query["status"] = status
        if priority:
            query["priority"] = priority
        if assigned_to:
            query["assigned_to"] = assigned_to
        if category:
            query["categories"] = category
        if search:
            pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
            customer_ids = [
                str(c["_id"])
                for c in self.customers.find(
                    {"$or": [{"name": pattern}, {"email": pattern}, {"phone": pattern}, {"company_name": pattern}]},
                    {"_id": 1},
                )
            ]
            query["$or"] = [
                {"message": pattern},
                {"public_id": pattern},
                {"notes": pattern},
                {"customer_id": {"$in": customer_ids}},
            ]

        limit = max(1, min(int(limit), 200))
        skip = max(0, int(skip))
        cursor = self.enquiries.find(query).sort([("created_at", -1), ("_id", -1)]).skip(skip).limit(limit)
        return {
            "enquiries": [self._public(d) for d in cursor],
            "total": self.enquiries.count_documents(query),
            "limit": limit,
            "skip": skip,
            "statusCounts": {s: self.enquiries.count_documents({"committed": True, "status": s}) for s in STATUSES},
        }
