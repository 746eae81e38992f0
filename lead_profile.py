"""
Saved lead profile and the enquiry launcher that uses it.

A visitor who has left a phone number once is not asked again: the launcher
submits straight away with the saved details, and "change info" re-opens the
capture step pre-filled. The profile is a convenience, not an identity; it is
stored unencrypted and must never gate anything on the admin side.
"""
import json
import logging
import os
import threading
import time
from collections.abc import MutableMapping
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from enquiries import normalize_phone
from schemas import CartItem, EnquiryContext, LeadInput, LeadProfile, UserType

logger = logging.getLogger(__name__)

STORAGE_KEY = "regal_lead_profile"


class JsonFileStorage(MutableMapping):
    """String key/value storage persisted as one JSON object on disk."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable storage file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh)
        os.replace(tmp, self.path)

    def __getitem__(self, key: str) -> str:
        return self._read()[key]

    def __setitem__(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def __delitem__(self, key: str) -> None:
        with self._lock:
            data = self._read()
            del data[key]
            self._write(data)

    def __iter__(self) -> Iterator[str]:
        return iter(self._read())

    def __len__(self) -> int:
        return len(self._read())


class LeadProfileStore:
    def __init__(self, storage: MutableMapping, key: str = STORAGE_KEY):
        self.storage = storage
        self.key = key

    def get(self) -> Optional[LeadProfile]:
        raw = self.storage.get(self.key)
        if not raw:
            return None
        try:
            return LeadProfile.model_validate_json(raw)
        except PydanticValidationError:
            logger.warning("Discarding corrupt lead profile")
            return None

    def set(self, phone: str, name: Optional[str] = None, user_type: UserType = "unknown") -> LeadProfile:
        profile = LeadProfile(
            phone=normalize_phone(phone),
            name=(name or "").strip() or None,
            user_type=user_type or "unknown",
            saved_at=int(time.time() * 1000),
        )
        self.storage[self.key] = profile.model_dump_json(by_alias=True, exclude_none=True)
        return profile

    def clear(self) -> None:
        self.storage.pop(self.key, None)

    def has_profile(self) -> bool:
        profile = self.get()
        return profile is not None and bool(profile.phone)


class CaptureRequest(BaseModel):
    """The capture form the visitor has to fill before the enquiry is sent."""
    phone: str = ""
    name: str = ""
    user_type: UserType = "unknown"
    has_existing_profile: bool = False
    cart_items: List[CartItem] = Field(default_factory=list)
    context: EnquiryContext = Field(default_factory=EnquiryContext)


class EnquiryLauncher:
    """
    Decides between submitting directly and asking for contact details.

    ``submit`` has the signature of ``EnquiryFunnel.submit``.
    """

    def __init__(self, store: LeadProfileStore, submit: Callable[[List[CartItem], LeadInput, EnquiryContext], Any]):
        self.store = store
        self.submit = submit

    def _capture(self, cart_items, context: EnquiryContext, default_user_type: str) -> CaptureRequest:
        profile = self.store.get()
        user_type = default_user_type
        if profile is not None and default_user_type != "business":
            user_type = "business" if profile.user_type == "business" else "customer"
        return CaptureRequest(
            phone=profile.phone if profile else "",
            name=(profile.name or "") if profile else "",
            user_type=user_type,
            has_existing_profile=profile is not None,
            cart_items=list(cart_items),
            context=context,
        )

    def start(self, cart_items: List[CartItem], context: Optional[EnquiryContext] = None,
              default_user_type: UserType = "unknown"):
        """Submit with the saved profile, or return the ``CaptureRequest`` to show."""
        context = context or EnquiryContext(user_type=default_user_type)
        profile = self.store.get()
        if profile is None or not profile.phone:
            return self._capture(cart_items, context, default_user_type)

        user_type = "business" if default_user_type == "business" else profile.user_type
        lead = LeadInput(phone=profile.phone, name=profile.name)
        return self.submit(list(cart_items), lead, context.model_copy(update={"user_type": user_type}))

    def change_info(self, cart_items: List[CartItem], context: Optional[EnquiryContext] = None,
                    default_user_type: UserType = "unknown") -> CaptureRequest:
        return self._capture(cart_items, context or EnquiryContext(user_type=default_user_type), default_user_type)

    def complete_capture(self, request: CaptureRequest, phone: str, name: Optional[str] = None,
                         is_business: bool = False):
        user_type = "business" if is_business else "customer"
        profile = self.store.set(phone, name, user_type)
        lead = LeadInput(phone=profile.phone, name=profile.name)
        return self.submit(request.cart_items, lead, request.context.model_copy(update={"user_type": user_type}))
