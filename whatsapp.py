"""
WhatsApp deep links.

Pure string builders: nothing here sends a message or performs I/O.
"""
import re
from typing import Iterable, Mapping, Optional
from urllib.parse import quote

import config

_NON_DIGITS = re.compile(r"\D")


def digits(value: Optional[str]) -> str:
    return _NON_DIGITS.sub("", value or "")


def build_deep_link(phone: str, message: str = "") -> str:
    link = f"https://wa.me/{digits(phone)}"
    if message:
        link += f"?text={quote(message, safe='')}"
    return link


def business_link(message: str = "") -> str:
    """Link that opens a chat with the business number."""
    return build_deep_link(config.PUBLIC_CHANNEL_NUMBER, message)


def customer_link(phone: Optional[str], message: str = "") -> str:
    """Link an admin uses to reply to a customer; '#' when the phone is unknown."""
    if not digits(phone):
        return "#"
    return build_deep_link(phone, message)


def render_enquiry_message(public_id: str, items: Iterable[Mapping], name: Optional[str] = None,
                           user_type: str = "unknown", message: str = "") -> str:
    lines = ["Hi, I'm interested in the following products.", "", f"Enquiry ID: {public_id}"]
    if name:
        lines.append(f"Name: {name}")
    lines.append(f"Type: {'Business' if user_type == 'business' else 'Customer'}")
    lines.append("")

    items = list(items)
    if items:
        lines.append("Products:")
        for index, item in enumerate(items, start=1):
            quantity = int(item.get("quantity") or 1)
            suffix = f" (Qty: {quantity})" if quantity > 1 else ""
            lines.append(f"{index}. {item.get('product_name')}{suffix}")

    text = "\n".join(lines)
    if message:
        text += f"\n\nMessage: {message}"
    return text + "\n\nPlease assist."
