"""
GTM Mapper - tag-manager (GA4 common event format) payloads to submissions
==========================================================================

Server-side tag-manager containers forward GA4-shaped events. This module
translates them into EventSubmission objects so they enter the same
admission pipeline as direct submissions.
"""

from typing import Any, Dict, List, Mapping, Optional

import structlog
from pydantic import ValidationError

from contracts.tracking_schemas import ActionSource, EventName, EventSubmission
from core.exceptions import ValidationFailure

logger = structlog.get_logger()

GA4_EVENT_MAP = {
    "page_view": EventName.PAGE_VIEW,
    "view_item": EventName.VIEW_CONTENT,
    "view_item_list": EventName.VIEW_CONTENT,
    "select_item": EventName.VIEW_CONTENT,
    "add_to_cart": EventName.ADD_TO_CART,
    "add_to_wishlist": EventName.ADD_TO_WISHLIST,
    "begin_checkout": EventName.INITIATE_CHECKOUT,
    "add_payment_info": EventName.ADD_PAYMENT_INFO,
    "add_shipping_info": EventName.ADD_PAYMENT_INFO,
    "purchase": EventName.PURCHASE,
    "sign_up": EventName.COMPLETE_REGISTRATION,
    "generate_lead": EventName.LEAD,
    "search": EventName.SEARCH,
    "contact": EventName.CONTACT,
    "subscribe": EventName.SUBSCRIBE,
    "start_trial": EventName.START_TRIAL,
    "submit_application": EventName.SUBMIT_APPLICATION,
    "schedule": EventName.SCHEDULE,
    "donate": EventName.DONATE,
    "find_location": EventName.FIND_LOCATION,
    "customize_product": EventName.CUSTOMIZE_PRODUCT,
}


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def resolve_event_name(ga4_name: str, custom_mapping: Optional[Mapping[str, str]] = None):
    """
    GA4 name → (standard name, custom name)

    `custom_mapping` may map a GA4 name to a standard name or to any custom
    event name.
    """
    if ga4_name in GA4_EVENT_MAP:
        return GA4_EVENT_MAP[ga4_name].value, None

    mapped = (custom_mapping or {}).get(ga4_name)
    if mapped and EventName.is_standard(mapped):
        return mapped, None
    return EventName.CUSTOM.value, mapped or ga4_name


def build_user_data(payload: Mapping[str, Any]) -> Dict[str, Any]:
    user = _as_dict(payload.get("user_data"))
    address = _as_dict(user.get("address"))

    raw = {
        "em": _first(user.get("email_address"), user.get("email"), user.get("em"), payload.get("user_email")),
        "ph": _first(user.get("phone_number"), user.get("phone"), user.get("ph"), payload.get("user_phone")),
        "fn": _first(user.get("first_name"), user.get("fn"), address.get("first_name")),
        "ln": _first(user.get("last_name"), user.get("ln"), address.get("last_name")),
        "ge": _first(user.get("gender"), user.get("ge")),
        "db": _first(user.get("date_of_birth"), user.get("db")),
        "ct": _first(user.get("city"), user.get("ct"), address.get("city")),
        "st": _first(user.get("region"), user.get("state"), user.get("st"),
                     address.get("region"), address.get("state")),
        "zp": _first(user.get("postal_code"), user.get("zip"), user.get("zp"),
                     address.get("postal_code"), address.get("zip")),
        "country": _first(user.get("country"), user.get("country_code"),
                          address.get("country"), address.get("country_code")),
        "external_id": _first(user.get("external_id"), payload.get("user_id"), payload.get("client_id")),
        "client_ip_address": _first(payload.get("ip_override"), payload.get("ip_address"), payload.get("client_ip")),
        "client_user_agent": payload.get("user_agent"),
        "fbc": _first(payload.get("fbc"), user.get("fbc")),
        "fbp": _first(payload.get("fbp"), user.get("fbp")),
    }
    return {key: value for key, value in raw.items() if value is not None}


def build_custom_data(payload: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    ecommerce = _as_dict(payload.get("ecommerce"))
    items = ecommerce.get("items") if isinstance(ecommerce.get("items"), list) else payload.get("items")
    items = [item for item in (items or []) if isinstance(item, dict)]

    content_ids: List[str] = []
    contents: List[Dict[str, Any]] = []
    num_items = 0
    for item in items:
        item_id = _first(item.get("item_id"), item.get("id"), item.get("item_name"))
        if item_id is not None:
            content_ids.append(str(item_id))
        quantity = int(item.get("quantity") or 1)
        content = {"id": str(item_id or ""), "quantity": quantity}
        if item.get("price") is not None:
            content["item_price"] = float(item["price"])
        contents.append(content)
        num_items += quantity

    value = _first(payload.get("value"), payload.get("revenue"), ecommerce.get("value"))
    currency = _first(payload.get("currency"), ecommerce.get("currency"))

    if value is None and contents:
        total = sum(c.get("item_price", 0.0) * c["quantity"] for c in contents)
        value = total or None

    search_string = _first(payload.get("search_term"), payload.get("search_string"))
    order_id = _first(payload.get("transaction_id"), payload.get("order_id"))

    if value is None and not currency and not content_ids and not search_string and not order_id:
        return None

    first_item = items[0] if items else {}
    custom = {
        "value": float(value) if value is not None else None,
        "currency": str(currency) if currency else None,
        "content_name": _first(first_item.get("item_name"), payload.get("content_name")),
        "content_category": _first(first_item.get("item_category"), payload.get("content_category")),
        "content_ids": content_ids or None,
        "contents": contents or None,
        "content_type": "product" if content_ids else None,
        "order_id": str(order_id) if order_id is not None else None,
        "num_items": num_items or None,
        "search_string": search_string,
    }
    return {key: value for key, value in custom.items() if value is not None}


def map_gtm_event(
    payload: Mapping[str, Any],
    surface_id: str,
    custom_mapping: Optional[Mapping[str, str]] = None,
) -> EventSubmission:
    """
    Translate one tag-manager event into an EventSubmission

    Raises:
        ValidationFailure: empty payload, missing surface or page URL, or a
            payload that does not form a valid submission
    """
    if not payload:
        raise ValidationFailure("Tag-manager event payload is empty")
    if not surface_id:
        raise ValidationFailure("Surface id is required for tag-manager events")

    ga4_name = str(_first(payload.get("event_name"), payload.get("event")) or "page_view")
    event_name, custom_event_name = resolve_event_name(ga4_name, custom_mapping)

    source_url = _first(
        payload.get("event_source_url"),
        payload.get("page_location"),
        payload.get("page_url"),
        payload.get("document_location"),
    )
    if not source_url:
        raise ValidationFailure(
            "Tag-manager event has no page URL",
            details={"expected": ["page_location", "page_url", "event_source_url"]},
        )

    action_source = payload.get("action_source")
    if action_source not in ActionSource._value2member_map_:
        action_source = ActionSource.WEBSITE.value

    event_time = payload.get("event_time")
    event_id = _first(payload.get("event_id"), payload.get("transaction_id"))
    visitor_id = _first(payload.get("client_id"), payload.get("visitor_id"))
    try:
        return EventSubmission(
            surface_id=surface_id,
            event_name=event_name,
            custom_event_name=custom_event_name,
            action_source=action_source,
            source_url=source_url,
            event_id=str(event_id) if event_id is not None else None,
            event_time=int(event_time) if event_time is not None else None,
            visitor_id=str(visitor_id) if visitor_id is not None else None,
            user_data=build_user_data(payload),
            custom_data=build_custom_data(payload),
        )
    except (ValidationError, ValueError, TypeError) as e:
        logger.info("gtm_payload_rejected", ga4_event=ga4_name, error=str(e))
        raise ValidationFailure("Tag-manager event is not a valid submission") from e
