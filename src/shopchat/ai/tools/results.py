"""Defensive decoding and typed result models for tool-execution responses.

The tool-execution service answers with loosely shaped JSON. Some backends
double-encode it (a JSON string holding a JSON document) and some wrap it in
MCP-style ``{"content": [{"type": "text", "text": "..."}]}`` envelopes.
``decode_payload`` folds all of those into one plain value before a
per-tool pydantic model checks its shape.
"""

from __future__ import annotations

import json
from typing import Any, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, model_validator


def safe_json_parse(value: Any) -> Any:
    """Parse *value* if it is a JSON string; unwrap one level of double encoding.

    Already-parsed values and strings that are not JSON come back unchanged.
    """
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        return value
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return value

    if isinstance(parsed, str):
        inner = parsed.strip()
        if (inner.startswith("{") and inner.endswith("}")) or (inner.startswith("[") and inner.endswith("]")):
            try:
                return json.loads(inner)
            except json.JSONDecodeError:
                return parsed
    return parsed


def _unwrap_content_envelope(value: Any) -> Any:
    if not isinstance(value, dict) or set(value) - {"content", "isError"}:
        return value
    items = value.get("content")
    if not isinstance(items, list):
        return value
    texts = [item.get("text", "") for item in items if isinstance(item, dict) and item.get("type") == "text"]
    if not texts:
        return value
    return safe_json_parse("\n".join(texts))


def decode_payload(value: Any) -> Any:
    """Normalize a raw service payload into plain Python data."""
    decoded = safe_json_parse(value)
    decoded = _unwrap_content_envelope(decoded)
    if isinstance(decoded, dict) and "result" in decoded and len(decoded) == 1:
        decoded = safe_json_parse(decoded["result"])
    return decoded


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class Product(_Lenient):
    id: Optional[str] = None
    title: Optional[str] = None
    price: Optional[Any] = None
    url: Optional[str] = None
    image_url: Optional[str] = None
    variant_id: Optional[str] = None


class CatalogSearchResult(_Lenient):
    products: list[Product] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_list(cls, data: Any) -> Any:
        if isinstance(data, list):
            return {"products": data}
        return data


class PolicyEntry(_Lenient):
    title: Optional[str] = None
    text: Optional[str] = None
    url: Optional[str] = None


class PolicySearchResult(_Lenient):
    answers: list[PolicyEntry] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_list(cls, data: Any) -> Any:
        if isinstance(data, list):
            return {"answers": data}
        if isinstance(data, str):
            return {"answers": [{"text": data}]}
        return data


class CartLine(_Lenient):
    variant_id: Optional[str] = None
    quantity: int = 0
    title: Optional[str] = None


class CartResult(_Lenient):
    id: Optional[str] = None
    lines: list[CartLine] = Field(default_factory=list)
    total: Optional[Any] = None
    checkout_url: Optional[str] = None


class OrderStatusResult(_Lenient):
    order_id: Optional[str] = Field(default=None, alias="id")
    status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    tracking_url: Optional[str] = None


def to_typed(value: Any, model: Optional[Type[BaseModel]]) -> Any:
    """Validate decoded *value* against *model*; raises pydantic.ValidationError on a bad shape."""
    if model is None:
        return value
    return model.model_validate(value).model_dump(exclude_none=True)
