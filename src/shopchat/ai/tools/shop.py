"""Built-in storefront tools: catalog search, cart, orders and policies."""

from __future__ import annotations

from shopchat.ai.tools.base import ToolSchema
from shopchat.ai.tools.results import (
    CartResult,
    CatalogSearchResult,
    OrderStatusResult,
    PolicySearchResult,
)

SEARCH_SHOP_CATALOG = ToolSchema(
    name="search_shop_catalog",
    description=(
        "Search the shop catalog by product attributes and customer preferences "
        "(type, metal, stones). Use only for finding products."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "query": {
                "type": "object",
                "description": "Structured product entities extracted from the customer's request.",
                "properties": {
                    "type": {"type": "string", "description": "Kind of item, e.g. 'ring', 'necklace'."},
                    "metal": {"type": "string", "description": "Metal, e.g. 'platinum', 'yellow gold'."},
                    "stones": {"type": "string", "description": "Stone kind or count; 'solitaire' for one stone."},
                    "fair_trade": {"type": "boolean", "description": "Restrict to fair-trade certified products."},
                },
                "required": ["type"],
            },
            "context": {
                "type": "string",
                "description": "One sentence on the customer's style or occasion.",
            },
        },
        "required": ["query"],
    },
    result_model=CatalogSearchResult,
)

SEARCH_SHOP_POLICIES = ToolSchema(
    name="search_shop_policies_and_faqs",
    description="Search shop policies and FAQs (returns, shipping, warranty). Not for product questions.",
    input_schema={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Policy question, e.g. 'return policy'."},
            "context": {"type": "string"},
        },
        "required": ["query"],
    },
    result_model=PolicySearchResult,
)

GET_CART = ToolSchema(
    name="get_cart",
    description="Fetch the customer's current cart. Needed before changing or summarizing it. Takes no parameters.",
    input_schema={"type": "object", "properties": {}},
    result_model=CartResult,
)

UPDATE_CART = ToolSchema(
    name="update_cart",
    description="Add or remove products in the customer's cart. Requires variant ids and quantities.",
    input_schema={
        "type": "object",
        "properties": {
            "cart_id": {
                "type": "string",
                "description": "Current cart id. Use 'CURRENT' when it is not known explicitly.",
            },
            "lines": {
                "type": "array",
                "description": "Lines to add (quantity >= 1) or remove (quantity 0).",
                "items": {
                    "type": "object",
                    "properties": {
                        "variant_id": {"type": "string"},
                        "quantity": {"type": "integer", "minimum": 0},
                    },
                    "required": ["variant_id", "quantity"],
                },
                "minItems": 1,
            },
        },
        "required": ["cart_id", "lines"],
    },
    result_model=CartResult,
)

GET_ORDER_STATUS = ToolSchema(
    name="get_order_status",
    description="Fetch status and details of one order by its id or number.",
    input_schema={
        "type": "object",
        "properties": {"order_id": {"type": "string"}},
        "required": ["order_id"],
    },
    result_model=OrderStatusResult,
)

GET_MOST_RECENT_ORDER_STATUS = ToolSchema(
    name="get_most_recent_order_status",
    description="Fetch the status of the current customer's most recent order. Takes no parameters.",
    input_schema={"type": "object", "properties": {}},
    result_model=OrderStatusResult,
)

BUILTIN_TOOLS: tuple[ToolSchema, ...] = (
    SEARCH_SHOP_CATALOG,
    SEARCH_SHOP_POLICIES,
    GET_CART,
    UPDATE_CART,
    GET_ORDER_STATUS,
    GET_MOST_RECENT_ORDER_STATUS,
)
