from __future__ import annotations

import pytest
from jsonschema.exceptions import SchemaError

from shopchat.ai.conversation import build_tool_system_prompt
from shopchat.ai.tools.base import ToolSchema
from shopchat.ai.tools.registry import ToolRegistry
from shopchat.errors import ToolValidationError


def test_builtin_tools_are_registered(registry: ToolRegistry) -> None:
    assert registry.names() == [
        "search_shop_catalog",
        "search_shop_policies_and_faqs",
        "get_cart",
        "update_cart",
        "get_order_status",
        "get_most_recent_order_status",
    ]


def test_subset_by_names_and_empty_means_all(registry: ToolRegistry) -> None:
    assert [t.name for t in registry.get_tools_by_names(["get_cart", "nope"])] == ["get_cart"]
    assert len(registry.get_tools_by_names([])) == 6


def test_require_unknown_tool_raises(registry: ToolRegistry) -> None:
    with pytest.raises(ToolValidationError) as exc:
        registry.require("delete_everything")
    assert exc.value.tool == "delete_everything"


def test_update_cart_arguments_are_checked(registry: ToolRegistry) -> None:
    tool = registry.require("update_cart")
    tool.validate_arguments({"cart_id": "CURRENT", "lines": [{"variant_id": "v1", "quantity": 2}]})

    with pytest.raises(ToolValidationError, match="lines"):
        tool.validate_arguments({"cart_id": "CURRENT", "lines": []})
    with pytest.raises(ToolValidationError, match="quantity"):
        tool.validate_arguments({"cart_id": "CURRENT", "lines": [{"variant_id": "v1", "quantity": -1}]})
    with pytest.raises(ToolValidationError, match="cart_id"):
        tool.validate_arguments({"lines": [{"variant_id": "v1", "quantity": 1}]})


def test_catalog_query_requires_type(registry: ToolRegistry) -> None:
    tool = registry.require("search_shop_catalog")
    tool.validate_arguments({"query": {"type": "ring", "metal": "platinum"}})

    with pytest.raises(ToolValidationError):
        tool.validate_arguments({"query": {"metal": "platinum"}})


def test_arguments_must_be_an_object(registry: ToolRegistry) -> None:
    with pytest.raises(ToolValidationError, match="must be an object"):
        registry.require("get_cart").validate_arguments(["x"])


def test_invalid_schema_is_rejected_at_construction() -> None:
    with pytest.raises(SchemaError):
        ToolSchema(name="broken", description="", input_schema={"type": "no-such-type"})


def test_tool_prompt_lists_tools_and_call_syntax(registry: ToolRegistry) -> None:
    prompt = build_tool_system_prompt(registry.all_tools())

    assert '<|call|>{"name": "tool_name"' in prompt
    assert "### update_cart" in prompt
    assert "Required: cart_id, lines" in prompt
    assert "### get_cart" in prompt
    assert build_tool_system_prompt([]) == ""
