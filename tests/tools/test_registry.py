"""Tests for tools.registry and the Tool/ToolDeclaration protocol in tools.base.

Run with:
    python -m pytest tests/tools/test_registry.py -v
"""

from typing import List, Optional

import pytest
from pydantic import Field

from tools import build_default_registry
from tools.base import (
    InvalidParameters,
    Tool,
    ToolInvocation,
    ToolInvocationResult,
    ToolParams,
)
from tools.registry import ToolRegistry


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class EchoParams(ToolParams):
    text: str = Field(description="Text to echo back")
    times: int = Field(default=1, ge=1, description="Repeat count")
    tags: Optional[List[str]] = Field(default=None, description="Optional tags")


class EchoInvocation(ToolInvocation):
    def describe(self):
        return f"Echo {self.params.text!r}"

    async def execute(self, cancel=None, on_output=None):
        return ToolInvocationResult(content=self.params.text * self.params.times)


class EchoTool(Tool):
    name = "echo"
    display_name = "Echo"
    description = "Echo text back"
    params_model = EchoParams
    read_only = True

    def build(self, params):
        return EchoInvocation(params)


class OtherEchoTool(EchoTool):
    description = "A replacement echo"


class WriterTool(EchoTool):
    name = "writer"
    read_only = False


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

class TestRegistration:
    def test_register_and_get_declaration(self):
        registry = ToolRegistry()
        registry.register(EchoTool())
        decl = registry.get("echo")
        assert decl is not None
        assert decl.name == "echo"
        assert decl.display_name == "Echo"

    def test_get_unknown_returns_none(self):
        registry = ToolRegistry()
        assert registry.get("missing") is None
        assert registry.get_tool("missing") is None

    def test_replacement_keeps_insertion_slot(self):
        registry = ToolRegistry([EchoTool(), WriterTool()])
        registry.register(OtherEchoTool())
        assert registry.names() == ["echo", "writer"]
        assert registry.get("echo").description == "A replacement echo"
        assert len(registry) == 2

    def test_nameless_tool_rejected(self):
        class Nameless(EchoTool):
            name = ""

        with pytest.raises(ValueError):
            ToolRegistry().register(Nameless())

    def test_contains_and_iter(self):
        registry = ToolRegistry([EchoTool(), WriterTool()])
        assert "echo" in registry
        assert "nope" not in registry
        assert [t.name for t in registry] == ["echo", "writer"]

    def test_read_only_view(self):
        registry = ToolRegistry([EchoTool(), WriterTool()])
        view = registry.read_only_view()
        assert view.names() == ["echo"]
        # Original registry untouched
        assert registry.names() == ["echo", "writer"]


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------

class TestDeclarations:
    def test_export_shape(self):
        registry = ToolRegistry([EchoTool()])
        exported = registry.export_declarations()
        assert exported == [{
            "name": "echo",
            "description": "Echo text back",
            "parameters": {
                "type": "object",
                "properties": {
                    "text": {"type": "string", "description": "Text to echo back"},
                    "times": {"type": "integer", "description": "Repeat count"},
                    "tags": {"type": "array", "description": "Optional tags", "items": {"type": "string"}},
                },
                "required": ["text"],
            },
        }]

    def test_export_preserves_registry_order(self):
        registry = ToolRegistry([WriterTool(), EchoTool()])
        assert [d["name"] for d in registry.export_declarations()] == ["writer", "echo"]


# ---------------------------------------------------------------------------
# Parameter validation
# ---------------------------------------------------------------------------

class TestValidateParams:
    def test_valid_dict(self):
        params = EchoTool().validate_params({"text": "hi", "times": 2})
        assert params.text == "hi"
        assert params.times == 2

    def test_json_string_accepted(self):
        params = EchoTool().validate_params('{"text": "hi"}')
        assert params.text == "hi"

    def test_wrong_type_rejected(self):
        with pytest.raises(InvalidParameters) as exc:
            EchoTool().validate_params({"text": "hi", "times": "3"})
        assert "times" in str(exc.value)

    def test_missing_required_rejected(self):
        with pytest.raises(InvalidParameters):
            EchoTool().validate_params({})

    def test_unknown_key_rejected(self):
        with pytest.raises(InvalidParameters):
            EchoTool().validate_params({"text": "hi", "bogus": 1})

    def test_bad_json_rejected(self):
        with pytest.raises(InvalidParameters):
            EchoTool().validate_params("{not json")

    def test_non_object_rejected(self):
        with pytest.raises(InvalidParameters):
            EchoTool().validate_params(["text"])

    @pytest.mark.asyncio
    async def test_create_invocation_runs(self):
        invocation = EchoTool().create_invocation({"text": "ab", "times": 2})
        result = await invocation.execute()
        assert result.success
        assert result.content == "abab"


# ---------------------------------------------------------------------------
# Default registry
# ---------------------------------------------------------------------------

class TestDefaultRegistry:
    def test_builtin_tools_in_order(self, tmp_path):
        registry = build_default_registry(tmp_path)
        assert registry.names() == [
            "read_file", "write_file", "edit_file", "shell", "lint_file", "code_outline",
        ]

    def test_read_only_tools(self, tmp_path):
        view = build_default_registry(tmp_path).read_only_view()
        assert view.names() == ["read_file", "lint_file", "code_outline"]

    def test_separate_registries_are_independent(self, tmp_path):
        a = build_default_registry(tmp_path)
        b = build_default_registry(tmp_path)
        a.register(EchoTool())
        assert "echo" in a
        assert "echo" not in b
