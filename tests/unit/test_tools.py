import pytest

from colloquy.tools import (
    Tool,
    ToolCallResult,
    _build_parameters_schema,
    _parse_param_descriptions,
    tool,
)


# ---------------------------------------------------------------------------
# Schema generation (_build_parameters_schema)
# ---------------------------------------------------------------------------


class TestBuildParametersSchema:
    def test_python_types_map_to_json_schema_types(self):
        def func(a: str, b: int, c: float, d: bool, e: list, f: dict):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["a"]["type"] == "string"
        assert schema["properties"]["b"]["type"] == "integer"
        assert schema["properties"]["c"]["type"] == "number"
        assert schema["properties"]["d"]["type"] == "boolean"
        assert schema["properties"]["e"]["type"] == "array"
        assert schema["properties"]["f"]["type"] == "object"

    def test_generic_aliases_use_their_origin(self):
        def func(tags: list[str], meta: dict[str, int]):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["tags"]["type"] == "array"
        assert schema["properties"]["meta"]["type"] == "object"

    def test_context_param_excluded(self):
        def func(context, query: str):
            pass

        schema, _ = _build_parameters_schema(func)
        assert "context" not in schema["properties"]
        assert "query" in schema["properties"]

    def test_optional_params_not_required(self):
        def func(name: str, greeting: str = "hi"):
            pass

        schema, required = _build_parameters_schema(func)
        assert required == ["name"]
        assert schema["required"] == ["name"]

    def test_no_required_key_when_everything_optional(self):
        def func(greeting: str = "hi"):
            pass

        schema, _ = _build_parameters_schema(func)
        assert "required" not in schema

    def test_unannotated_param_defaults_to_string(self):
        def func(x):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["x"]["type"] == "string"


# ---------------------------------------------------------------------------
# Docstring param description parsing (_parse_param_descriptions)
# ---------------------------------------------------------------------------


class TestParseParamDescriptions:
    def test_google_style(self):
        doc = """Do something.

        Args:
            name: The user's name.
            age: The user's age.
        """
        assert _parse_param_descriptions(doc) == {
            "name": "The user's name.",
            "age": "The user's age.",
        }

    def test_google_style_with_type_in_docstring(self):
        doc = """Do something.

        Args:
            name (str): The user's name.
            age (int): The user's age.
        """
        assert _parse_param_descriptions(doc) == {
            "name": "The user's name.",
            "age": "The user's age.",
        }

    def test_multiline_description(self):
        doc = """Search.

        Args:
            query: The search query string.
                Supports wildcards.
        """
        assert _parse_param_descriptions(doc) == {
            "query": "The search query string. Supports wildcards.",
        }

    def test_stops_at_next_section(self):
        doc = """Search.

        Args:
            query: The query.

        Returns:
            result: Not a parameter.
        """
        assert _parse_param_descriptions(doc) == {"query": "The query."}

    def test_no_docstring(self):
        assert _parse_param_descriptions(None) == {}

    def test_docstring_without_args_section(self):
        assert _parse_param_descriptions("Just a summary.") == {}


# ---------------------------------------------------------------------------
# @tool decorator and Tool.model_dump
# ---------------------------------------------------------------------------


class TestToolDecorator:
    def test_bare_decorator(self):
        @tool
        def greet(name: str):
            """Say hello.

            Longer explanation that is not part of the description.
            """
            return f"Hello {name}"

        assert isinstance(greet, Tool)
        assert greet.name == "greet"
        assert greet.description == "Say hello."

    def test_descriptions_flow_into_schema(self):
        @tool
        def search(query: str, max_results: int = 10):
            """Search the knowledge base.

            Args:
                query: The search query string.
                max_results: Maximum results to return.
            """

        params = search.model_dump()["function"]["parameters"]["properties"]
        assert params["query"]["description"] == "The search query string."
        assert params["max_results"]["description"] == "Maximum results to return."

    def test_wants_context(self, sample_tool):
        @tool
        def stateful(context, query: str):
            """Uses context."""

        assert stateful.wants_context
        assert not sample_tool.wants_context


def test_tool_model_dump_openai_format():
    @tool
    def greet(name: str):
        """Say hello."""

    assert greet.model_dump() == {
        "type": "function",
        "function": {
            "name": "greet",
            "description": "Say hello.",
            "parameters": {
                "type": "object",
                "properties": {"name": {"type": "string"}},
                "required": ["name"],
            },
        },
    }


# ---------------------------------------------------------------------------
# Tool.__call__: sync/async dispatch and output type
# ---------------------------------------------------------------------------


class TestToolCall:
    @pytest.mark.asyncio
    async def test_sync_function(self):
        @tool
        def add(a: int, b: int):
            """Add numbers."""
            return a + b

        result = await add(a=2, b=3)
        assert isinstance(result, ToolCallResult)
        assert result.tool_name == "add"
        assert result.output == 5

    @pytest.mark.asyncio
    async def test_async_function(self, sample_async_tool):
        result = await sample_async_tool(name="Ada")
        assert result.tool_name == "async_greet"
        assert result.output == "Hello async Ada"

    @pytest.mark.asyncio
    async def test_output_preserves_type(self):
        @tool
        def get_data():
            """Return structured data."""
            return {"key": [1, 2, 3]}

        result = await get_data()
        assert result.output == {"key": [1, 2, 3]}
