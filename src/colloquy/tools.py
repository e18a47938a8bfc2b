import inspect
import json
import re
from typing import Any, Callable

from pydantic import BaseModel, Field

# Parameters injected by the ToolRunner rather than supplied by the model.
_INJECTED_PARAMS = ("context",)

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
}


class LLMRecoverableError(Exception):
    """Raise from a tool to hand an explanatory message back to the model.

    The message becomes the tool result instead of an error, so the model
    can correct its arguments and try again.
    """


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


def _parse_param_descriptions(docstring: str | None) -> dict[str, str]:
    """Pull ``name: description`` pairs out of a Google-style ``Args:`` block."""
    if not docstring:
        return {}
    descriptions: dict[str, str] = {}
    in_args = False
    indent = None
    current = None
    for line in inspect.cleandoc(docstring).splitlines():
        if re.match(r"^(Args|Arguments|Parameters):\s*$", line):
            in_args = True
            continue
        if not in_args or not line.strip():
            continue
        depth = len(line) - len(line.lstrip())
        if depth == 0:
            break
        if indent is None:
            indent = depth
        match = re.match(r"^(\w+)(?:\s*\([^)]*\))?:\s*(.*)$", line.strip())
        if depth == indent and match:
            current = match.group(1)
            descriptions[current] = match.group(2).strip()
        elif current:
            descriptions[current] = f"{descriptions[current]} {line.strip()}".strip()
    return descriptions


def _json_type(annotation: Any) -> str:
    if annotation is inspect.Parameter.empty:
        return "string"
    origin = getattr(annotation, "__origin__", None)
    return _JSON_TYPES.get(origin or annotation, "string")


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    signature = inspect.signature(func)
    descriptions = _parse_param_descriptions(func.__doc__)
    properties: dict[str, dict] = {}
    required: list[str] = []
    for name, param in signature.parameters.items():
        if name in _INJECTED_PARAMS:
            continue
        prop = {"type": _json_type(param.annotation)}
        if name in descriptions:
            prop["description"] = descriptions[name]
        properties[name] = prop
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema, required


def _summary(docstring: str | None) -> str:
    if not docstring:
        return ""
    return inspect.cleandoc(docstring).split("\n\n")[0].strip()


class Tool(BaseModel):
    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict = Field(default_factory=lambda: {
        "type": "object", "properties": {},
    })
    model_config = {"arbitrary_types_allowed": True}

    def model_dump(self, **kwargs):
        """Return the OpenAI function schema instead of internal attributes."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    def model_dump_json(self, **kwargs):
        return json.dumps(self.model_dump())

    @property
    def wants_context(self) -> bool:
        return "context" in inspect.signature(self.func).parameters

    async def __call__(self, **kwargs) -> ToolCallResult:
        output = self.func(**kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)


def tool(func: Callable) -> Tool:
    """Turn a plain (sync or async) function into a :class:`Tool`.

    The schema comes from the signature; parameter descriptions come from
    the docstring's ``Args:`` section.  A ``context`` parameter is filled
    in at execution time and hidden from the model.
    """
    schema, _ = _build_parameters_schema(func)
    return Tool(
        func=func,
        name=func.__name__,
        description=_summary(func.__doc__),
        parameters_schema=schema,
    )
