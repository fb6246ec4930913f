"""
Typed payloads exchanged with MCP servers.

Remote responses are parsed into these models at the protocol boundary, so
malformed tool definitions or unknown content shapes are rejected there
instead of travelling further as raw dictionaries.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Generic, List, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

T = TypeVar("T")

_JSON_TYPES: Dict[str, tuple] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
    "null": (type(None),),
}


def _matches_json_type(value: Any, json_type: str) -> bool:
    expected = _JSON_TYPES.get(json_type)
    if expected is None:
        # Unknown type keywords are not enforced
        return True
    if json_type in ("number", "integer") and isinstance(value, bool):
        return False
    return isinstance(value, expected)


class PropertySchema(BaseModel):
    """Constraints on one tool argument."""

    model_config = ConfigDict(extra="allow")

    type: Optional[Union[str, List[str]]] = None
    description: Optional[str] = None
    enum: Optional[List[Any]] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    items: Optional["PropertySchema"] = None

    def problem_with(self, name: str, value: Any) -> Optional[str]:
        """
        Describe why ``value`` violates this schema, or return None.
        """
        if self.type is not None:
            allowed = [self.type] if isinstance(self.type, str) else self.type
            if not any(_matches_json_type(value, t) for t in allowed):
                return f"Argument '{name}' must be of type {' | '.join(allowed)}"

        if self.enum is not None and value not in self.enum:
            return f"Argument '{name}' must be one of {self.enum}"

        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if self.minimum is not None and value < self.minimum:
                return f"Argument '{name}' must be >= {self.minimum:g}"
            if self.maximum is not None and value > self.maximum:
                return f"Argument '{name}' must be <= {self.maximum:g}"

        if self.items is not None and isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                problem = self.items.problem_with(f"{name}[{index}]", item)
                if problem:
                    return problem

        return None


class ToolInputSchema(BaseModel):
    """JSON-schema subset describing a tool's arguments."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: Literal["object"] = "object"
    properties: Dict[str, PropertySchema] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)
    additional_properties: Optional[bool] = Field(default=None, alias="additionalProperties")

    def argument_problems(self, arguments: Dict[str, Any]) -> List[Dict[str, str]]:
        """
        Check ``arguments`` against the schema.

        Missing required keys are reported first, in schema order, followed by
        type/enum/range violations and unexpected keys.

        Returns:
            A list of ``{"argument", "reason", "message"}`` dicts; empty when valid.
        """
        problems: List[Dict[str, str]] = []

        for key in self.required:
            if key not in arguments:
                problems.append(
                    {
                        "argument": key,
                        "reason": "missing",
                        "message": f"Missing required argument: {key}",
                    }
                )

        for key, value in arguments.items():
            prop = self.properties.get(key)
            if prop is None:
                if self.additional_properties is False:
                    problems.append(
                        {
                            "argument": key,
                            "reason": "unexpected",
                            "message": f"Unexpected argument: {key}",
                        }
                    )
                continue
            message = prop.problem_with(key, value)
            if message:
                problems.append({"argument": key, "reason": "invalid", "message": message})

        return problems


class ToolDefinition(BaseModel):
    """A tool advertised by a server through ``tools/list``."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    description: Optional[str] = None
    input_schema: ToolInputSchema = Field(default_factory=ToolInputSchema, alias="inputSchema")


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageContent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["image"] = "image"
    data: str
    mime_type: str = Field(alias="mimeType")


class ResourceContents(BaseModel):
    """Body of a resource, either textual or base64 ``blob``."""

    model_config = ConfigDict(populate_by_name=True)

    uri: str
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    text: Optional[str] = None
    blob: Optional[str] = None


class ResourceContent(BaseModel):
    type: Literal["resource"] = "resource"
    resource: ResourceContents


ContentBlock = Annotated[
    Union[TextContent, ImageContent, ResourceContent], Field(discriminator="type")
]
content_blocks_adapter = TypeAdapter(List[ContentBlock])


class ToolError(BaseModel):
    """Structured failure placed in results instead of raising."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    details: Optional[Any] = None


class ExecutionContext(BaseModel):
    """Caller-supplied context attached to a tool call."""

    session_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ToolResultMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool_name: str
    server_name: str
    session_id: str
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    context: Optional[ExecutionContext] = None


class ToolResult(BaseModel):
    """
    Outcome of a tool call. Always returned, never raised.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    content: List[ContentBlock] = Field(default_factory=list)
    error: Optional[ToolError] = None
    execution_time_ms: Optional[float] = None
    metadata: Optional[ToolResultMetadata] = None

    def text(self) -> str:
        """Concatenate the text blocks of the result."""
        return "\n".join(block.text for block in self.content if isinstance(block, TextContent))


class Resource(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    uri: str
    name: str
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    size: Optional[int] = None


class PromptArgument(BaseModel):
    name: str
    description: Optional[str] = None
    required: bool = False


class Prompt(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    description: Optional[str] = None
    arguments: List[PromptArgument] = Field(default_factory=list)


class PromptMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: ContentBlock


class PromptResult(BaseModel):
    description: Optional[str] = None
    messages: List[PromptMessage] = Field(default_factory=list)


class OperationResult(BaseModel, Generic[T]):
    """
    Success value or structured error for list/read/get operations.
    """

    success: bool
    value: Optional[T] = None
    error: Optional[ToolError] = None

    @classmethod
    def ok(cls, value: T) -> "OperationResult[T]":
        return cls(success=True, value=value)

    @classmethod
    def failed(cls, error: ToolError) -> "OperationResult[T]":
        return cls(success=False, error=error)
