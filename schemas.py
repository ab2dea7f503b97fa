"""
Pydantic schemas for the ChatGPT export's conversation trees.

These schemas are used both for:
1. Validating conversations.json into typed conversation trees
2. Giving the renderer a closed set of content kinds to dispatch on

Message content is a tagged union keyed on `content_type`. Kinds the
converter has no schema for validate into UnknownContent, so the renderer
(not the loader) decides whether they are an error.
"""
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    PrivateAttr,
    Tag,
    field_validator,
    model_validator,
)


# =============================================================================
# CONTENT PARTS
# =============================================================================

class ImageAssetPointer(BaseModel):
    """An image embedded in a multimodal message."""
    content_type: Literal["image_asset_pointer"] = "image_asset_pointer"
    asset_pointer: str = Field(description="file-service://file-... or sediment://file_...")
    width: Optional[int] = None
    height: Optional[int] = None
    size_bytes: Optional[int] = None


def _part_kind(value: Any) -> str:
    if isinstance(value, str):
        return "text"
    if isinstance(value, ImageAssetPointer):
        return "image"
    if isinstance(value, dict) and value.get("content_type") == "image_asset_pointer":
        return "image"
    return "other"


MessagePart = Annotated[
    Union[
        Annotated[str, Tag("text")],
        Annotated[ImageAssetPointer, Tag("image")],
        Annotated[dict[str, Any], Tag("other")],
    ],
    Discriminator(_part_kind),
]


class Thought(BaseModel):
    """One fragment of a reasoning model's thoughts."""
    summary: Optional[str] = None
    content: Optional[str] = None


class Workspace(BaseModel):
    """An app window shared with the assistant through app pairing."""
    id: Optional[str] = None
    app_name: Optional[str] = None
    title: Optional[str] = None
    textfield: Optional[str] = None


class ContextPart(BaseModel):
    """Captured text belonging to a paired workspace."""
    workspace_id: Optional[str] = None
    text: Optional[str] = None


# =============================================================================
# CONTENT KINDS
# =============================================================================

class TextContent(BaseModel):
    content_type: Literal["text"] = "text"
    parts: list[Optional[str]] = Field(default_factory=list)


class MultimodalTextContent(BaseModel):
    content_type: Literal["multimodal_text"] = "multimodal_text"
    parts: list[MessagePart] = Field(default_factory=list)


class ThoughtsContent(BaseModel):
    content_type: Literal["thoughts"] = "thoughts"
    thoughts: list[Thought] = Field(default_factory=list)


class ReasoningRecapContent(BaseModel):
    content_type: Literal["reasoning_recap"] = "reasoning_recap"
    content: Optional[str] = None


class CodeContent(BaseModel):
    content_type: Literal["code"] = "code"
    language: Optional[str] = None
    text: Optional[str] = None


class ExecutionOutputContent(BaseModel):
    content_type: Literal["execution_output"] = "execution_output"
    text: Optional[str] = None


class WebPageContent(BaseModel):
    """A fetched page: tether_quote (browsing) or sonic_webpage (search)."""
    content_type: Literal["tether_quote", "sonic_webpage"]
    url: Optional[str] = None
    domain: Optional[str] = None
    title: Optional[str] = None
    text: Optional[str] = None


class BrowsingDisplayContent(BaseModel):
    content_type: Literal["tether_browsing_display"] = "tether_browsing_display"
    result: Optional[str] = None
    summary: Optional[str] = None


class AppPairingContent(BaseModel):
    content_type: Literal["app_pairing_content"] = "app_pairing_content"
    workspaces: list[Workspace] = Field(default_factory=list)
    context_parts: list[ContextPart] = Field(default_factory=list)


class UserEditableContextContent(BaseModel):
    """Custom instructions attached to a conversation."""
    content_type: Literal["user_editable_context"] = "user_editable_context"
    user_profile: Optional[str] = None
    user_instructions: Optional[str] = None


class ModelEditableContextContent(BaseModel):
    content_type: Literal["model_editable_context"] = "model_editable_context"
    model_set_context: Optional[str] = None


class SystemErrorContent(BaseModel):
    content_type: Literal["system_error"] = "system_error"
    name: Optional[str] = None
    text: Optional[str] = None


class UnknownContent(BaseModel):
    """Any content_type without a schema. Extra fields are kept for diagnostics."""
    model_config = ConfigDict(extra="allow")

    content_type: str = "unknown"


CONTENT_KINDS = {
    "text", "multimodal_text", "thoughts", "reasoning_recap", "code",
    "execution_output", "tether_browsing_display", "app_pairing_content",
    "user_editable_context", "model_editable_context", "system_error",
}
WEB_PAGE_KINDS = {"tether_quote", "sonic_webpage"}


def _content_kind(value: Any) -> str:
    if isinstance(value, dict):
        kind = value.get("content_type")
    else:
        kind = getattr(value, "content_type", None)
    if kind in WEB_PAGE_KINDS:
        return "web_page"
    if kind in CONTENT_KINDS:
        return kind
    return "unknown"


Content = Annotated[
    Union[
        Annotated[TextContent, Tag("text")],
        Annotated[MultimodalTextContent, Tag("multimodal_text")],
        Annotated[ThoughtsContent, Tag("thoughts")],
        Annotated[ReasoningRecapContent, Tag("reasoning_recap")],
        Annotated[CodeContent, Tag("code")],
        Annotated[ExecutionOutputContent, Tag("execution_output")],
        Annotated[WebPageContent, Tag("web_page")],
        Annotated[BrowsingDisplayContent, Tag("tether_browsing_display")],
        Annotated[AppPairingContent, Tag("app_pairing_content")],
        Annotated[UserEditableContextContent, Tag("user_editable_context")],
        Annotated[ModelEditableContextContent, Tag("model_editable_context")],
        Annotated[SystemErrorContent, Tag("system_error")],
        Annotated[UnknownContent, Tag("unknown")],
    ],
    Discriminator(_content_kind),
]


# =============================================================================
# TREE
# =============================================================================

class Author(BaseModel):
    role: Literal["user", "assistant", "tool", "system"]
    name: Optional[str] = None


class Message(BaseModel):
    """A single message attached to a tree node."""
    id: str
    author: Author
    content: Content
    create_time: Optional[float] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    recipient: Optional[str] = "all"

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_not_null(cls, value):
        return value if value is not None else {}


class Node(BaseModel):
    """A node of the conversation tree. The root carries no message."""
    id: str
    parent: Optional[str] = None
    children: list[str] = Field(default_factory=list)
    message: Optional[Message] = None

    @field_validator("children", mode="before")
    @classmethod
    def _children_not_null(cls, value):
        return value if value is not None else []


class ConversationTree(BaseModel):
    """One exported conversation with its full branching mapping."""
    id: str
    title: str = ""
    create_time: Optional[float] = None
    update_time: Optional[float] = None
    mapping: dict[str, Node] = Field(default_factory=dict)
    current_node: Optional[str] = None
    default_model_slug: Optional[str] = None

    _raw: dict = PrivateAttr(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _from_export_shape(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        data["id"] = data.get("conversation_id") or data.get("id")
        if data.get("title") is None:
            data["title"] = ""
        mapping = data.get("mapping") or {}
        # Node ids are the mapping keys; some exports omit the inner "id"
        data["mapping"] = {
            key: ({**node, "id": node.get("id") or key} if isinstance(node, dict) else node)
            for key, node in mapping.items()
        }
        return data

    @classmethod
    def from_export(cls, raw: dict) -> "ConversationTree":
        """Validate one conversations.json entry, keeping the raw dict for dumps."""
        tree = cls.model_validate(raw)
        tree._raw = raw
        return tree

    @property
    def raw(self) -> dict:
        return self._raw
