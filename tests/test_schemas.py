"""
Tests for schemas.py - Export validation models.
"""
import pytest
from pydantic import ValidationError

from schemas import (
    CodeContent,
    ConversationTree,
    ImageAssetPointer,
    Message,
    TextContent,
    UnknownContent,
    WebPageContent,
)


def _message(content: dict, **extra) -> Message:
    return Message.model_validate({
        "id": "m1",
        "author": {"role": "assistant"},
        "content": content,
        **extra,
    })


def test_text_content():
    """Test that text content validates into TextContent."""
    message = _message({"content_type": "text", "parts": ["Hello", None]})
    assert isinstance(message.content, TextContent)
    assert message.content.parts == ["Hello", None]


def test_code_content():
    """Test that code content keeps language and text."""
    message = _message({"content_type": "code", "language": "python", "text": "print(1)"})
    assert isinstance(message.content, CodeContent)
    assert message.content.language == "python"


@pytest.mark.parametrize("kind", ["tether_quote", "sonic_webpage"])
def test_web_page_kinds(kind):
    """Test that both fetched-page kinds share one model."""
    message = _message({"content_type": kind, "url": "https://example.com", "domain": "example.com"})
    assert isinstance(message.content, WebPageContent)
    assert message.content.content_type == kind


def test_unknown_content_kind():
    """Test that unrecognized kinds load instead of failing validation."""
    message = _message({"content_type": "hologram", "payload": {"x": 1}})
    assert isinstance(message.content, UnknownContent)
    assert message.content.content_type == "hologram"
    assert message.content.model_extra["payload"] == {"x": 1}


def test_multimodal_parts():
    """Test that multimodal parts split into text, images and other dicts."""
    message = _message({
        "content_type": "multimodal_text",
        "parts": [
            "caption",
            {"content_type": "image_asset_pointer", "asset_pointer": "file-service://file-abc"},
            {"content_type": "audio_transcription", "text": "spoken"},
        ],
    })
    parts = message.content.parts
    assert parts[0] == "caption"
    assert isinstance(parts[1], ImageAssetPointer)
    assert parts[1].asset_pointer == "file-service://file-abc"
    assert parts[2]["text"] == "spoken"


def test_message_defaults():
    """Test that null metadata and missing recipient get defaults."""
    message = _message({"content_type": "text", "parts": []}, metadata=None)
    assert message.metadata == {}
    assert message.recipient == "all"


def test_invalid_role_rejected():
    """Test that an unknown author role fails validation."""
    with pytest.raises(ValidationError):
        Message.model_validate({
            "id": "m1",
            "author": {"role": "narrator"},
            "content": {"content_type": "text", "parts": []},
        })


def test_conversation_tree_from_export(sample_chatgpt_conversation):
    """Test that a raw export conversation validates and keeps its raw dict."""
    tree = ConversationTree.from_export(sample_chatgpt_conversation)

    assert tree.id == "conv-task-manager"
    assert tree.title == "Task Manager App"
    assert tree.mapping["msg3"].children == ["msg4a", "msg4b"]
    assert tree.mapping["root"].message is None
    assert tree.raw is sample_chatgpt_conversation


def test_conversation_tree_id_fallbacks():
    """Test id fallback, null title and node ids taken from mapping keys."""
    tree = ConversationTree.model_validate({
        "id": "plain-id",
        "title": None,
        "mapping": {"root": {"parent": None, "children": None}},
    })
    assert tree.id == "plain-id"
    assert tree.title == ""
    assert tree.mapping["root"].id == "root"
    assert tree.mapping["root"].children == []
