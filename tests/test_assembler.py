"""
Tests for assembler.py - Document assembly from conversation trees.
"""
import pytest

from assembler import (
    ConversionError,
    assemble_conversation,
    merge_process_blocks,
)
from renderer import MessageRenderer, RenderedBlock
from schemas import ConversationTree


def _text(*parts) -> dict:
    return {"content_type": "text", "parts": list(parts)}


def test_sample_conversation_document(sample_chatgpt_conversation, sample_config):
    """Test frontmatter and body for a forked conversation."""
    tree = ConversationTree.from_export(sample_chatgpt_conversation)
    doc = assemble_conversation(tree, MessageRenderer(), sample_config)

    assert doc.conversation_id == "conv-task-manager"
    assert list(doc.frontmatter) == [
        "title", "created", "updated", "conversation_id", "conversation_url", "models"
    ]
    assert doc.frontmatter["created"] == "2023-12-22T20:00:00+00:00"
    assert doc.frontmatter["updated"] == "2023-12-22T21:00:00+00:00"
    assert doc.frontmatter["conversation_url"] == "https://chatgpt.com/c/conv-task-manager"
    assert doc.frontmatter["models"] == ["gpt-4o"]
    assert doc.body == (
        "# User\n"
        "Hello, I want to build a task manager app\n"
        "\n"
        "# ChatGPT\n"
        "> [!model] gpt-4o\n"
        "\n"
        "That's a great idea! What features are you thinking?\n"
        "\n"
        "# User\n"
        "I want priorities, due dates, and tags\n"
        "\n"
        "# ChatGPT\n"
        "Here's how you could structure that...\n"
    )
    assert "Just priorities" not in doc.body


def test_custom_timestamp_keys(sample_chatgpt_conversation, sample_config):
    """Test that the timestamp key names come from the config."""
    config = {**sample_config, "created_key": "date", "updated_key": "modified"}
    tree = ConversationTree.from_export(sample_chatgpt_conversation)
    doc = assemble_conversation(tree, MessageRenderer(), config)

    assert list(doc.frontmatter)[1:3] == ["date", "modified"]
    assert doc.frontmatter["date"] == "2023-12-22T20:00:00+00:00"


def test_models_only_from_main_path(sample_chatgpt_conversation, sample_config):
    """Test that models on abandoned branches are not listed."""
    sample_chatgpt_conversation["mapping"]["msg4a"]["message"]["metadata"] = {"model_slug": "o1-preview"}
    sample_chatgpt_conversation["mapping"]["msg5"]["message"]["metadata"] = {"model_slug": "gpt-4o-mini"}
    tree = ConversationTree.from_export(sample_chatgpt_conversation)

    doc = assemble_conversation(tree, MessageRenderer(), sample_config)
    assert doc.frontmatter["models"] == ["gpt-4o", "gpt-4o-mini"]


def test_same_role_shares_heading(make_tree, sample_config):
    """Test that a user message followed by context gets a single heading."""
    tree = make_tree([
        {"role": "user", "content": _text("Hi")},
        {"role": "user", "content": {"content_type": "user_editable_context", "user_profile": "x"}},
    ])
    doc = assemble_conversation(tree, MessageRenderer(), sample_config)
    assert doc.body == (
        "# User\n"
        "Hi\n"
        "\n"
        "> [!context]- Custom instructions\n"
        "> **About me**\n"
        "> x\n"
    )


def test_adjacent_process_blocks_merged(make_tree, sample_config):
    """Test that a run of process blocks shares one Thoughts container."""
    tree = make_tree([
        {"role": "user", "content": _text("Q")},
        {"role": "assistant", "content": {"content_type": "thoughts", "thoughts": [{"summary": "Plan"}]}},
        {"role": "assistant", "content": {"content_type": "code", "language": "python", "text": "x"},
         "recipient": "python"},
        {"role": "assistant", "content": _text("Done")},
    ])
    doc = assemble_conversation(tree, MessageRenderer(), sample_config)

    assert doc.body.count("[!thoughts]") == 1
    assert doc.body == (
        "# User\n"
        "Q\n"
        "\n"
        "# ChatGPT\n"
        "> [!thoughts]- Thoughts\n"
        "> **Plan**\n"
        ">\n"
        "> > [!code]- python\n"
        "> > ```python\n"
        "> > x\n"
        "> > ```\n"
        "\n"
        "Done\n"
    )


def test_merge_process_blocks():
    """Test folding a continuation into the previous container."""
    first = RenderedBlock("process", "> [!thoughts]- Thoughts\n> **A**")
    second = RenderedBlock("process", "> [!thoughts]- Thoughts\n> > [!recap] Thought for 2 seconds")

    merged = merge_process_blocks(first, second)

    assert merged.kind == "process"
    assert merged.text == (
        "> [!thoughts]- Thoughts\n"
        "> **A**\n"
        ">\n"
        "> > [!recap] Thought for 2 seconds"
    )


def test_unsupported_content_becomes_conversion_error(make_tree, sample_config):
    """Test that rendering failures carry the conversation title."""
    tree = make_tree([{"role": "assistant", "content": {"content_type": "hologram"}}], title="Weird Chat")
    with pytest.raises(ConversionError) as exc_info:
        assemble_conversation(tree, MessageRenderer(), sample_config)
    assert exc_info.value.title == "Weird Chat"
    assert "Weird Chat" in str(exc_info.value)


def test_structural_error_becomes_conversion_error(sample_config):
    """Test that a tree without a root fails with the conversation title."""
    tree = ConversationTree.model_validate({
        "conversation_id": "c1",
        "title": "Loop",
        "mapping": {
            "a": {"parent": "b", "children": ["b"]},
            "b": {"parent": "a", "children": ["a"]},
        },
    })
    with pytest.raises(ConversionError, match="Loop"):
        assemble_conversation(tree, MessageRenderer(), sample_config)


def test_missing_timestamps(make_conversation, sample_config):
    """Test that absent conversation times stay None."""
    raw = make_conversation([{"role": "user", "content": _text("Hi")}])
    raw["create_time"] = None
    raw["update_time"] = None
    doc = assemble_conversation(ConversationTree.from_export(raw), MessageRenderer(), sample_config)

    assert doc.frontmatter["created"] is None
    assert doc.frontmatter["updated"] is None


def test_empty_conversation(make_tree, sample_config):
    """Test that a conversation with nothing visible has an empty body."""
    doc = assemble_conversation(make_tree([]), MessageRenderer(), sample_config)
    assert doc.body == ""
    assert doc.frontmatter["models"] == []
