"""
Shared pytest fixtures for converter tests.
"""
import json
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from config import DEFAULT_CONFIG
from schemas import ConversationTree, Node


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_config() -> dict:
    """Default configuration, as a fresh copy."""
    return dict(DEFAULT_CONFIG)


@pytest.fixture
def make_node():
    """Factory for a single validated Node holding one message."""
    def _make(role: str, content: dict, node_id: str = "n1", metadata: dict = None,
              recipient: str = "all", name: str = None, create_time: float = None) -> Node:
        return Node.model_validate({
            "id": node_id,
            "parent": "root",
            "children": [],
            "message": {
                "id": node_id,
                "author": {"role": role, "name": name},
                "content": content,
                "create_time": create_time,
                "metadata": metadata or {},
                "recipient": recipient,
            },
        })
    return _make


@pytest.fixture
def make_conversation():
    """
    Factory for a raw, unbranched conversation dict.

    Each message is a dict with "role" and "content", optionally "metadata",
    "recipient" and "name".
    """
    def _make(messages: list[dict], conv_id: str = "conv-1", title: str = "Test Conversation",
              create_time: float = 1703275200.0, update_time: float = 1703278800.0) -> dict:
        mapping = {"root": {"id": "root", "parent": None, "children": [], "message": None}}
        parent = "root"
        for i, msg in enumerate(messages, 1):
            node_id = f"{conv_id}-n{i}"
            mapping[parent]["children"].append(node_id)
            mapping[node_id] = {
                "id": node_id,
                "parent": parent,
                "children": [],
                "message": {
                    "id": node_id,
                    "author": {"role": msg["role"], "name": msg.get("name")},
                    "content": msg["content"],
                    "create_time": create_time + i,
                    "metadata": msg.get("metadata", {}),
                    "recipient": msg.get("recipient", "all"),
                },
            }
            parent = node_id
        return {
            "conversation_id": conv_id,
            "title": title,
            "create_time": create_time,
            "update_time": update_time,
            "mapping": mapping,
            "current_node": parent,
        }
    return _make


@pytest.fixture
def make_tree(make_conversation):
    """Like make_conversation, but validated into a ConversationTree."""
    def _make(*args, **kwargs) -> ConversationTree:
        return ConversationTree.from_export(make_conversation(*args, **kwargs))
    return _make


@pytest.fixture
def sample_chatgpt_conversation() -> dict:
    """Sample ChatGPT conversation export with an edited (forked) user message."""
    return {
        "conversation_id": "conv-task-manager",
        "title": "Task Manager App",
        "create_time": 1703275200.0,
        "update_time": 1703278800.0,
        "mapping": {
            "root": {
                "id": "root",
                "message": None,
                "parent": None,
                "children": ["msg1"]
            },
            "msg1": {
                "id": "msg1",
                "message": {
                    "id": "msg1",
                    "author": {"role": "system"},
                    "content": {"content_type": "text", "parts": [""]},
                    "create_time": None,
                    "metadata": {"is_visually_hidden_from_conversation": True}
                },
                "parent": "root",
                "children": ["msg2"]
            },
            "msg2": {
                "id": "msg2",
                "message": {
                    "id": "msg2",
                    "author": {"role": "user"},
                    "content": {"content_type": "text", "parts": ["Hello, I want to build a task manager app"]},
                    "create_time": 1703275260.0
                },
                "parent": "msg1",
                "children": ["msg3"]
            },
            "msg3": {
                "id": "msg3",
                "message": {
                    "id": "msg3",
                    "author": {"role": "assistant"},
                    "content": {"content_type": "text", "parts": ["That's a great idea! What features are you thinking?"]},
                    "create_time": 1703275320.0,
                    "metadata": {"model_slug": "gpt-4o"}
                },
                "parent": "msg2",
                "children": ["msg4a", "msg4b"]
            },
            "msg4a": {
                "id": "msg4a",
                "message": {
                    "id": "msg4a",
                    "author": {"role": "user"},
                    "content": {"content_type": "text", "parts": ["Just priorities"]},
                    "create_time": 1703275380.0
                },
                "parent": "msg3",
                "children": []
            },
            "msg4b": {
                "id": "msg4b",
                "message": {
                    "id": "msg4b",
                    "author": {"role": "user"},
                    "content": {"content_type": "text", "parts": ["I want priorities, due dates, and tags"]},
                    "create_time": 1703275400.0
                },
                "parent": "msg3",
                "children": ["msg5"]
            },
            "msg5": {
                "id": "msg5",
                "message": {
                    "id": "msg5",
                    "author": {"role": "assistant"},
                    "content": {"content_type": "text", "parts": ["Here's how you could structure that..."]},
                    "create_time": 1703275440.0,
                    "metadata": {"model_slug": "gpt-4o"}
                },
                "parent": "msg4b",
                "children": []
            }
        },
        "current_node": "msg5"
    }


@pytest.fixture
def sample_export(temp_dir, sample_chatgpt_conversation) -> Path:
    """An extracted export folder with one conversation and one attachment."""
    export_dir = temp_dir / "export"
    export_dir.mkdir()
    with open(export_dir / "conversations.json", 'w', encoding='utf-8') as f:
        json.dump([sample_chatgpt_conversation], f)
    (export_dir / "file-img123-photo.png").write_bytes(b"\x89PNG fake image bytes")
    return export_dir
