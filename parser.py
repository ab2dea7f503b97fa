#!/usr/bin/env python3
"""
Conversation export parser - loads trees and picks the path to render

Reads conversations.json from an extracted export directory or a .zip
export, validates every conversation into a ConversationTree, and walks a
tree down to the single branch the user currently sees.
"""
import json
import tempfile
import zipfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from schemas import ConversationTree, Node

CONVERSATIONS_FILE = "conversations.json"


class StructuralError(Exception):
    """Raised when a conversation tree has no root, a cycle, or a dangling child."""
    pass


class ArchiveError(Exception):
    """Raised when the export is missing or has no conversations.json."""
    pass


def timestamp_to_iso(ts: float | None) -> str | None:
    """Convert Unix timestamp to ISO format string"""
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    except (ValueError, OSError, OverflowError):
        return None


# =============================================================================
# MAIN PATH
# =============================================================================

def find_root_id(mapping: dict[str, Node]) -> str:
    """Return the id of the parentless node."""
    for node_id, node in mapping.items():
        if node.parent is None:
            return node_id
    raise StructuralError("Conversation tree has no root node")


def _own_timestamp(node: Node) -> float:
    if node.message is not None and node.message.create_time is not None:
        return float(node.message.create_time)
    return 0.0


def latest_timestamp(mapping: dict[str, Node], node_id: str,
                     memo: dict[str, float] | None = None) -> float:
    """
    Most recent timestamp in the subtree below node_id.

    A node with children takes the max over its children; a leaf uses its
    own message time, or 0 when it has none. Walks with an explicit stack
    so deep conversations don't hit the recursion limit.
    """
    if memo is None:
        memo = {}
    if node_id in memo:
        return memo[node_id]

    stack = [(node_id, False)]
    ancestors = set()

    while stack:
        current, finished = stack.pop()
        if finished:
            ancestors.discard(current)
            node = mapping[current]
            if node.children:
                memo[current] = max(memo[child] for child in node.children)
            else:
                memo[current] = _own_timestamp(node)
            continue

        if current in memo:
            continue
        if current in ancestors:
            raise StructuralError(f"Cycle detected at node {current}")
        node = mapping.get(current)
        if node is None:
            raise StructuralError(f"Node {current} is referenced but missing from the mapping")

        ancestors.add(current)
        stack.append((current, True))
        for child in node.children:
            if child in ancestors:
                raise StructuralError(f"Cycle detected at node {child}")
            stack.append((child, False))

    return memo[node_id]


def main_path(mapping: dict[str, Node], start_id: str | None = None) -> list[str]:
    """
    Walk from the root (or start_id) to a leaf and return the node ids
    visited, excluding the start node.

    At a fork the child whose subtree was touched most recently wins;
    ties go to the first child in the export's order.
    """
    current = start_id if start_id is not None else find_root_id(mapping)
    if current not in mapping:
        raise StructuralError(f"Start node {current} is missing from the mapping")

    memo: dict[str, float] = {}
    visited = {current}
    path = []

    while True:
        children = mapping[current].children
        if not children:
            break

        chosen = children[0]
        if len(children) > 1:
            best = latest_timestamp(mapping, chosen, memo)
            for child in children[1:]:
                ts = latest_timestamp(mapping, child, memo)
                if ts > best:
                    chosen, best = child, ts

        if chosen not in mapping:
            raise StructuralError(f"Node {chosen} is referenced but missing from the mapping")
        if chosen in visited:
            raise StructuralError(f"Cycle detected at node {chosen}")

        visited.add(chosen)
        path.append(chosen)
        current = chosen

    return path


# =============================================================================
# EXPORT LOADING
# =============================================================================

@contextmanager
def open_export(input_path: Path) -> Iterator[Path]:
    """
    Yield the directory holding an export.

    A directory is used as is; a zip is extracted into a temporary
    directory that is removed when the block exits.
    """
    input_path = Path(input_path)
    if not input_path.exists():
        raise ArchiveError(f"Export not found: {input_path}")

    if input_path.is_dir():
        yield input_path
        return

    if not zipfile.is_zipfile(input_path):
        raise ArchiveError(f"Not a zip archive or directory: {input_path}")

    with tempfile.TemporaryDirectory(prefix="chatgpt-export-") as tmpdir:
        with zipfile.ZipFile(input_path) as zf:
            zf.extractall(tmpdir)
        yield Path(tmpdir)


def find_conversations_file(export_dir: Path) -> Path:
    """Locate conversations.json at the export root or in a wrapping folder."""
    direct = export_dir / CONVERSATIONS_FILE
    if direct.is_file():
        return direct

    candidates = sorted(export_dir.rglob(CONVERSATIONS_FILE))
    if candidates:
        return candidates[0]

    raise ArchiveError(f"No {CONVERSATIONS_FILE} found in {export_dir}")


def load_conversations(export_dir: Path) -> list[ConversationTree]:
    """
    Load and validate every conversation in the export.
    Returns trees oldest first (missing create_time sorts as 0).
    """
    conversations_path = find_conversations_file(Path(export_dir))

    try:
        with open(conversations_path, 'r', encoding='utf-8') as f:
            raw_data = json.load(f)
    except json.JSONDecodeError as e:
        raise ArchiveError(f"{conversations_path} is not valid JSON: {e}") from e

    if not isinstance(raw_data, list):
        raise ArchiveError(f"Expected a list of conversations in {conversations_path}")

    trees = []
    for i, raw in enumerate(raw_data):
        if not isinstance(raw, dict):
            raise StructuralError(f"Conversation #{i} is not an object")
        try:
            trees.append(ConversationTree.from_export(raw))
        except ValidationError as e:
            title = raw.get('title') or raw.get('conversation_id') or raw.get('id') or f'#{i}'
            raise StructuralError(f"Invalid conversation '{title}': {e}") from e

    return sorted(trees, key=lambda t: t.create_time or 0.0)
