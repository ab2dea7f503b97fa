"""
Turns one conversation tree into a Markdown document body plus the
frontmatter generated for it.
"""
from dataclasses import dataclass, field
from typing import Optional

from blocks import QUOTE, BlockAccumulator
from parser import StructuralError, main_path, timestamp_to_iso
from renderer import (
    PROCESS_LABEL,
    PROCESS_TAG,
    MessageRenderer,
    RenderedBlock,
    UnsupportedContentError,
)
from schemas import ConversationTree

PROCESS_WRAPPER = f"{QUOTE}[!{PROCESS_TAG}]- {PROCESS_LABEL}"

ROLE_HEADERS = {
    "user": "User",
    "context": "User",
    "process": "ChatGPT",
    "response": "ChatGPT",
}


class ConversionError(Exception):
    """A conversation could not be converted. Aborts the run."""

    def __init__(self, title: str, cause: Exception):
        self.title = title
        self.cause = cause
        super().__init__(f"Failed to convert '{title or '(untitled)'}': {cause}")


@dataclass
class Document:
    """An assembled conversation, ready to be synchronised to disk."""
    conversation_id: str
    title: str
    frontmatter: dict = field(default_factory=dict)
    body: str = ""
    date_keys: tuple = ()


def merge_process_blocks(first: RenderedBlock, second: RenderedBlock) -> RenderedBlock:
    """
    Fold an adjacent process block into the previous one.

    The continuation loses its own Thoughts wrapper line; the rest of it is
    already one level inside a wrapper, so it lands inside the first block's
    container after a quoted blank line.
    """
    lines = second.text.split("\n")
    if lines and lines[0].rstrip() == PROCESS_WRAPPER:
        lines = lines[1:]

    merged = BlockAccumulator()
    merged.write(first.text)
    if any(line.strip() for line in lines):
        continuation = merged.nested()
        continuation.write("\n".join(lines))
        merged.write(QUOTE.rstrip())
        continuation.commit()
    return RenderedBlock("process", merged.getvalue())


def collect_models(tree: ConversationTree, path: list[str]) -> list[str]:
    """Distinct model slugs along the rendered path, first-seen order."""
    models = []
    for node_id in path:
        message = tree.mapping[node_id].message
        if message is None:
            continue
        slug = message.metadata.get("model_slug")
        if slug and slug not in models:
            models.append(slug)
    return models


def render_blocks(tree: ConversationTree, path: list[str],
                  renderer: MessageRenderer) -> list[RenderedBlock]:
    """Render the path, merging runs of adjacent process blocks."""
    blocks = []
    for node_id in path:
        block = renderer.render(tree.mapping[node_id])
        if block is None:
            continue
        if blocks and blocks[-1].kind == "process" and block.kind == "process":
            blocks[-1] = merge_process_blocks(blocks[-1], block)
        else:
            blocks.append(block)
    return blocks


def compose_body(blocks: list[RenderedBlock]) -> str:
    """Join blocks, adding a role heading whenever the speaker changes."""
    doc = BlockAccumulator()
    current_role = None

    for block in blocks:
        role = ROLE_HEADERS[block.kind]
        doc.separate()
        if role != current_role:
            doc.write(f"# {role}")
            current_role = role
        doc.write(block.text)

    body = doc.getvalue()
    return body + "\n" if body else ""


def build_frontmatter(tree: ConversationTree, models: list[str], config: dict) -> dict:
    return {
        "title": tree.title,
        config["created_key"]: timestamp_to_iso(tree.create_time),
        config["updated_key"]: timestamp_to_iso(tree.update_time),
        "conversation_id": tree.id,
        "conversation_url": f"{config['conversation_url_base']}{tree.id}",
        "models": models,
    }


def assemble_conversation(tree: ConversationTree, renderer: Optional[MessageRenderer],
                          config: dict) -> Document:
    """
    Build the Document for one conversation.

    Raises:
        ConversionError: the tree is malformed or holds content with no rendering rule
    """
    if renderer is None:
        renderer = MessageRenderer()

    try:
        path = main_path(tree.mapping)
        blocks = render_blocks(tree, path, renderer)
    except (StructuralError, UnsupportedContentError) as e:
        raise ConversionError(tree.title, e) from e

    return Document(
        conversation_id=tree.id,
        title=tree.title,
        frontmatter=build_frontmatter(tree, collect_models(tree, path), config),
        body=compose_body(blocks),
        date_keys=(config["created_key"], config["updated_key"]),
    )
