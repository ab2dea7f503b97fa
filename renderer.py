"""
Per-message Markdown rendering.

MessageRenderer turns one node of the main path into at most one
RenderedBlock. Which rule runs is decided by the (author role,
content_type) pair; a pair without a rule stops the whole run with
UnsupportedContentError instead of quietly dropping content.

Side content (thoughts, searches, fetched pages, tool output) is rendered
as Obsidian callouts inside a collapsible "Thoughts" container:

    > [!thoughts]- Thoughts
    > > [!search]- Searched 2 sites
    > > example.com, example.org
"""
import filecmp
import json
import re
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional
from urllib.parse import quote, urlparse

from blocks import BlockAccumulator
from citations import CitationResolver, link_url
from schemas import ImageAssetPointer, Message, Node

BlockKind = Literal["user", "context", "process", "response"]

PROCESS_TAG = "thoughts"
PROCESS_LABEL = "Thoughts"

# Internal agents whose messages never show up in the ChatGPT UI
BOOKKEEPING_AGENTS = {
    "bio",
    "canmore.create_textdoc",
    "canmore.update_textdoc",
    "canmore.comment_textdoc",
}

WEB_TOOL_RECIPIENTS = {"web", "web.run", "web.search", "browser"}


# =============================================================================
# EXCEPTIONS
# =============================================================================

class UnsupportedContentError(Exception):
    """Raised for a (role, content_type) pair the renderer has no rule for."""

    def __init__(self, node: Node, reason: str = ""):
        self.node = node.model_dump(mode="json")
        message = node.message
        role = message.author.role if message else None
        kind = message.content.content_type if message else None
        super().__init__(
            reason or f"Unsupported content in node {node.id}: role={role}, content_type={kind}"
        )


@dataclass
class RenderedBlock:
    """Rendered text of one message plus the output type it belongs to."""
    kind: BlockKind
    text: str


# =============================================================================
# ATTACHMENTS
# =============================================================================

def attachment_id_from_pointer(asset_pointer: str) -> Optional[str]:
    """
    file-service://file-AbC123 -> file-AbC123
    sediment://file_00000000abc -> file_00000000abc
    """
    if not asset_pointer:
        return None
    if "://" in asset_pointer:
        asset_pointer = asset_pointer.split("://", 1)[1]
    return asset_pointer.strip("/") or None


class AttachmentStore:
    """
    Finds `<attachment-id>-<original-name>` files in the export and copies
    them into the output's attachments folder.
    """

    def __init__(self, archive_dir: Optional[Path], output_dir: Path,
                 attachments_dir: str = "attachments"):
        self.archive_dir = Path(archive_dir) if archive_dir else None
        self.output_dir = Path(output_dir)
        self.attachments_dir = attachments_dir
        self.copied = 0
        self.missing = 0
        self._files: Optional[list[Path]] = None

    def _archive_files(self) -> list[Path]:
        if self._files is None:
            if self.archive_dir is None or not self.archive_dir.exists():
                self._files = []
            else:
                self._files = sorted(p for p in self.archive_dir.rglob("*") if p.is_file())
        return self._files

    def find(self, attachment_id: str) -> Optional[Path]:
        prefix = f"{attachment_id}-"
        for path in self._archive_files():
            if path.name.startswith(prefix) or path.stem == attachment_id:
                return path
        return None

    def link_for(self, asset_pointer: str) -> Optional[tuple[str, str]]:
        """
        Copy the attachment into the output and return (display name, relative link).
        Returns None (with a warning) when the export doesn't contain the file.
        """
        attachment_id = attachment_id_from_pointer(asset_pointer)
        source = self.find(attachment_id) if attachment_id else None
        if source is None:
            print(f"Warning: attachment {attachment_id or asset_pointer!r} not found in export",
                  file=sys.stderr)
            self.missing += 1
            return None

        dest_dir = self.output_dir / self.attachments_dir
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / source.name
        if not (dest.exists() and filecmp.cmp(source, dest, shallow=False)):
            shutil.copy2(source, dest)
            self.copied += 1

        name = source.name[len(attachment_id) + 1:] if source.name.startswith(f"{attachment_id}-") \
            else source.name
        return name or source.name, f"{self.attachments_dir}/{quote(source.name)}"


# =============================================================================
# HELPERS
# =============================================================================

def extract_search_queries(text: str) -> list[str]:
    """Pull the queries out of a web tool call (JSON or legacy search("...") form)."""
    if not text:
        return []
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        data = None

    if not isinstance(data, dict):
        return [q for q in re.findall(r'search\(\s*"((?:[^"\\]|\\.)*)"', text) if q]

    queries = []
    for item in data.get("search_query") or []:
        if isinstance(item, dict) and item.get("q"):
            queries.append(str(item["q"]))
        elif isinstance(item, str) and item:
            queries.append(item)
    for item in data.get("queries") or []:
        if isinstance(item, str) and item:
            queries.append(item)
    for key in ("query", "q"):
        if isinstance(data.get(key), str) and data[key]:
            queries.append(data[key])
    return queries


def _clean(text: Optional[str]) -> str:
    return (text or "").strip()


def _fenced(acc: BlockAccumulator, body: str, language: str = "") -> None:
    fence = "````" if "```" in body else "```"
    acc.write(f"{fence}{language}")
    acc.write(body.rstrip("\n"))
    acc.write(fence)


# =============================================================================
# RENDERER
# =============================================================================

class MessageRenderer:
    """
    Renders the nodes of one conversation, in main-path order.

    Keeps the last announced model so a response only gets a model line
    when the model changes.
    """

    RULES = {
        ("user", "text"): "_render_user_text",
        ("user", "multimodal_text"): "_render_user_text",
        ("user", "app_pairing_content"): "_render_app_pairing",
        ("user", "user_editable_context"): "_render_editable_context",
        ("system", "user_editable_context"): "_render_editable_context",
        ("system", "text"): "_render_system_text",
        ("assistant", "text"): "_render_assistant_text",
        ("assistant", "multimodal_text"): "_render_assistant_text",
        ("assistant", "thoughts"): "_render_thoughts",
        ("assistant", "reasoning_recap"): "_render_recap",
        ("assistant", "code"): "_render_code",
        ("assistant", "tether_quote"): "_render_web_page",
        ("assistant", "sonic_webpage"): "_render_web_page",
        ("assistant", "model_editable_context"): "_skip",
        ("tool", "text"): "_render_tool_text",
        ("tool", "tether_browsing_display"): "_render_browsing_display",
        ("tool", "tether_quote"): "_render_web_page",
        ("tool", "sonic_webpage"): "_render_web_page",
        ("tool", "execution_output"): "_render_execution_output",
        ("tool", "multimodal_text"): "_render_tool_images",
        ("tool", "system_error"): "_render_system_error",
        ("tool", "model_editable_context"): "_skip",
    }

    def __init__(self, attachments: Optional[AttachmentStore] = None):
        self.attachments = attachments
        self.last_model: Optional[str] = None

    def render(self, node: Node) -> Optional[RenderedBlock]:
        """Render one node, or return None when it has nothing visible."""
        message = node.message
        if message is None:
            return None
        if message.metadata.get("is_visually_hidden_from_conversation"):
            return None
        if message.author.name in BOOKKEEPING_AGENTS or message.recipient in BOOKKEEPING_AGENTS:
            return None

        rule = self.RULES.get((message.author.role, message.content.content_type))
        if rule is None:
            raise UnsupportedContentError(node)
        return getattr(self, rule)(node, message)

    # -------------------------------------------------------------------------
    # parts
    # -------------------------------------------------------------------------

    def _parts_to_lines(self, message: Message, citations: Optional[CitationResolver] = None) -> list[str]:
        """Text parts (citations resolved) and image embeds, in their original order."""
        lines = []
        for part in getattr(message.content, "parts", []):
            if isinstance(part, str):
                text = citations.resolve(part) if citations else part
                if text.strip():
                    lines.append(text)
            elif isinstance(part, ImageAssetPointer):
                embed = self._image_embed(part)
                if embed:
                    lines.append(embed)
            elif isinstance(part, dict) and isinstance(part.get("text"), str) and part["text"].strip():
                # audio transcriptions and similar carry their text inline
                lines.append(part["text"])
        return lines

    def _image_embed(self, part: ImageAssetPointer) -> Optional[str]:
        if self.attachments is None:
            attachment_id = attachment_id_from_pointer(part.asset_pointer)
            print(f"Warning: attachment {attachment_id or part.asset_pointer!r} not found in export",
                  file=sys.stderr)
            return None
        found = self.attachments.link_for(part.asset_pointer)
        if found is None:
            return None
        name, link = found
        return f"![{name}]({link})"

    # -------------------------------------------------------------------------
    # user / context
    # -------------------------------------------------------------------------

    def _render_user_text(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        text = "\n".join(self._parts_to_lines(message)).strip()
        if not text:
            return None
        return RenderedBlock("user", text)

    def _render_app_pairing(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        content = message.content
        texts_by_workspace: dict[Optional[str], list[str]] = {}
        for part in content.context_parts:
            if part.text and part.text.strip():
                texts_by_workspace.setdefault(part.workspace_id, []).append(part.text.rstrip())

        acc = BlockAccumulator()
        for i, workspace in enumerate(content.workspaces):
            texts = list(texts_by_workspace.get(workspace.id, []))
            if i == 0:
                # parts without a workspace id belong to the only/first window
                texts = texts_by_workspace.get(None, []) + texts
            if workspace.textfield and workspace.textfield.strip():
                texts.append(workspace.textfield.rstrip())

            if workspace.app_name and workspace.title:
                heading = f"{workspace.app_name}: {workspace.title}"
            else:
                heading = workspace.title or workspace.app_name or "Workspace"

            acc.separate()
            with acc.callout("context", heading):
                acc.write("\n\n".join(texts))

        if not content.workspaces and texts_by_workspace:
            with acc.callout("context", "App context"):
                acc.write("\n\n".join(t for texts in texts_by_workspace.values() for t in texts))

        text = acc.getvalue()
        return RenderedBlock("context", text) if text else None

    def _render_editable_context(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        profile = _clean(message.content.user_profile)
        instructions = _clean(message.content.user_instructions)
        if not profile and not instructions:
            return None

        acc = BlockAccumulator()
        with acc.callout("context", "Custom instructions"):
            if profile:
                acc.write("**About me**")
                acc.write(profile)
            if profile and instructions:
                acc.write("")
            if instructions:
                acc.write("**Response instructions**")
                acc.write(instructions)
        return RenderedBlock("context", acc.getvalue())

    def _render_system_text(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        if any(_clean(part) for part in message.content.parts):
            raise UnsupportedContentError(node, f"Unexpected visible system message in node {node.id}")
        return None

    # -------------------------------------------------------------------------
    # assistant
    # -------------------------------------------------------------------------

    def _render_assistant_text(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        citations = CitationResolver(message.metadata)
        if message.metadata.get("search_result_groups"):
            return self._render_live_search(message, citations)

        text = "\n".join(self._parts_to_lines(message, citations)).strip()
        if not text:
            return None

        acc = BlockAccumulator()
        model = message.metadata.get("model_slug")
        if model and model != self.last_model:
            with acc.callout("model", model, folded=False):
                pass
            acc.write("")
            self.last_model = model
        acc.write(text)
        return RenderedBlock("response", acc.getvalue())

    def _render_live_search(self, message: Message, citations: CitationResolver) -> RenderedBlock:
        text = "\n".join(self._parts_to_lines(message, citations)).strip()
        acc = BlockAccumulator()
        with acc.callout(PROCESS_TAG, PROCESS_LABEL):
            self._write_search_groups(acc, message.metadata["search_result_groups"])
            if text:
                acc.write("")
                acc.write(text)
        return RenderedBlock("process", acc.getvalue())

    def _render_thoughts(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        fragments = [t for t in message.content.thoughts if _clean(t.summary) or _clean(t.content)]
        if not fragments:
            return None

        acc = BlockAccumulator()
        with acc.callout(PROCESS_TAG, PROCESS_LABEL):
            for i, thought in enumerate(fragments):
                if i:
                    acc.write("")
                if _clean(thought.summary):
                    acc.write(f"**{_clean(thought.summary)}**")
                if _clean(thought.content):
                    acc.write(_clean(thought.content))
        return RenderedBlock("process", acc.getvalue())

    def _render_recap(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        recap = " ".join(_clean(message.content.content).split())
        if not recap:
            return None
        acc = BlockAccumulator()
        with acc.callout(PROCESS_TAG, PROCESS_LABEL):
            with acc.callout("recap", recap, folded=False):
                pass
        return RenderedBlock("process", acc.getvalue())

    def _render_code(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        code = message.content.text or ""
        queries = extract_search_queries(code) if message.recipient in WEB_TOOL_RECIPIENTS else []

        acc = BlockAccumulator()
        if queries:
            with acc.callout(PROCESS_TAG, PROCESS_LABEL):
                with acc.callout("search", "Searching the web"):
                    acc.write(" ".join(f"[{q}]" for q in queries))
            return RenderedBlock("process", acc.getvalue())

        if not code.strip():
            return None
        language = _clean(message.content.language)
        if language in ("", "unknown"):
            language = "python" if message.recipient == "python" else ""
        with acc.callout(PROCESS_TAG, PROCESS_LABEL):
            with acc.callout("code", language or "Code"):
                _fenced(acc, code, language)
        return RenderedBlock("process", acc.getvalue())

    def _render_web_page(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        content = message.content
        url = _clean(content.url)
        title = _clean(content.title)
        body = _clean(content.text)
        if not (url or title or body):
            return None

        domain = _clean(content.domain) or urlparse(url).netloc or "Web page"
        acc = BlockAccumulator()
        with acc.callout(PROCESS_TAG, PROCESS_LABEL):
            with acc.callout("web", domain):
                if url:
                    acc.write(f"**[{title or url}]({link_url(url)})**")
                elif title:
                    acc.write(f"**{title}**")
                if body:
                    if url or title:
                        acc.write("")
                    acc.write(body)
        return RenderedBlock("process", acc.getvalue())

    # -------------------------------------------------------------------------
    # tools
    # -------------------------------------------------------------------------

    def _write_search_groups(self, acc: BlockAccumulator, groups: list) -> None:
        groups = [g for g in groups if isinstance(g, dict)]
        domains = [g.get("domain") or "unknown" for g in groups]
        label = f"Searched {len(domains)} site{'' if len(domains) == 1 else 's'}"

        with acc.callout("search", label):
            acc.write(", ".join(domains))
            for group, domain in zip(groups, domains):
                acc.write("")
                with acc.callout("quote", domain):
                    for entry in group.get("entries") or []:
                        if not isinstance(entry, dict):
                            continue
                        url = entry.get("url")
                        title = _clean(entry.get("title")) or url or "Untitled"
                        acc.write(f"- [{title}]({link_url(url)})" if url else f"- {title}")
                        snippet = " ".join(_clean(entry.get("snippet")).split())
                        if snippet:
                            acc.write(f"  {snippet}")

    def _render_search_results(self, message: Message) -> RenderedBlock:
        acc = BlockAccumulator()
        with acc.callout(PROCESS_TAG, PROCESS_LABEL):
            self._write_search_groups(acc, message.metadata["search_result_groups"])
        return RenderedBlock("process", acc.getvalue())

    def _render_tool_output(self, label: str, text: str) -> RenderedBlock:
        acc = BlockAccumulator()
        with acc.callout(PROCESS_TAG, PROCESS_LABEL):
            with acc.callout("output", label):
                acc.write(text)
        return RenderedBlock("process", acc.getvalue())

    def _render_tool_text(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        if message.metadata.get("search_result_groups"):
            return self._render_search_results(message)
        text = "\n".join(_clean(p) for p in message.content.parts if _clean(p))
        if not text:
            return None
        return self._render_tool_output(message.author.name or "Tool", text)

    def _render_browsing_display(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        if message.metadata.get("search_result_groups"):
            return self._render_search_results(message)
        result = _clean(message.content.result) or _clean(message.content.summary)
        if not result:
            return None
        return self._render_tool_output("Browsing", result)

    def _render_execution_output(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        output = message.content.text or ""
        if not output.strip():
            return None
        acc = BlockAccumulator()
        with acc.callout(PROCESS_TAG, PROCESS_LABEL):
            with acc.callout("output", "Output"):
                _fenced(acc, output)
        return RenderedBlock("process", acc.getvalue())

    def _render_tool_images(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        text = "\n".join(self._parts_to_lines(message)).strip()
        if not text:
            return None
        return RenderedBlock("response", text)

    def _render_system_error(self, node: Node, message: Message) -> Optional[RenderedBlock]:
        text = _clean(message.content.text)
        if not text:
            return None
        acc = BlockAccumulator()
        with acc.callout(PROCESS_TAG, PROCESS_LABEL):
            with acc.callout("error", message.content.name or "Error"):
                acc.write(text)
        return RenderedBlock("process", acc.getvalue())

    def _skip(self, node: Node, message: Message) -> None:
        return None
