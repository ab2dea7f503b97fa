#!/usr/bin/env python3
"""
Obsidian output synchronizer.

Writes one Markdown note per conversation into the output folder and keeps
the folder in sync across runs: notes follow their conversation when the
title changes, unchanged notes are not rewritten, and frontmatter keys
added by hand survive a re-export.
"""
import hashlib
import json
import os
import platform
import re
import sys
import tempfile
import time
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from assembler import Document, assemble_conversation
from renderer import AttachmentStore, MessageRenderer
from schemas import ConversationTree

# =============================================================================
# CONSTANTS
# =============================================================================

NOTE_SUFFIX = ".md"
UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
FRONTMATTER_RE = re.compile(r"\A---\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
YAML_SPECIAL_CHARS = [':', '#', '[', ']', '{', '}', ',', '"', "'", '\n', '|', '>']
YAML_ESCAPES = {'\\': '\\\\', '"': '\\"', '\n': '\\n', '\r': '\\r', '\t': '\\t'}


class FrontmatterError(Exception):
    """Raised when a note's YAML header can't be parsed."""
    pass


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def safe_replace(src, dst, retries=3, delay=0.1):
    """Cross-platform atomic file replace with Windows retry logic."""
    for attempt in range(retries):
        try:
            os.replace(src, dst)
            return
        except PermissionError:
            if platform.system() == 'Windows' and attempt < retries - 1:
                time.sleep(delay)
            else:
                raise


def nfc(text: str) -> str:
    return unicodedata.normalize("NFC", text)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sanitize_filename(title: str, fallback: str, max_length: int = 120) -> str:
    """
    Turn a conversation title into a file name stem.

    Unsafe characters become "_", a leading run of dots becomes "_",
    whitespace collapses to single spaces. Falls back to the conversation
    id when nothing usable is left.
    """
    name = " ".join(nfc(title or "").split())
    name = UNSAFE_FILENAME_CHARS.sub("_", name)
    name = re.sub(r"^\.+", "_", name)
    name = name[:max_length].rstrip()
    return name or fallback


def sanitize_yaml_string(value: str) -> str:
    """Quote a string value when YAML would otherwise misread it."""
    if not isinstance(value, str):
        return str(value)
    if needs_quotes(value):
        return f'"{escape_yaml_string(value)}"'
    return value


def escape_yaml_string(value: str) -> str:
    """Escape a value for a double-quoted YAML scalar."""
    escaped = []
    for c in value:
        if c in YAML_ESCAPES:
            escaped.append(YAML_ESCAPES[c])
        elif c.isprintable():
            escaped.append(c)
        elif ord(c) <= 0xff:
            escaped.append(f"\\x{ord(c):02x}")
        elif ord(c) <= 0xffff:
            escaped.append(f"\\u{ord(c):04x}")
        else:
            escaped.append(f"\\U{ord(c):08x}")
    return "".join(escaped)


def needs_quotes(value: str) -> bool:
    if not value or value != value.strip() or value[0] in "-?!&*%@`":
        return True
    if any(c in value for c in YAML_SPECIAL_CHARS):
        return True
    # Control characters and line breaks such as \r or U+0085 only survive escaped
    if not value.isprintable():
        return True
    # Plain scalars like "yes", "null" or "2024" would load as other types
    try:
        return not isinstance(yaml.safe_load(value), str)
    except yaml.YAMLError:
        return True


def format_frontmatter(metadata: dict, extra: Optional[dict] = None, date_keys=()) -> str:
    """
    Generate the YAML frontmatter block.

    Generated keys come first in their given order; extra keys carried over
    from an existing note are appended after them. Values under date_keys
    are ISO timestamps and are written bare so they read back as dates.
    """
    lines = ["---"]

    for key, value in metadata.items():
        if value is None:
            continue
        elif key in date_keys:
            lines.append(f"{key}: {value}")
        elif isinstance(value, list):
            items = [sanitize_yaml_string(item) if isinstance(item, str) else str(item)
                     for item in value]
            lines.append(f"{key}: [{', '.join(items)}]")
        elif isinstance(value, bool):
            lines.append(f"{key}: {str(value).lower()}")
        elif isinstance(value, str):
            lines.append(f"{key}: {sanitize_yaml_string(value)}")
        else:
            lines.append(f"{key}: {value}")

    if extra:
        dumped = yaml.safe_dump(extra, default_flow_style=False, allow_unicode=True, sort_keys=False)
        lines.append(dumped.rstrip("\n"))

    lines.append("---")
    return "\n".join(lines)


def split_frontmatter(text: str) -> tuple[Optional[dict], str]:
    """
    Split a note into (frontmatter, body).

    Returns None for the frontmatter when the note has no header.

    Raises:
        FrontmatterError: the header exists but isn't a YAML mapping
    """
    match = FRONTMATTER_RE.match(text)
    if not match:
        return None, text

    try:
        metadata = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        raise FrontmatterError(str(e)) from e

    if metadata is None:
        metadata = {}
    if not isinstance(metadata, dict):
        raise FrontmatterError(f"expected a mapping, got {type(metadata).__name__}")
    return metadata, text[match.end():]


def format_document(document: Document, extra: Optional[dict] = None) -> str:
    frontmatter = format_frontmatter(document.frontmatter, extra, document.date_keys)
    return f"{frontmatter}\n{document.body}"


# =============================================================================
# OUTPUT REGISTRY
# =============================================================================

@dataclass
class OutputRecord:
    """A note already present in the output folder."""
    path: Path
    frontmatter: dict
    content_hash: str


@dataclass
class SyncResult:
    path: Path
    written: bool
    renamed: bool


class OutputRegistry:
    """
    Tracks which note belongs to which conversation.

    Built on first use by scanning the output folder, then kept current as
    notes are written and renamed, so later conversations in the same run
    see earlier conversations' final names.
    """

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)
        self.records: dict[str, OutputRecord] = {}   # conversation id -> record
        self.owners: dict[str, Optional[str]] = {}   # NFC file name -> conversation id
        self._loaded = False

    def _ensure_loaded(self):
        if self._loaded:
            return
        self._loaded = True
        if not self.output_dir.is_dir():
            return

        for path in sorted(self.output_dir.glob(f"*{NOTE_SUFFIX}")):
            if not path.is_file():
                continue
            data = path.read_bytes()
            try:
                frontmatter, _ = split_frontmatter(data.decode("utf-8", errors="replace"))
            except FrontmatterError as e:
                print(f"Warning: could not parse frontmatter of {path.name}: {e}", file=sys.stderr)
                frontmatter = None

            conv_id = (frontmatter or {}).get("conversation_id")
            conv_id = str(conv_id) if conv_id else None
            self.owners[nfc(path.name)] = conv_id
            if conv_id and conv_id not in self.records:
                self.records[conv_id] = OutputRecord(path, frontmatter, content_hash(data))

    def record_for(self, conv_id: str) -> Optional[OutputRecord]:
        self._ensure_loaded()
        return self.records.get(conv_id)

    def claim_name(self, base: str, conv_id: str) -> str:
        """
        Return a file name for conv_id, appending _1, _2, ... while the
        candidate belongs to another conversation or to an unrecognised file.
        """
        self._ensure_loaded()
        candidate = f"{base}{NOTE_SUFFIX}"
        counter = 0
        while True:
            key = nfc(candidate)
            if key not in self.owners or self.owners[key] == conv_id:
                return candidate
            counter += 1
            candidate = f"{base}_{counter}{NOTE_SUFFIX}"

    def update(self, conv_id: str, record: OutputRecord):
        """Register conv_id's final note, releasing its previous name."""
        self._ensure_loaded()
        previous = self.records.get(conv_id)
        if previous is not None and nfc(previous.path.name) != nfc(record.path.name):
            if self.owners.get(nfc(previous.path.name)) == conv_id:
                del self.owners[nfc(previous.path.name)]
        self.owners[nfc(record.path.name)] = conv_id
        self.records[conv_id] = record


# =============================================================================
# SYNC
# =============================================================================

def sync_document(document: Document, registry: OutputRegistry, config: dict) -> SyncResult:
    """
    Bring one conversation's note up to date.

    Renames the existing note if the title changed, merges hand-added
    frontmatter keys, and only replaces the file when its content hash
    changed.
    """
    output_dir = registry.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)

    base = sanitize_filename(document.title, document.conversation_id, config["max_filename_length"])
    name = registry.claim_name(base, document.conversation_id)
    target = output_dir / name
    existing = registry.record_for(document.conversation_id)

    renamed = False
    if existing is not None and existing.path.name != name:
        if existing.path.exists():
            safe_replace(existing.path, target)
            if nfc(existing.path.name) != nfc(name):
                print(f"Renamed: {existing.path.name} -> {name}")
            renamed = True

    extra = {}
    if existing is not None:
        extra = {k: v for k, v in existing.frontmatter.items() if k not in document.frontmatter}

    data = format_document(document, extra).encode("utf-8")
    new_hash = content_hash(data)
    written = False

    fd, tmp_path = tempfile.mkstemp(dir=output_dir, prefix=".", suffix=".tmp")
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        if existing is not None and existing.content_hash == new_hash and target.exists():
            os.unlink(tmp_path)
        else:
            safe_replace(tmp_path, target)
            written = True
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise

    frontmatter = {**document.frontmatter, **extra}
    registry.update(document.conversation_id, OutputRecord(target, frontmatter, new_hash))
    return SyncResult(target, written, renamed)


def write_raw_dump(tree: ConversationTree, dump_dir: Path, note_name: str) -> Path:
    """Write the conversation's raw export JSON next to the note's final name."""
    dump_dir = Path(dump_dir)
    dump_dir.mkdir(parents=True, exist_ok=True)
    dump_path = dump_dir / f"{Path(note_name).stem}.json"
    with open(dump_path, 'w', encoding='utf-8') as f:
        json.dump(tree.raw, f, indent=2, ensure_ascii=False)
    return dump_path


# =============================================================================
# EXPORT
# =============================================================================

def run_export(
    trees: list[ConversationTree],
    output_dir: Path,
    config: dict,
    archive_dir: Optional[Path] = None,
    dump_dir: Optional[Path] = None,
) -> dict:
    """
    Convert and synchronise every conversation, oldest first.

    Args:
        trees: Conversations sorted by creation time
        output_dir: Folder the notes are written to
        config: Loaded configuration
        archive_dir: Extracted export holding attachment files
        dump_dir: If set, also write each conversation's raw JSON there

    Returns:
        Dict with export statistics

    Raises:
        ConversionError: a conversation couldn't be converted; the run stops
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    registry = OutputRegistry(output_dir)
    attachments = AttachmentStore(archive_dir, output_dir, config["attachments_dir"])
    stats = {
        "conversations": 0,
        "written": 0,
        "unchanged": 0,
        "renamed": 0,
        "attachments": 0,
        "missing_attachments": 0,
    }

    for tree in trees:
        document = assemble_conversation(tree, MessageRenderer(attachments), config)
        result = sync_document(document, registry, config)

        stats["conversations"] += 1
        stats["written" if result.written else "unchanged"] += 1
        if result.renamed:
            stats["renamed"] += 1
        if dump_dir is not None:
            write_raw_dump(tree, dump_dir, result.path.name)

    stats["attachments"] = attachments.copied
    stats["missing_attachments"] = attachments.missing
    return stats
