"""
Buffered text sink for nested Markdown blockquotes and callouts.

Text is written unprefixed and committed with the concatenation of the
currently active quote prefixes, outermost first. A nested accumulator
holds its text back until commit(), so a block can be inspected or
rewritten before it lands in its parent.
"""
from contextlib import contextmanager
from typing import Iterator, Optional

QUOTE = "> "


class BlockAccumulator:
    """Line buffer with a stack of quote prefixes."""

    def __init__(self, parent: Optional["BlockAccumulator"] = None):
        self.parent = parent
        self.prefixes: list[str] = []
        self.lines: list[str] = []      # committed, prefixed
        self.pending: list[str] = []    # written, not yet prefixed

    def write(self, text: str = "") -> "BlockAccumulator":
        """Buffer text; every line is prefixed when flushed."""
        self.pending.extend(text.split("\n"))
        return self

    def flush(self) -> None:
        """Commit pending lines under the active prefixes."""
        if not self.pending:
            return
        prefix = "".join(self.prefixes)
        for line in self.pending:
            # A quoted blank line keeps its ">" markers so the quote doesn't break
            self.lines.append((prefix + line).rstrip() if not line.strip() else prefix + line)
        self.pending.clear()

    @contextmanager
    def quote(self, prefix: str = QUOTE) -> Iterator["BlockAccumulator"]:
        """Write one quote level deeper for the duration of the block."""
        self.flush()
        self.prefixes.append(prefix)
        try:
            yield self
        finally:
            self.flush()
            self.prefixes.pop()

    @contextmanager
    def callout(self, tag: str, label: str = "", folded: bool = True) -> Iterator["BlockAccumulator"]:
        """Open an Obsidian callout: `> [!tag]- label` followed by quoted body lines."""
        marker = f"[!{tag}]{'-' if folded else ''}"
        with self.quote():
            self.write(f"{marker} {label}".rstrip())
            yield self

    def is_empty(self) -> bool:
        return not self.lines and not self.pending

    def separate(self) -> None:
        """Write a blank line unless nothing has been written yet."""
        if not self.is_empty():
            self.write("")

    def nested(self) -> "BlockAccumulator":
        """Return a child accumulator whose text reaches this one on commit()."""
        return BlockAccumulator(parent=self)

    def commit(self) -> None:
        """Write this accumulator's text into its parent under the parent's prefixes."""
        if self.parent is None:
            raise ValueError("commit() needs a parent accumulator")
        text = self.getvalue()
        self.lines.clear()
        if text:
            self.parent.write(text)

    def getvalue(self) -> str:
        self.flush()
        return "\n".join(self.lines)
