"""
Inline citation substitution for assistant messages.

ChatGPT stores web citations as private-use placeholder codes in the text
(e.g. "\\ue200cite\\ue202turn0search3\\ue201") and describes them in
metadata["content_references"]. Grouped-webpage references are replaced
with Markdown links; everything else is left as written.
"""
import re
from typing import Optional


def link_url(url: str) -> str:
    """Percent-encode the parentheses that would end a Markdown link early."""
    return url.replace("(", "%28").replace(")", "%29")


def format_links(items: list) -> str:
    """Render reference items as space-separated [title](url) links."""
    links = []
    for item in items:
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        if not url:
            continue
        title = (item.get("title") or url).replace("[", "(").replace("]", ")")
        links.append(f"[{title}]({link_url(url)})")
    return " ".join(links)


class CitationResolver:
    """Maps the placeholders of one message to rendered link groups."""

    def __init__(self, metadata: Optional[dict] = None):
        self.replacements: dict[str, str] = {}

        for ref in (metadata or {}).get("content_references") or []:
            if not isinstance(ref, dict) or ref.get("type") != "grouped_webpages":
                continue
            placeholder = ref.get("matched_text")
            if not placeholder:
                continue
            self.replacements[placeholder] = format_links(ref.get("items") or [])

        self.pattern = None
        if self.replacements:
            # Longest first so a code never matches as the prefix of a longer one
            keys = sorted(self.replacements, key=len, reverse=True)
            self.pattern = re.compile("|".join(re.escape(k) for k in keys))

    def resolve(self, text: str) -> str:
        if self.pattern is None or not text:
            return text
        return self.pattern.sub(lambda m: self.replacements[m.group(0)], text)

    def resolve_all(self, parts: list[str]) -> list[str]:
        return [self.resolve(part) for part in parts]
