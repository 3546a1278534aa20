"""
Text node rendering — turns one interpolated text into an ordered send plan.

  - extract_links: markdown ``[label](url)`` / ``![label](url)`` become their
    own parts; links to media files are sent as attachments, other links as
    the bare URL
  - extract_list: a markdown list block (``**Section**`` headers with
    ``- **Item**: desc`` or ``1. **Item**: desc`` rows) becomes a structured
    list in ``metadata.list``
  - split_paragraphs: blank-line separated paragraphs are sent one by one

The plan carries the pause to take after each part; the executor performs
the sends and the pauses in order.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from models.flow import TextData

LINK_PATTERN = re.compile(r"!?\[([^\]]+)\]\(([^)]+)\)")
TRAILING_PUNCTUATION = re.compile(r"^[.,!?;:]")
EXTENSION_PATTERN = re.compile(
    r"\.(jpg|jpeg|png|gif|webp|svg|bmp|mp3|wav|ogg|m4a|aac|mp4|webm|mov|avi|mkv"
    r"|pdf|doc|docx|txt|rtf|xls|xlsx|ppt|pptx)",
    re.IGNORECASE,
)

MEDIA_EXTENSIONS = {
    "image": {"jpg", "jpeg", "png", "gif", "webp", "svg", "bmp"},
    "audio": {"mp3", "wav", "ogg", "m4a", "aac"},
    "video": {"mp4", "webm", "mov", "avi", "mkv"},
    "document": {"pdf", "doc", "docx", "txt", "rtf", "xls", "xlsx", "ppt", "pptx"},
}

SECTION_HEADER = re.compile(r"^\*\*([^*]+)\*\*:?$")
BULLET_ITEM = re.compile(r"^-\s*\*\*([^*]+)\*\*:?(.*)$")
NUMBERED_ITEM = re.compile(r"^\d+\.\s*\*\*([^*]+)\*\*:?(.*)$")
LIST_ITEM_START = re.compile(r"^(\d+\.\s*\*\*|-\s*\*\*|\*\*)")

DEFAULT_SECTION_TITLE = "Serviços"
DEFAULT_BUTTON_TEXT = "📋"
# (keywords in title/description, button label); first match wins
BUTTON_LABELS = [
    (("cardápio", "menu"), "Ver cardápio 📋"),
    (("serviço", "atendimento", "service"), "Ver serviços 📋"),
    (("lista", "list"), "Ver lista 📋"),
]


@dataclass
class TextPart:
    kind: str                       # text | link
    content: str
    url: str = ""
    media_type: Optional[str] = None


@dataclass
class OutboundPart:
    """One message to send, followed by a pause of ``delay_after`` seconds."""
    content: Optional[str] = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    metadata: Optional[dict[str, Any]] = None
    delay_after: float = 0.0


@dataclass
class Pacing:
    paragraph: float = 2.0
    link: float = 3.0
    media: float = 5.0


# ── Links ─────────────────────────────────────────────────────

def identify_media_type(url: str) -> Optional[str]:
    """Media kind from the first known file extension in the URL path."""
    match = EXTENSION_PATTERN.search(url.split("?")[0])
    if not match:
        return None
    ext = match.group(1).lower()
    for media_type, extensions in MEDIA_EXTENSIONS.items():
        if ext in extensions:
            return media_type
    return None


def extract_links(text: str) -> list[TextPart]:
    """Split text around markdown links. Punctuation right after a link is dropped."""
    parts: list[TextPart] = []
    last = 0
    for match in LINK_PATTERN.finditer(text):
        if match.start() > last:
            parts.append(TextPart("text", text[last:match.start()]))
        url = match.group(2)
        parts.append(TextPart("link", match.group(1), url=url,
                              media_type=identify_media_type(url)))
        last = match.end()
        punct = TRAILING_PUNCTUATION.match(text[last:])
        if punct:
            last += len(punct.group(0))
    if last < len(text):
        parts.append(TextPart("text", text[last:]))
    return parts


# ── Lists ─────────────────────────────────────────────────────

def _button_text(title: str, description: str) -> str:
    haystack = f"{title} {description}".lower()
    for keywords, label in BUTTON_LABELS:
        if any(k in haystack for k in keywords):
            return label
    return DEFAULT_BUTTON_TEXT


def extract_list(text: str) -> Optional[dict[str, Any]]:
    """
    Parse a markdown list block into
    ``{title, description, buttonText, footerText, sections[{title, rows}]}``.
    Returns None when the text holds no list items.
    """
    if "**" not in text:
        return None

    lines = text.split("\n")
    i = 0
    while i < len(lines) and not lines[i].strip():
        i += 1

    title = ""
    if i < len(lines) and not LIST_ITEM_START.match(lines[i]):
        title = re.sub(r"[*#]", "", lines[i]).strip()
        i += 1

    desc_lines = []
    while i < len(lines) and not LIST_ITEM_START.match(lines[i].strip()):
        if lines[i].strip():
            desc_lines.append(lines[i].strip())
        i += 1
    description = " ".join(desc_lines).strip()

    current = {"title": DEFAULT_SECTION_TITLE, "rows": []}
    sections = [current]

    while i < len(lines):
        line = lines[i].strip()
        i += 1
        if not line:
            continue

        header = SECTION_HEADER.match(line)
        if header or (line.startswith("**") and line.endswith("**:")):
            current = {"title": re.sub(r"^\*\*|\*\*:?$", "", line).strip(), "rows": []}
            sections.append(current)
            continue

        bullet = BULLET_ITEM.match(line)
        if bullet:
            current["rows"].append({
                "title": bullet.group(1).strip(),
                "description": bullet.group(2).strip(),
                "rowId": "",
            })
            continue

        numbered = NUMBERED_ITEM.match(line)
        if numbered:
            item_desc = numbered.group(2).strip()
            # description may continue on following plain lines
            while (i < len(lines) and lines[i].strip()
                   and not LIST_ITEM_START.match(lines[i].strip())):
                item_desc = f"{item_desc} {lines[i].strip()}".strip()
                i += 1
            current["rows"].append({
                "title": numbered.group(1).strip(),
                "description": item_desc,
                "rowId": "",
            })

    if len(sections) > 1 and not sections[0]["rows"]:
        sections.pop(0)
    if not any(s["rows"] for s in sections):
        return None

    return {
        "title": title,
        "description": description or "👇",
        "buttonText": _button_text(title, description),
        "footerText": "",
        "sections": sections,
    }


# ── Paragraphs ────────────────────────────────────────────────

def split_paragraphs(text: str) -> list[str]:
    return [p for p in text.split("\n\n") if p.strip()]


# ── Send plan ─────────────────────────────────────────────────

def _plain_text_parts(
    text: str,
    data: TextData,
    final_metadata: Optional[dict[str, Any]],
    pacing: Pacing,
) -> list[OutboundPart]:
    if data.extract_list:
        formatted = extract_list(text)
        if formatted:
            return [OutboundPart(content=text, metadata={"list": formatted})]

    if data.split_paragraphs:
        paragraphs = split_paragraphs(text)
        plan = [OutboundPart(content=p, delay_after=pacing.paragraph) for p in paragraphs]
        if plan:
            plan[-1].delay_after = 0.0
            plan[-1].metadata = final_metadata
        return plan

    return [OutboundPart(content=text, metadata=final_metadata)]


def build_text_plan(text: str, data: TextData, pacing: Optional[Pacing] = None) -> list[OutboundPart]:
    """Ordered messages (with pauses) for an already interpolated text."""
    pacing = pacing or Pacing()
    list_metadata = {"list": data.list_options} if data.list_options else None

    if not data.extract_links:
        return _plain_text_parts(text, data, list_metadata, pacing)

    plan: list[OutboundPart] = []
    parts = [p for p in extract_links(text) if p.kind == "link" or p.content.strip()]
    for index, part in enumerate(parts):
        is_last = index == len(parts) - 1
        if part.kind == "text":
            chunk = _plain_text_parts(part.content, data, list_metadata if is_last else None, pacing)
        elif part.media_type:
            chunk = [OutboundPart(
                attachments=[{"url": part.url, "type": part.media_type, "content": part.content}],
                delay_after=pacing.media,
            )]
        else:
            chunk = [OutboundPart(content=part.url, delay_after=pacing.link)]

        if not is_last and chunk:
            chunk[-1].delay_after += pacing.paragraph
        plan.extend(chunk)
    return plan
