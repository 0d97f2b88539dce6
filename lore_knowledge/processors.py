"""Format preprocessors: turn source files into text for metadata extraction.

Processing happens in memory only; original files are never modified.
Images are not converted here. They are returned as base64 so the
extractor can describe them, and that description becomes the searchable
text.
"""

import base64
import csv
import html
import io
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import frontmatter

from lore_knowledge.utils import normalize_date

# PDF support
try:
    import fitz  # PyMuPDF

    PDF_ENABLED = True
except ImportError:
    PDF_ENABLED = False
    fitz = None

logger = logging.getLogger(__name__)

IMAGE_MEDIA_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

PDF_UNAVAILABLE_TEXT = "[PDF processing not available - install pymupdf]"


@dataclass
class ImageData:
    """Image payload handed to a vision-capable extractor."""

    base64: str
    media_type: str


@dataclass
class ProcessedContent:
    """Text form of a source file plus any metadata found while converting it."""

    text: str
    format: str
    title: str | None = None
    date: str | None = None
    participants: list[str] = field(default_factory=list)
    image: ImageData | None = None
    file_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_image(self) -> bool:
        return self.image is not None


def get_image_media_type(path: str | Path) -> str | None:
    """Media type for a supported image extension, else None."""
    return IMAGE_MEDIA_TYPES.get(Path(path).suffix.lower())


def is_image_file(path: str | Path) -> bool:
    return get_image_media_type(path) is not None


def process_markdown(content: str) -> ProcessedContent:
    """Markdown passes through; title and date come from front matter or the first H1."""
    title = None
    date = None
    try:
        post = frontmatter.loads(content)
    except Exception as e:
        logger.debug("Ignoring unparsable front matter: %s", e)
        post = None
    if post is not None and post.metadata:
        if post.get("title"):
            title = str(post["title"])
        date = normalize_date(post.get("date"))
    if title is None:
        match = re.search(r"^#\s+(.+)$", content, re.MULTILINE)
        if match:
            title = match.group(1).strip()
    return ProcessedContent(text=content, format="markdown", title=title, date=date)


def _extract_message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part["text"]
            for part in content
            if isinstance(part, dict) and part.get("type") == "text" and part.get("text")
        )
    return ""


def process_jsonl(content: str) -> ProcessedContent:
    """Render chat-export JSONL as ``[ROLE]: text`` paragraphs.

    Lines that are not valid JSON are skipped.
    """
    messages = []
    for line in content.splitlines():
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(obj, dict):
            continue
        message = obj.get("message")
        if isinstance(message, dict) and message.get("content"):
            role = message.get("role") or obj.get("type") or "unknown"
            text = _extract_message_text(message["content"])
        elif obj.get("content"):
            role = obj.get("role") or obj.get("type") or "unknown"
            text = _extract_message_text(obj["content"])
        else:
            continue
        if text:
            messages.append(f"[{str(role).upper()}]: {text}")
    return ProcessedContent(text="\n\n".join(messages), format="jsonl")


def _prosemirror_to_text(node: Any) -> str:
    if not isinstance(node, dict):
        return ""
    if node.get("type") == "text":
        return node.get("text") or ""
    children = node.get("content")
    if isinstance(children, list):
        return "".join(_prosemirror_to_text(child) for child in children)
    return ""


def process_json(content: str) -> ProcessedContent:
    """Pretty-print JSON, with special handling for Granola meeting exports."""
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return ProcessedContent(text=content, format="json-invalid")

    if isinstance(data, dict) and (data.get("notes") or data.get("transcript")):
        parts = []
        notes = data.get("notes")
        if isinstance(notes, dict) and notes.get("content"):
            notes_text = _prosemirror_to_text(notes)
            if notes_text:
                parts.append("## Notes\n" + notes_text)

        transcript = data.get("transcript")
        utterances = transcript.get("utterances") if isinstance(transcript, dict) else None
        if utterances:
            lines = []
            for utterance in utterances:
                speaker = "[ME]" if utterance.get("source") == "microphone" else "[PARTICIPANT]"
                start = float(utterance.get("start") or 0)
                minutes, seconds = int(start // 60), int(start % 60)
                text = utterance.get("text", "")
                lines.append(f"[{minutes:02d}:{seconds:02d}] {speaker}: {text}")
            parts.append("## Transcript\n" + "\n\n".join(lines))

        return ProcessedContent(
            text="\n\n".join(parts),
            format="json-granola",
            title=data["title"] if isinstance(data.get("title"), str) else None,
            date=normalize_date(data.get("created_at")),
        )

    return ProcessedContent(text=json.dumps(data, indent=2), format="json")


def process_plain_text(content: str) -> ProcessedContent:
    return ProcessedContent(text=content, format="text")


def process_csv(content: str, path: Path) -> ProcessedContent:
    """Render CSV rows as ``column: value`` blocks."""
    rows = [row for row in csv.reader(io.StringIO(content)) if any(cell.strip() for cell in row)]
    if not rows:
        return ProcessedContent(text=content, format="csv")

    header = [h.strip() for h in rows[0]]
    blocks = []
    for number, row in enumerate(rows[1:], start=1):
        values = [v.strip() for v in row]
        pairs = [f"{h}: {values[i] if i < len(values) else ''}" for i, h in enumerate(header)]
        blocks.append(f"Row {number}:\n  " + "\n  ".join(pairs))

    text = (
        f"CSV Data ({len(rows) - 1} rows, {len(header)} columns)\n\n"
        f"Columns: {', '.join(header)}\n\n" + "\n\n".join(blocks)
    )
    return ProcessedContent(text=text, format="csv", title=path.stem)


def process_html(content: str) -> ProcessedContent:
    """Strip markup from HTML, keeping paragraph and list structure."""
    text = re.sub(r"<script[^>]*>.*?</script>", "", content, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<style[^>]*>.*?</style>", "", text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</div>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</h[1-6]>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "• ", text, flags=re.IGNORECASE)
    text = re.sub(r"</li>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    text = re.sub(r"\n{3,}", "\n\n", text).strip()

    match = re.search(r"<title[^>]*>([^<]+)</title>", content, re.IGNORECASE)
    title = html.unescape(match.group(1).strip()) if match else None
    return ProcessedContent(text=text, format="html", title=title)


def process_xml(content: str) -> ProcessedContent:
    text = re.sub(r"<!\[CDATA\[(.*?)\]\]>", r"\1", content, flags=re.DOTALL)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    return ProcessedContent(text=f"XML Document:\n\n{text}", format="xml")


def process_pdf(path: Path) -> ProcessedContent:
    """Extract text from every PDF page with PyMuPDF."""
    if not PDF_ENABLED or fitz is None:
        logger.warning("PyMuPDF not installed, indexing %s without text", path.name)
        return ProcessedContent(text=PDF_UNAVAILABLE_TEXT, format="pdf-unsupported")

    pages = []
    with fitz.open(str(path)) as doc:
        for page in doc:
            text = page.get_text("text")
            if text and text.strip():
                pages.append(text.strip())
    text = "\n\n".join(pages).replace("\x00", "")
    return ProcessedContent(text=text, format="pdf", title=path.stem)


def process_image(path: Path) -> ProcessedContent:
    """Load an image for the vision extractor.

    A ``YYYY-MM-DD`` date in the file name (phone exports, screenshots) is
    used as the source date.
    """
    media_type = get_image_media_type(path)
    if media_type is None:
        return ProcessedContent(text="[Unsupported image format]", format="image-unsupported")

    data = path.read_bytes()
    stat = path.stat()
    match = re.search(r"(\d{4}-\d{2}-\d{2})", path.name)
    return ProcessedContent(
        text="",
        format="image",
        date=match.group(1) if match else None,
        image=ImageData(base64=base64.b64encode(data).decode("ascii"), media_type=media_type),
        file_metadata={
            "filename": path.name,
            "size_bytes": stat.st_size,
            "modified_at": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
        },
    )


def process_file(path: str | Path) -> ProcessedContent:
    """Convert one file into text according to its extension.

    Args:
        path: File to read.

    Returns:
        ProcessedContent for the file.

    Raises:
        OSError: If the file cannot be read.
    """
    path = Path(path)
    ext = path.suffix.lower()

    if ext == ".pdf":
        return process_pdf(path)
    if is_image_file(path):
        return process_image(path)

    content = path.read_text(encoding="utf-8", errors="replace")

    if ext in (".md", ".markdown"):
        return process_markdown(content)
    if ext == ".jsonl":
        return process_jsonl(content)
    if ext == ".json":
        return process_json(content)
    if ext == ".txt":
        return process_plain_text(content)
    if ext == ".csv":
        return process_csv(content, path)
    if ext in (".html", ".htm"):
        return process_html(content)
    if ext in (".xml", ".xhtml"):
        return process_xml(content)

    stripped = content.strip()
    if stripped.startswith(("{", "[")):
        return process_json(content)
    if '{"' in content:
        return process_jsonl(content)
    return process_plain_text(content)
