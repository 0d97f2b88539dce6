"""Metadata extraction: title, summary, date, participants and content type.

``OpenAIExtractor`` asks a chat model (vision-capable for images) for the
metadata as JSON. ``HeuristicExtractor`` derives the same fields locally and
is used when no API key is configured.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from openai import OpenAI

from lore_knowledge.errors import ExtractionError
from lore_knowledge.processors import ImageData
from lore_knowledge.utils import normalize_date

logger = logging.getLogger(__name__)

CONTENT_TYPES = ("interview", "meeting", "conversation", "document", "note", "analysis")
DEFAULT_CONTENT_TYPE = "document"
MAX_EXTRACTION_CHARS = 50_000
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"

EXTRACTION_PROMPT = """Analyze this document and extract metadata. Return ONLY valid JSON with these fields:

{
  "title": "A descriptive title (create one if not obvious)",
  "summary": "2-4 sentences capturing key takeaways, findings, or purpose",
  "date": "ISO date string (YYYY-MM-DD) if mentioned, otherwise null",
  "participants": ["list", "of", "names"] if this is a meeting/interview, otherwise [],
  "content_type": "one of: interview|meeting|conversation|document|note|analysis"
}

Content type guidelines:
- interview: User research, customer interview, 1:1 feedback session
- meeting: Team meeting, standup, planning session
- conversation: AI chat (Claude, ChatGPT), chat logs
- document: Spec, design doc, report, article
- note: Personal notes, memo, quick thoughts
- analysis: Competitor analysis, market research, data analysis

Be specific in the summary. Include concrete details, names, numbers when present."""


@dataclass
class ExtractedMetadata:
    """Metadata extracted for one source file."""

    title: str
    summary: str
    date: str | None = None
    participants: list[str] = field(default_factory=list)
    content_type: str = DEFAULT_CONTENT_TYPE


class MetadataExtractor(Protocol):
    """Anything that can turn file text (or an image) into metadata."""

    def extract(
        self, text: str, file_path: str | Path, image: ImageData | None = None
    ) -> ExtractedMetadata: ...


def validate_content_type(content_type: object) -> str:
    """Normalize a content type, falling back to "document"."""
    if isinstance(content_type, str) and content_type in CONTENT_TYPES:
        return content_type
    return DEFAULT_CONTENT_TYPE


def fallback_metadata(text: str, file_path: str | Path) -> ExtractedMetadata:
    """Metadata used when the model response cannot be parsed."""
    return ExtractedMetadata(
        title=Path(file_path).name,
        summary=text[:200] + "..." if text else "No summary available",
    )


def parse_extraction_response(
    response_text: str, text: str, file_path: str | Path
) -> ExtractedMetadata:
    """Parse the JSON object in a model response.

    The response may wrap the JSON in prose or a markdown code block; the
    outermost ``{...}`` is used.

    Args:
        response_text: Raw model output.
        text: The document text, used for fallback metadata.
        file_path: The document path, used for fallback metadata.

    Returns:
        Parsed metadata, or fallback metadata when parsing fails.
    """
    match = re.search(r"\{.*\}", response_text, re.DOTALL)
    if not match:
        logger.error("No JSON found in extraction response for %s", Path(file_path).name)
        return fallback_metadata(text, file_path)
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON in extraction response for %s: %s", Path(file_path).name, e)
        return fallback_metadata(text, file_path)
    if not isinstance(parsed, dict):
        return fallback_metadata(text, file_path)

    title = parsed.get("title")
    summary = parsed.get("summary")
    participants = parsed.get("participants")
    return ExtractedMetadata(
        title=title.strip() if isinstance(title, str) and title.strip() else Path(file_path).name,
        summary=summary.strip()
        if isinstance(summary, str) and summary.strip()
        else "No summary available",
        date=normalize_date(parsed.get("date")),
        participants=[str(p) for p in participants] if isinstance(participants, list) else [],
        content_type=validate_content_type(parsed.get("content_type")),
    )


class OpenAIExtractor:
    """Extracts metadata with an OpenAI chat completion."""

    def __init__(
        self,
        model: str = DEFAULT_OPENAI_MODEL,
        client: OpenAI | None = None,
        max_tokens: int = 1000,
    ) -> None:
        """Initialize the extractor.

        Args:
            model: Chat model name; must support images for image sources.
            client: Pre-built OpenAI client. Created lazily from
                ``OPENAI_API_KEY`` when None.
            max_tokens: Completion token limit.
        """
        self.model = model
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def build_messages(
        self, text: str, file_path: str | Path, image: ImageData | None = None
    ) -> list[dict]:
        """Build the chat messages for one file."""
        name = Path(file_path).name
        if image is not None:
            return [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{image.media_type};base64,{image.base64}"},
                        },
                        {
                            "type": "text",
                            "text": (
                                f"{EXTRACTION_PROMPT}\n\nFile: {name}\n\n"
                                "Analyze this image and extract metadata. "
                                "Describe what's in the image in detail in the summary."
                            ),
                        },
                    ],
                }
            ]

        if len(text) > MAX_EXTRACTION_CHARS:
            text = text[:MAX_EXTRACTION_CHARS] + "\n\n[Content truncated...]"
        return [{"role": "user", "content": f"{EXTRACTION_PROMPT}\n\nFile: {name}\n\n---\n\n{text}"}]

    def extract(
        self, text: str, file_path: str | Path, image: ImageData | None = None
    ) -> ExtractedMetadata:
        """Extract metadata for one file.

        Raises:
            ExtractionError: If the API call fails.
        """
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                temperature=0,
                max_tokens=self.max_tokens,
                messages=self.build_messages(text, file_path, image),
            )
        except Exception as e:
            raise ExtractionError(f"Metadata extraction failed for {Path(file_path).name}: {e}") from e
        response_text = completion.choices[0].message.content or ""
        return parse_extraction_response(response_text, text, file_path)


_CONTENT_TYPE_KEYWORDS = [
    ("interview", ("interview", "interviewee", "customer call", "user research")),
    ("meeting", ("meeting", "standup", "stand-up", "agenda", "action items", "attendees")),
    ("conversation", ("[user]:", "[assistant]:", "chatgpt", "claude")),
    ("analysis", ("analysis", "competitor", "market research", "benchmark")),
    ("note", ("todo", "note to self", "quick note", "memo")),
]

_DATE_PATTERN = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
_SPEAKER_PATTERN = re.compile(r"^\s*\**([A-Z][\w.-]*(?: [A-Z][\w.-]*)?)\**\s*:", re.MULTILINE)


class HeuristicExtractor:
    """Offline extractor deriving metadata from the text itself.

    Title comes from the first markdown heading or the file name, the
    summary from the leading sentences, the date from the first ISO date,
    participants from ``Name:`` speaker prefixes, and the content type from
    keywords.
    """

    SUMMARY_SENTENCES = 3
    MAX_SUMMARY_CHARS = 400

    def extract(
        self, text: str, file_path: str | Path, image: ImageData | None = None
    ) -> ExtractedMetadata:
        path = Path(file_path)
        if image is not None:
            title = path.stem.replace("_", " ").replace("-", " ").strip() or path.name
            match = _DATE_PATTERN.search(path.name)
            return ExtractedMetadata(
                title=title,
                summary=f"Image {path.name} ({image.media_type}).",
                date=match.group(1) if match else None,
            )

        heading = re.search(r"^#{1,3}\s+(.+)$", text, re.MULTILINE)
        title = heading.group(1).strip() if heading else path.stem.replace("_", " ").strip()

        body = re.sub(r"^---\n.*?\n---\n", "", text, flags=re.DOTALL)
        body = re.sub(r"^#+\s+.*$", "", body, flags=re.MULTILINE)
        body = re.sub(r"\s+", " ", body).strip()
        sentences = re.split(r"(?<=[.!?])\s+", body)
        summary = " ".join(sentences[: self.SUMMARY_SENTENCES]).strip()
        if len(summary) > self.MAX_SUMMARY_CHARS:
            summary = summary[: self.MAX_SUMMARY_CHARS - 3] + "..."

        date_match = _DATE_PATTERN.search(text)
        participants = sorted(set(_SPEAKER_PATTERN.findall(text)))

        lowered = text.lower()
        content_type = DEFAULT_CONTENT_TYPE
        for candidate, keywords in _CONTENT_TYPE_KEYWORDS:
            if any(keyword in lowered for keyword in keywords):
                content_type = candidate
                break

        return ExtractedMetadata(
            title=title or path.name,
            summary=summary or title or path.name,
            date=date_match.group(1) if date_match else None,
            participants=participants if content_type in ("interview", "meeting") else [],
            content_type=content_type,
        )


def create_extractor(settings: dict | None = None) -> MetadataExtractor:
    """Pick the extractor for this machine.

    Uses OpenAI when ``OPENAI_API_KEY`` is set (config.json ``env`` entries
    are bridged into the environment first), otherwise the heuristic one.

    Args:
        settings: ``extractor`` section of config.json.
    """
    settings = settings or {}
    if settings.get("provider") == "heuristic":
        return HeuristicExtractor()
    if os.environ.get("OPENAI_API_KEY"):
        return OpenAIExtractor(model=settings.get("model", DEFAULT_OPENAI_MODEL))
    logger.info("OPENAI_API_KEY not set, using heuristic metadata extraction")
    return HeuristicExtractor()
