"""Utility functions for the ingestion and sync engine."""

import hashlib
import re
import unicodedata
import uuid
from datetime import date, datetime, timezone
from pathlib import Path

HASH_CHUNK_SIZE = 1024 * 1024


def compute_content_hash(data: bytes) -> str:
    """Compute the SHA-256 hash of raw bytes.

    Args:
        data: Raw content.

    Returns:
        SHA-256 hash as hex string.
    """
    return hashlib.sha256(data).hexdigest()


def compute_file_hash(path: str | Path) -> str:
    """Compute the SHA-256 hash of a file's raw bytes.

    The file is read in chunks so large PDFs and images do not have to fit
    in memory. The result equals ``compute_content_hash`` of the full bytes.

    Args:
        path: File to hash.

    Returns:
        SHA-256 hash as hex string.

    Raises:
        OSError: If the file cannot be read.
    """
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def slugify(title: str, max_length: int = 50) -> str:
    """Convert a title into a URL-safe slug.

    Lowercases, strips diacritics, keeps alphanumerics and hyphens, and
    truncates at a word boundary when the slug is longer than max_length.

    Args:
        title: Title to convert.
        max_length: Maximum slug length.

    Returns:
        The slug, or "untitled" when nothing usable remains.
    """
    slug = unicodedata.normalize("NFD", title.lower())
    slug = "".join(c for c in slug if not unicodedata.combining(c))
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    slug = slug.strip("-")

    if len(slug) > max_length:
        slug = slug[:max_length]
        last_hyphen = slug.rfind("-")
        if last_hyphen > max_length * 0.5:
            slug = slug[:last_hyphen]

    return slug or "untitled"


def generate_source_id() -> str:
    """Generate a new source id (UUID4 string)."""
    return str(uuid.uuid4())


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_DATE_FORMATS = (
    "%Y/%m/%d",
    "%Y.%m.%d",
    "%Y%m%d",
    "%d.%m.%Y",
    "%m/%d/%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
)


def normalize_date(value: object) -> str | None:
    """Normalize a loosely formatted date to ISO ``YYYY-MM-DD``.

    Accepts ``date``/``datetime`` objects (as parsed from YAML front matter),
    ISO strings with or without a time part, a handful of common written
    formats, and ``YYYYMMDD`` integers.

    Args:
        value: Raw date value from front matter or an extractor.

    Returns:
        The ISO date, or None when the value is missing or unparsable.
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None

    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def sanitize_for_embedding(text: str) -> str:
    """Clean text for embedding generation.

    Args:
        text: Raw text input.

    Returns:
        Cleaned text suitable for embedding.
    """
    # Remove excessive whitespace
    text = re.sub(r"\s+", " ", text)
    # Remove special characters that might confuse embeddings
    text = re.sub(r"[^\w\s.,!?;:\-()\[\]]", " ", text)
    return text.strip()
