"""Tests for metadata extraction."""

from types import SimpleNamespace

import pytest

from lore_knowledge.errors import ExtractionError
from lore_knowledge.extractor import (
    HeuristicExtractor,
    OpenAIExtractor,
    create_extractor,
    parse_extraction_response,
)
from lore_knowledge.processors import ImageData


class FakeCompletions:
    """Stand-in for client.chat.completions."""

    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


class TestParseExtractionResponse:
    """Tests for parsing model output."""

    def test_json_in_code_block(self):
        response = (
            "Here you go:\n```json\n"
            '{"title": "Q3 Review", "summary": "Numbers went up.", "date": "2025-07-01",'
            ' "participants": ["Ada"], "content_type": "meeting"}\n```'
        )
        metadata = parse_extraction_response(response, "text", "notes/q3.md")
        assert metadata.title == "Q3 Review"
        assert metadata.date == "2025-07-01"
        assert metadata.participants == ["Ada"]
        assert metadata.content_type == "meeting"

    def test_unknown_content_type_falls_back(self):
        metadata = parse_extraction_response(
            '{"title": "T", "summary": "S", "content_type": "poem"}', "text", "a.md"
        )
        assert metadata.content_type == "document"

    def test_no_json_uses_fallback(self):
        metadata = parse_extraction_response("sorry", "Some body", "notes/a.md")
        assert metadata.title == "a.md"
        assert metadata.summary == "Some body..."

    def test_invalid_json_uses_fallback(self):
        metadata = parse_extraction_response("{not: json}", "", "a.md")
        assert metadata.summary == "No summary available"

    def test_non_string_fields_coerced(self):
        """Test that numeric titles and dates from the model do not leak through."""
        metadata = parse_extraction_response(
            '{"title": 42, "summary": ["a"], "date": 20240315}', "text", "notes/a.md"
        )
        assert metadata.title == "a.md"
        assert metadata.summary == "No summary available"
        assert metadata.date == "2024-03-15"

    def test_date_normalized(self):
        metadata = parse_extraction_response(
            '{"title": "T", "summary": "S", "date": "March 5, 2025"}', "text", "a.md"
        )
        assert metadata.date == "2025-03-05"
        metadata = parse_extraction_response(
            '{"title": "T", "summary": "S", "date": "last week"}', "text", "a.md"
        )
        assert metadata.date is None


class TestOpenAIExtractor:
    """Tests for OpenAIExtractor with a fake client."""

    def test_text_request(self):
        completions = FakeCompletions(content='{"title": "Hello", "summary": "World"}')
        extractor = OpenAIExtractor(model="test-model", client=fake_client(completions))

        metadata = extractor.extract("Hello world", "/notes/a.md")

        assert metadata.title == "Hello"
        request = completions.requests[0]
        assert request["model"] == "test-model"
        assert request["temperature"] == 0
        assert "File: a.md" in request["messages"][0]["content"]
        assert request["messages"][0]["content"].endswith("Hello world")

    def test_long_text_truncated(self):
        completions = FakeCompletions(content="{}")
        extractor = OpenAIExtractor(client=fake_client(completions))
        extractor.extract("x" * 60_000, "a.txt")
        assert "[Content truncated...]" in completions.requests[0]["messages"][0]["content"]

    def test_image_request(self):
        completions = FakeCompletions(content='{"title": "Whiteboard", "summary": "Boxes"}')
        extractor = OpenAIExtractor(client=fake_client(completions))
        image = ImageData(base64="AAAA", media_type="image/png")

        extractor.extract("", "board.png", image=image)

        parts = completions.requests[0]["messages"][0]["content"]
        assert parts[0]["image_url"]["url"] == "data:image/png;base64,AAAA"
        assert "board.png" in parts[1]["text"]

    def test_api_error_raises_extraction_error(self):
        completions = FakeCompletions(error=RuntimeError("rate limited"))
        extractor = OpenAIExtractor(client=fake_client(completions))
        with pytest.raises(ExtractionError, match="rate limited"):
            extractor.extract("text", "a.md")


class TestHeuristicExtractor:
    """Tests for the offline extractor."""

    def test_meeting_notes(self):
        text = (
            "# Planning Meeting\n\n"
            "Held on 2025-03-04. We agreed on the roadmap. Action items follow.\n\n"
            "Ada: let's ship\nBob: agreed\n"
        )
        metadata = HeuristicExtractor().extract(text, "planning.md")
        assert metadata.title == "Planning Meeting"
        assert metadata.date == "2025-03-04"
        assert metadata.content_type == "meeting"
        assert metadata.participants == ["Ada", "Bob"]
        assert metadata.summary.startswith("Held on 2025-03-04.")

    def test_title_from_file_name(self):
        metadata = HeuristicExtractor().extract("Plain body.", "/x/my_notes.txt")
        assert metadata.title == "my notes"
        assert metadata.content_type == "document"
        assert metadata.participants == []

    def test_image(self):
        image = ImageData(base64="", media_type="image/jpeg")
        metadata = HeuristicExtractor().extract("", "IMG_2024-01-02.jpg", image=image)
        assert metadata.date == "2024-01-02"
        assert "image/jpeg" in metadata.summary


class TestCreateExtractor:
    """Tests for create_extractor."""

    def test_heuristic_without_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        assert isinstance(create_extractor(), HeuristicExtractor)

    def test_openai_with_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        extractor = create_extractor({"model": "gpt-test"})
        assert isinstance(extractor, OpenAIExtractor)
        assert extractor.model == "gpt-test"

    def test_forced_heuristic(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert isinstance(create_extractor({"provider": "heuristic"}), HeuristicExtractor)
