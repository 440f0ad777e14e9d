import logging

import pytest
import requests

import ai_client
from ai_client import AIClient, GeminiProvider, GroqProvider, chunk_text
from errors import UpstreamServiceError


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        if self.payload is None:
            raise ValueError("no json")
        return self.payload


def groq_reply(text, tokens=12):
    return FakeResponse({"choices": [{"message": {"content": text}}], "usage": {"total_tokens": tokens}})


def gemini_reply(text, tokens=9):
    return FakeResponse({"candidates": [{"content": {"parts": [{"text": text}]}}], "usageMetadata": {"totalTokenCount": tokens}})


@pytest.fixture
def posts(monkeypatch):
    """Queue of responses (or exceptions) handed out by ``requests.post``."""
    state = {"queue": [], "calls": []}

    def fake_post(url, **kwargs):
        state["calls"].append({"url": url, **kwargs})
        item = state["queue"].pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr(ai_client.requests, "post", fake_post)
    return state


def _client(groq_key="g-key", gemini_key="m-key"):
    gemini = GeminiProvider(gemini_key, "gemini-test", "https://gemini.test/v1beta")
    groq = GroqProvider(groq_key, "groq-test", "https://groq.test/chat")
    return AIClient([groq, gemini], timeout=5, embedder=gemini)


def test_primary_provider_answers(posts):
    posts["queue"] = [groq_reply("Hello there")]

    result = _client().generate("Hi", "Be kind", temperature=0.2, max_tokens=50)

    assert result.to_dict() == {"response": "Hello there", "model": "groq-test", "provider": "groq", "tokensUsed": 12}
    call = posts["calls"][0]
    assert call["url"] == "https://groq.test/chat"
    assert call["timeout"] == 5
    assert call["headers"] == {"Authorization": "Bearer g-key"}
    assert call["json"]["messages"][0] == {"role": "system", "content": "Be kind"}
    assert call["json"]["temperature"] == 0.2
    assert call["json"]["max_tokens"] == 50


def test_falls_back_to_gemini_on_failure(posts):
    posts["queue"] = [FakeResponse(status_code=429), gemini_reply("From Gemini")]

    result = _client().generate("Hi", "System")

    assert result.provider == "gemini"
    assert result.response == "From Gemini"
    assert result.tokens_used == 9
    gemini_call = posts["calls"][1]
    assert gemini_call["url"] == "https://gemini.test/v1beta/models/gemini-test:generateContent"
    assert gemini_call["params"] == {"key": "m-key"}
    assert gemini_call["json"]["contents"][0]["parts"][0]["text"] == "System\n\nUser: Hi"


def test_unconfigured_provider_is_skipped(posts):
    posts["queue"] = [gemini_reply("Only Gemini")]
    result = _client(groq_key=None).generate("Hi")
    assert result.provider == "gemini"
    assert len(posts["calls"]) == 1


def test_think_blocks_are_stripped(posts):
    posts["queue"] = [groq_reply("<think>internal\nnotes</think>\n  The answer is 4.")]
    assert _client().generate("2 + 2?").response == "The answer is 4."


def test_empty_reply_counts_as_failure(posts):
    posts["queue"] = [groq_reply("<think>only thoughts</think>"), gemini_reply("Real answer")]
    assert _client().generate("Hi").response == "Real answer"


def test_all_providers_failing_raises_upstream_error(posts):
    posts["queue"] = [requests.Timeout("slow"), FakeResponse({"unexpected": True})]

    with pytest.raises(UpstreamServiceError) as info:
        _client().generate("Hi")

    assert "AI service temporarily unavailable" in info.value.message
    assert "groq" in info.value.message
    assert info.value.correlation_id


def test_no_configured_provider(posts):
    with pytest.raises(UpstreamServiceError, match="not properly configured"):
        _client(groq_key=None, gemini_key=None).generate("Hi")
    assert posts["calls"] == []


def test_each_call_is_logged_as_json(posts, caplog):
    posts["queue"] = [FakeResponse(status_code=500), gemini_reply("ok")]
    llm_logger = logging.getLogger("studybuddy.llm")
    llm_logger.addHandler(caplog.handler)
    try:
        _client().generate("Hi")
    finally:
        llm_logger.removeHandler(caplog.handler)

    lines = [r.getMessage() for r in caplog.records if r.name == "studybuddy.llm"]
    assert len(lines) == 2
    assert '"provider": "groq"' in lines[0] and '"outcome": "error"' in lines[0]
    assert '"provider": "gemini"' in lines[1] and '"outcome": "ok"' in lines[1]


def test_stream_yields_chunks_of_the_reply(posts):
    text = "Fractions describe parts of a whole. The denominator counts the parts."
    posts["queue"] = [groq_reply(text)]

    chunks = list(_client().stream("Explain fractions"))

    assert "".join(chunks).strip() == text
    assert all(len(chunk) <= 51 for chunk in chunks)


def test_embed_uses_gemini(posts):
    posts["queue"] = [FakeResponse({"embedding": {"values": [0.1, 0.2, 0.3]}})]

    assert _client().embed("text") == [0.1, 0.2, 0.3]
    assert posts["calls"][0]["url"].endswith("/models/text-embedding-004:embedContent")


def test_embed_failure_and_missing_key(posts):
    posts["queue"] = [requests.ConnectionError("down")]
    with pytest.raises(UpstreamServiceError, match="Embedding request failed"):
        _client().embed("text")
    with pytest.raises(UpstreamServiceError, match="not properly configured"):
        _client(gemini_key=None).embed("text")


def test_chunk_text_packs_words_per_sentence():
    assert chunk_text("Short one. Another short one!") == ["Short one. ", "Another short one! "]
    long_word = "x" * 70
    assert chunk_text(long_word) == [long_word + " "]
    assert chunk_text("") == []
