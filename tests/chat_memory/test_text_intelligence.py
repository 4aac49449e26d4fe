"""Tests for LLMTextIntelligence."""

from __future__ import annotations

import pytest

from chat_memory.exceptions import ExternalServiceError
from chat_memory.text_intelligence import LLMTextIntelligence


class FakeLLM:
    """Streams a canned reply, optionally as dict deltas."""

    def __init__(self, reply: str = "", as_dicts: bool = False, error: Exception | None = None):
        self.reply = reply
        self.as_dicts = as_dicts
        self.error = error
        self.prompts: list[str] = []

    async def chat_completion(self, messages, system=None):
        self.prompts.append(messages[-1]["content"])
        if self.error is not None:
            raise self.error
        for word in self.reply.split(" "):
            piece = word + " "
            yield {"type": "text_delta", "text": piece} if self.as_dicts else piece


@pytest.mark.asyncio
async def test_summary_from_stream():
    llm = FakeLLM("User loves hiking in the Alps.")
    intelligence = LLMTextIntelligence(llm)

    summary = await intelligence.summarize("long text about hiking")

    assert summary == "User loves hiking in the Alps."
    assert "<text>\nlong text about hiking\n</text>" in llm.prompts[0]


@pytest.mark.asyncio
async def test_dict_deltas_are_joined():
    intelligence = LLMTextIntelligence(FakeLLM("positive", as_dicts=True))
    assert await intelligence.sentiment("great day") == "positive"


@pytest.mark.asyncio
async def test_summary_falls_back_to_truncation():
    intelligence = LLMTextIntelligence(FakeLLM(error=RuntimeError("rate limited")), 10)
    assert await intelligence.summarize("a" * 20) == "a" * 10 + "..."


@pytest.mark.asyncio
async def test_keywords_and_entities_split():
    intelligence = LLMTextIntelligence(FakeLLM("python, asyncio,\n- sqlite"))
    assert await intelligence.extract_keywords("text") == ["python", "asyncio", "sqlite"]
    assert await intelligence.extract_entities("text") == ["python", "asyncio", "sqlite"]


@pytest.mark.asyncio
async def test_failures_use_fallbacks():
    intelligence = LLMTextIntelligence(FakeLLM(error=RuntimeError("offline")))
    assert await intelligence.extract_keywords("text") == []
    assert await intelligence.extract_entities("text") == []
    assert await intelligence.categorize("text") == "general"
    assert await intelligence.sentiment("text") == "neutral"
    assert await intelligence.emotional_intensity("text") == 0.0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply, expected",
    [("Knowledge.", "knowledge"), ("preference", "preference"), ("gossip", "general")],
)
async def test_categorize(reply, expected):
    intelligence = LLMTextIntelligence(FakeLLM(reply))
    assert await intelligence.categorize("text") == expected


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply, expected",
    [("0.75", 0.75), ("Intensity: 0.3", 0.3), ("5", 1.0), ("none", 0.0)],
)
async def test_emotional_intensity_parsing(reply, expected):
    intelligence = LLMTextIntelligence(FakeLLM(reply))
    assert await intelligence.emotional_intensity("text") == expected


@pytest.mark.asyncio
async def test_without_llm_uses_heuristics():
    intelligence = LLMTextIntelligence()
    text = "Python typing makes Python code clearer. Typing helps."

    assert not intelligence.has_llm
    assert await intelligence.summarize(text) == text
    assert (await intelligence.extract_keywords(text))[:2] == ["python", "typing"]
    assert await intelligence.extract_entities(text) == []
    assert await intelligence.categorize(text) == "general"


def test_heuristic_keywords_skip_stopwords_and_short_words():
    keywords = LLMTextIntelligence.heuristic_keywords(
        "This is about the garden and the garden roses, 花园 花园"
    )
    assert keywords[:2] == ["garden", "花园"]
    assert "this" not in keywords
    assert "the" not in keywords


@pytest.mark.asyncio
async def test_stream_errors_wrapped_as_external_service_error():
    intelligence = LLMTextIntelligence(FakeLLM(error=ConnectionError("reset by peer")))
    with pytest.raises(ExternalServiceError) as exc_info:
        await intelligence._complete("Summarize.", "text")
    assert exc_info.value.service == "llm"
    assert isinstance(exc_info.value.__cause__, ConnectionError)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "text, expected",
    [
        ("I really like jasmine tea", "preference"),
        ("We visited Kyoto last year", "experience"),
        ("My birthday is on May 3rd", "fact"),
        ("A hash map works by bucketing keys", "knowledge"),
        ("Remind me to call the dentist", "task"),
        ("Is it going to rain tomorrow?", "question"),
        ("我昨天去过故宫", "experience"),
        ("Sunny afternoon", "general"),
    ],
)
async def test_heuristic_category_without_llm(text, expected):
    assert await LLMTextIntelligence().categorize(text) == expected


@pytest.mark.asyncio
async def test_llm_category_used_when_configured():
    intelligence = LLMTextIntelligence(FakeLLM("opinion"))
    assert await intelligence.categorize("I really like jasmine tea") == "opinion"
