"""Tests for classifier/summarizer parsing and the LLM-backed ports."""

from __future__ import annotations

import json

import pytest

from agent_memory.exceptions import ClassificationError
from agent_memory.llm_port import (
    LLMMemoryClassifier,
    LLMSummarizer,
    StaticMemoryClassifier,
    parse_classification,
    parse_summaries,
    strip_code_fences,
)
from agent_memory.models import (
    ClassificationResult,
    ConversationMessage,
    ExtractedMemory,
    ExtractedMemoryKind,
)


class FakeLLM:
    """Streams a canned response in small chunks."""

    def __init__(self, response: str, as_dicts: bool = False, error: Exception | None = None):
        self.response = response
        self.as_dicts = as_dicts
        self.error = error
        self.calls = []

    async def chat_completion(self, messages, system=None):
        self.calls.append((messages, system))
        if self.error is not None:
            raise self.error
        for i in range(0, len(self.response), 7):
            piece = self.response[i : i + 7]
            yield {"type": "text_delta", "text": piece} if self.as_dicts else piece


class TestParseClassification:
    def test_fenced_json(self):
        raw = "```json\n" + json.dumps(
            {
                "has_important_info": True,
                "memories": [{"type": "preference", "content": "Likes jazz", "importance": 0.7}],
            }
        ) + "\n```"
        result = parse_classification(raw)
        assert result.has_important_info is True
        assert result.memories[0].type == ExtractedMemoryKind.PREFERENCE
        assert result.memories[0].importance == pytest.approx(0.7)

    def test_invalid_json_raises(self):
        with pytest.raises(ClassificationError):
            parse_classification("not json at all")

    def test_non_object_raises(self):
        with pytest.raises(ClassificationError):
            parse_classification('"just a string"')

    def test_bad_items_dropped(self):
        raw = json.dumps(
            {
                "has_important_info": True,
                "memories": [
                    {"type": "gossip", "content": "unknown type"},
                    {"type": "fact", "content": "   "},
                    "not a dict",
                    {"type": "fact", "content": "kept", "importance": "high"},
                ],
            }
        )
        result = parse_classification(raw)
        assert [m.content for m in result.memories] == ["kept"]
        assert result.memories[0].importance == 0.5

    def test_camel_case_keys(self):
        raw = json.dumps(
            {
                "hasImportantInfo": True,
                "memories": [
                    {"type": "fact", "content": "x", "structuredData": {"city": "Oslo"}}
                ],
            }
        )
        result = parse_classification(raw)
        assert result.has_important_info is True
        assert result.memories[0].structured_data == {"city": "Oslo"}

    def test_bare_list(self):
        result = parse_classification('[{"type": "event", "content": "Moved"}]')
        assert result.has_important_info is True
        assert result.memories[0].type == ExtractedMemoryKind.EVENT

    def test_strip_code_fences(self):
        assert strip_code_fences("```\n[]\n```") == "[]"
        assert strip_code_fences("  {}  ") == "{}"


class TestParseSummaries:
    def test_array(self):
        raw = '[{"content": "A", "type": "learning", "importance": 0.9}, {"content": ""}]'
        summaries = parse_summaries(raw)
        assert len(summaries) == 1
        assert summaries[0].type == ExtractedMemoryKind.LEARNING

    def test_wrapped_object(self):
        assert len(parse_summaries('{"summaries": [{"content": "A"}]}')) == 1

    def test_invalid_json_is_empty(self):
        assert parse_summaries("nope") == []


class TestLLMClassifier:
    @pytest.mark.asyncio
    async def test_streamed_response(self):
        payload = json.dumps(
            {"has_important_info": True, "memories": [{"type": "fact", "content": "Has a cat"}]}
        )
        llm = FakeLLM(payload, as_dicts=True)
        result = await LLMMemoryClassifier(llm).classify("I have a cat", recent_context="earlier")

        assert result.memories[0].content == "Has a cat"
        prompt = llm.calls[0][0][0]["content"]
        assert "<message>\nI have a cat\n</message>" in prompt
        assert "<context>\nearlier\n</context>" in prompt

    @pytest.mark.asyncio
    async def test_empty_response(self):
        result = await LLMMemoryClassifier(FakeLLM("")).classify("hi")
        assert result.has_important_info is False

    @pytest.mark.asyncio
    async def test_call_failure_wrapped(self):
        llm = FakeLLM("", error=ConnectionError("offline"))
        with pytest.raises(ClassificationError):
            await LLMMemoryClassifier(llm).classify("hi")


class TestLLMSummarizer:
    @pytest.mark.asyncio
    async def test_summarize(self):
        llm = FakeLLM('[{"content": "User is Ada", "type": "fact", "importance": 0.8}]')
        messages = [ConversationMessage(role="user", content="My name is Ada")]
        summaries = await LLMSummarizer(llm).summarize(messages)

        assert summaries[0].content == "User is Ada"
        assert "user: My name is Ada" in llm.calls[0][0][0]["content"]


class TestStaticClassifier:
    @pytest.mark.asyncio
    async def test_canned_responses(self):
        canned = ClassificationResult(
            has_important_info=True,
            memories=[ExtractedMemory(type="fact", content="x")],
        )
        classifier = StaticMemoryClassifier(responses={"known": canned})

        assert (await classifier.classify("known")).has_important_info is True
        assert (await classifier.classify("other")).has_important_info is False
        assert classifier.calls == [("known", None), ("other", None)]

    @pytest.mark.asyncio
    async def test_results_are_copies(self):
        canned = ClassificationResult(
            has_important_info=True, memories=[ExtractedMemory(type="fact", content="x")]
        )
        classifier = StaticMemoryClassifier(default=canned)
        (await classifier.classify("a")).memories.clear()
        assert len((await classifier.classify("b")).memories) == 1
