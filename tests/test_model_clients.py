"""Tests for the model runner clients (chat completions and embeddings)."""

import pytest

from config.settings import EmbeddingsConfig, LLMConfig
from indexer.embeddings import (
    DEFAULT_DIMENSIONS,
    EmbeddingClient,
    embedding_dimensions,
    reciprocal_rank_fusion,
)
from indexer.llm import LLMClient, parse_tags
from indexer.model_runner import ModelRunnerClient
from pipelines.errors import ConfigurationError, ModelError


def chat_reply(text):
    return 200, {"choices": [{"message": {"role": "assistant", "content": text}}]}


class TestModelRunnerClient:
    """Construction rules"""

    def test_socket_required_without_session(self):
        """A socket path is needed unless a session is supplied"""
        with pytest.raises(ConfigurationError):
            ModelRunnerClient(socket_path="", model="ai/gemma3", base_url="http://localhost/v1")

    def test_model_required(self):
        """A model name is always needed"""
        with pytest.raises(ConfigurationError):
            ModelRunnerClient(socket_path="/tmp/runner.sock", model="", base_url="http://localhost/v1")


class TestLLMClient:
    """Tag and summary generation"""

    @pytest.mark.asyncio
    async def test_enrich_document(self, runner):
        """Tags come from the first reply and the summary from the second"""
        runner.chat_responses = [
            chat_reply(" install, setup , ,getting started "),
            chat_reply("  How to install the toolchain.\n"),
        ]
        client = LLMClient(LLMConfig(base_url=runner.base_url), session=runner.session)

        result = await client.enrich_document("Getting Started", "Run install.")

        assert result.tags == ["install", "setup", "getting started"]
        assert result.summary == "How to install the toolchain."
        kind, payload = runner.requests[0]
        assert kind == "chat"
        assert payload["model"] == "ai/gemma3"
        assert "max_tokens" not in payload
        assert "Title: Getting Started" in payload["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_content_truncated(self, runner):
        """Prompts carry at most max_content_chars of the document"""
        runner.chat_responses = [chat_reply("a"), chat_reply("b")]
        config = LLMConfig(base_url=runner.base_url, max_content_chars=100, max_tokens=256)
        client = LLMClient(config, session=runner.session)

        await client.enrich_document("T", "x" * 500)

        prompt = runner.requests[0][1]["messages"][0]["content"]
        assert "x" * 100 in prompt
        assert "x" * 101 not in prompt
        assert runner.requests[0][1]["max_tokens"] == 256

    @pytest.mark.asyncio
    async def test_error_body(self, runner):
        """An error object in the response fails tag generation"""
        runner.chat_responses = [(200, {"error": {"message": "model not loaded"}})]
        client = LLMClient(LLMConfig(base_url=runner.base_url), session=runner.session)

        with pytest.raises(ModelError, match="failed to generate tags: API error: model not loaded"):
            await client.enrich_document("T", "body")

    @pytest.mark.asyncio
    async def test_http_error_on_summary(self, runner):
        """A non-200 status on the second call fails summary generation"""
        runner.chat_responses = [chat_reply("a, b"), (500, "boom")]
        client = LLMClient(LLMConfig(base_url=runner.base_url), session=runner.session)

        with pytest.raises(ModelError, match="failed to generate summary"):
            await client.enrich_document("T", "body")

    @pytest.mark.asyncio
    async def test_no_choices(self, runner):
        """An empty choice list is an error"""
        runner.chat_responses = [(200, {"choices": []})]
        client = LLMClient(LLMConfig(base_url=runner.base_url), session=runner.session)

        with pytest.raises(ModelError, match="no response returned"):
            await client.complete("hello")

    @pytest.mark.asyncio
    async def test_undecodable_body(self, runner):
        """A body that is not JSON is an error"""
        runner.chat_responses = [(200, "not json")]
        client = LLMClient(LLMConfig(base_url=runner.base_url), session=runner.session)

        with pytest.raises(ModelError, match="failed to decode"):
            await client.complete("hello")

    @pytest.mark.asyncio
    async def test_invalid_utf8_reply(self, runner):
        """A reply cut inside a multi-byte character is decoded with replacement"""
        runner.chat_responses = [(200, b'{"choices":[{"message":{"content":"tag\xff, other"}}]}')]
        client = LLMClient(LLMConfig(base_url=runner.base_url), session=runner.session)

        reply = await client.complete("hello")

        assert reply == "tag\ufffd, other"

    @pytest.mark.asyncio
    async def test_choice_not_an_object(self, runner):
        runner.chat_responses = [(200, {"choices": ["just text"]})]
        client = LLMClient(LLMConfig(base_url=runner.base_url), session=runner.session)

        with pytest.raises(ModelError, match="unexpected response shape"):
            await client.complete("hello")

    @pytest.mark.asyncio
    async def test_content_not_a_string(self, runner):
        """Non-string content is an error rather than a crash"""
        runner.chat_responses = [(200, {"choices": [{"message": {"content": ["a", "b"]}}]})]
        client = LLMClient(LLMConfig(base_url=runner.base_url), session=runner.session)

        with pytest.raises(ModelError, match="content is not a string"):
            await client.complete("hello")

    def test_parse_tags(self):
        """Empty and whitespace-only entries are dropped"""
        assert parse_tags("a, b,, c ,") == ["a", "b", "c"]
        assert parse_tags("") == []


class TestEmbeddingClient:
    """Dense vectors"""

    @pytest.mark.asyncio
    async def test_embed(self, runner):
        """The first returned vector is used"""
        runner.embedding_responses = [(200, {"data": [{"embedding": [0.1, 0.2, 0.3]}]})]
        client = EmbeddingClient(EmbeddingsConfig(base_url=runner.base_url), session=runner.session)

        assert await client.embed("hello") == [0.1, 0.2, 0.3]
        assert runner.requests[0] == ("embeddings", {"model": "ai/embeddinggemma", "input": "hello"})

    @pytest.mark.asyncio
    async def test_input_truncated(self, runner):
        """Inputs longer than max_input_chars are cut before sending"""
        runner.embedding_responses = [(200, {"data": [{"embedding": [1.0]}]})]
        config = EmbeddingsConfig(base_url=runner.base_url, max_input_chars=10)
        client = EmbeddingClient(config, session=runner.session)

        await client.embed("y" * 50)

        assert runner.requests[0][1]["input"] == "y" * 10

    @pytest.mark.asyncio
    async def test_empty_result(self, runner):
        """No vector in the response is an error"""
        runner.embedding_responses = [(200, {"data": []})]
        client = EmbeddingClient(EmbeddingsConfig(base_url=runner.base_url), session=runner.session)

        with pytest.raises(ModelError, match="no embedding returned"):
            await client.embed("hello")

    @pytest.mark.asyncio
    async def test_item_not_an_object(self, runner):
        """A bare list in place of the embedding object is an error"""
        runner.embedding_responses = [(200, {"data": [[0.1, 0.2, 0.3]]})]
        client = EmbeddingClient(EmbeddingsConfig(base_url=runner.base_url), session=runner.session)

        with pytest.raises(ModelError, match="unexpected response shape"):
            await client.embed("hello")

    @pytest.mark.asyncio
    async def test_embedding_not_a_list(self, runner):
        runner.embedding_responses = [(200, {"data": [{"embedding": "0.1,0.2"}]})]
        client = EmbeddingClient(EmbeddingsConfig(base_url=runner.base_url), session=runner.session)

        with pytest.raises(ModelError, match="embedding is not a list"):
            await client.embed("hello")

    @pytest.mark.asyncio
    async def test_non_numeric_values(self, runner):
        runner.embedding_responses = [(200, {"data": [{"embedding": [0.1, "n/a", None]}]})]
        client = EmbeddingClient(EmbeddingsConfig(base_url=runner.base_url), session=runner.session)

        with pytest.raises(ModelError, match="non-numeric"):
            await client.embed("hello")

    def test_dimensions_table(self):
        """Known models map to their widths; others default to 768"""
        assert embedding_dimensions("ai/embeddinggemma") == 768
        assert embedding_dimensions("ai/snowflake-arctic-embed") == 1024
        assert embedding_dimensions("ai/qwen3-embedding") == 2560
        assert embedding_dimensions("someone/else") == DEFAULT_DIMENSIONS == 768


class TestReciprocalRankFusion:
    """Client-side rank fusion"""

    def test_shared_results_rank_first(self):
        """A document found by both rankings outranks single-list hits"""
        fused = reciprocal_rank_fusion([["a", "b", "c"], ["c", "d"]])
        assert fused[0][0] == "c"
        assert {doc_id for doc_id, _ in fused} == {"a", "b", "c", "d"}

    def test_scores(self):
        """Each appearance adds 1 / (k + rank)"""
        fused = dict(reciprocal_rank_fusion([["a"], ["b", "a"]], k=60))
        assert fused["a"] == pytest.approx(1 / 61 + 1 / 62)
        assert fused["b"] == pytest.approx(1 / 61)

    def test_ties_keep_first_seen_order(self):
        """Equal scores keep the order in which ids were first seen"""
        fused = reciprocal_rank_fusion([["a"], ["b"]])
        assert [doc_id for doc_id, _ in fused] == ["a", "b"]

    def test_empty(self):
        assert reciprocal_rank_fusion([]) == []
