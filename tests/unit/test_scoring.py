"""Tests for the scoring collaborators."""

import asyncio
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from anthropic import APIConnectionError, BadRequestError, RateLimitError

from eval_jobs.config.models import ScoringConfig, ScoringProviderType
from eval_jobs.errors import RetryableWorkerError, TerminalWorkerError
from eval_jobs.jobs.models import AgentConfiguration, JobConfiguration
from eval_jobs.models.evaluation import EvaluationItem
from eval_jobs.scoring import similarity as similarity_module
from eval_jobs.scoring.claude import ClaudeJudgeScorer
from eval_jobs.scoring.factory import create_scorer, get_available_providers
from eval_jobs.scoring.similarity import (
    SimilarityScorer,
    edit_similarity,
    keyword_overlap,
    length_ratio,
    levenshtein_distance,
    similarity_score,
)

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def text_response(text: str):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


class TestSimilarityFunctions:
    """Tests for the text similarity measures."""

    def test_levenshtein(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("same", "same") == 0

    def test_edit_similarity_ignores_case(self):
        assert edit_similarity("Paris", "paris") == 1.0

    def test_keyword_overlap(self):
        assert keyword_overlap("a b", "b c") == pytest.approx(1 / 3)
        assert keyword_overlap("", "") == 0.0

    def test_length_ratio(self):
        assert length_ratio("ab", "abcd") == 0.5
        assert length_ratio("", "") == 1.0

    def test_identical(self):
        assert similarity_score("The capital is Paris.", "The capital is Paris.") == 1.0

    def test_empty_strings(self):
        assert similarity_score("", "") == 1.0
        assert similarity_score("expected", "") == 0.0
        assert similarity_score("", "actual") == 0.0

    def test_weighted_combination(self):
        expected = "the cat sat"
        actual = "the dog sat"
        score = similarity_score(expected, actual)
        assert score == pytest.approx(
            edit_similarity(expected, actual) * 0.5
            + keyword_overlap(expected, actual) * 0.3
            + length_ratio(expected, actual) * 0.2
        )
        assert 0.0 < score < 1.0

    def test_unrelated_scores_low(self):
        assert similarity_score("The capital is Paris.", "Bananas are yellow fruit") < 0.5

    def test_long_responses(self):
        expected = "word " * 4000
        assert levenshtein_distance("a" * 5000, "b" * 5000) == 5000
        assert similarity_score(expected, expected) == 1.0
        assert 0.0 < similarity_score(expected, expected + "extra " * 200) < 1.0


class TestSimilarityScorer:
    @pytest.mark.asyncio
    async def test_scores_recorded_response(self):
        item = EvaluationItem(
            item_id="item_1", prompt="Capital?", expected_response="Paris", actual_response="Paris"
        )
        score = await SimilarityScorer().score(item, JobConfiguration())

        assert score.similarity_score == 1.0
        assert score.actual_response == "Paris"

    @pytest.mark.asyncio
    async def test_missing_response_without_responder(self):
        item = EvaluationItem(item_id="item_1", prompt="Capital?", expected_response="Paris")
        with pytest.raises(TerminalWorkerError):
            await SimilarityScorer().score(item, JobConfiguration())

    @pytest.mark.asyncio
    async def test_responder_produces_answer(self):
        responder = AsyncMock(return_value="Paris")
        item = EvaluationItem(item_id="item_1", prompt="Capital?", expected_response="Paris")

        score = await SimilarityScorer(responder=responder).score(item, JobConfiguration())

        assert score.actual_response == "Paris"
        responder.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_scoring_does_not_block_the_event_loop(self, monkeypatch):
        """A slow comparison must still let wait_for time the call out."""

        def slow_similarity(expected, actual):
            time.sleep(0.5)
            return 1.0

        monkeypatch.setattr(similarity_module, "similarity_score", slow_similarity)
        item = EvaluationItem(
            item_id="item_1", prompt="Capital?", expected_response="Paris", actual_response="Paris"
        )

        started = time.monotonic()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(SimilarityScorer().score(item, JobConfiguration()), timeout=0.1)
        assert time.monotonic() - started < 0.4


class TestClaudeJudgeScorer:
    """Tests for ClaudeJudgeScorer with a mocked client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.messages.create = AsyncMock()
        return client

    @pytest.fixture
    def item(self):
        return EvaluationItem(
            item_id="item_1",
            prompt="What is the capital of France?",
            expected_response="Paris",
            actual_response="The capital of France is Paris.",
        )

    @pytest.mark.asyncio
    async def test_parses_verdict(self, client, item):
        client.messages.create.return_value = text_response(
            '```json\n{"similarity_score": 0.92, "reasoning": "Same answer", '
            '"differences": "More verbose"}\n```'
        )
        scorer = ClaudeJudgeScorer(model="claude-test", client=client)

        score = await scorer.score(item, JobConfiguration())

        assert score.similarity_score == 0.92
        assert score.reasoning == "Same answer"
        assert score.differences == "More verbose"
        assert scorer.name == "claude:claude-test"
        assert client.messages.create.await_args.kwargs["model"] == "claude-test"

    @pytest.mark.asyncio
    async def test_answers_then_judges(self, client):
        client.messages.create.side_effect = [
            text_response("Paris"),
            text_response('{"similarity_score": 1.0, "reasoning": "Exact"}'),
        ]
        configuration = JobConfiguration(
            prompt_template="Answer briefly: {prompt}",
            agent_configuration=AgentConfiguration(additional_instructions="Be terse."),
        )
        item = EvaluationItem(
            item_id="item_1", prompt="Capital of France?", expected_response="Paris"
        )

        score = await ClaudeJudgeScorer(client=client).score(item, configuration)

        assert score.actual_response == "Paris"
        answer_call = client.messages.create.await_args_list[0].kwargs
        assert answer_call["messages"][0]["content"] == "Answer briefly: Capital of France?"
        assert "Be terse." in answer_call["system"]

    @pytest.mark.asyncio
    async def test_invalid_verdict_is_retryable(self, client, item):
        client.messages.create.return_value = text_response("I think they match.")
        with pytest.raises(RetryableWorkerError):
            await ClaudeJudgeScorer(client=client).score(item, JobConfiguration())

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self, client, item):
        client.messages.create.side_effect = APIConnectionError(request=REQUEST)
        with pytest.raises(RetryableWorkerError):
            await ClaudeJudgeScorer(client=client).score(item, JobConfiguration())

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self, client, item):
        client.messages.create.side_effect = RateLimitError(
            "rate limited", response=httpx.Response(429, request=REQUEST), body=None
        )
        with pytest.raises(RetryableWorkerError):
            await ClaudeJudgeScorer(client=client).score(item, JobConfiguration())

    @pytest.mark.asyncio
    async def test_bad_request_is_terminal(self, client, item):
        client.messages.create.side_effect = BadRequestError(
            "bad request", response=httpx.Response(400, request=REQUEST), body=None
        )
        with pytest.raises(TerminalWorkerError) as exc_info:
            await ClaudeJudgeScorer(client=client).score(item, JobConfiguration())
        assert exc_info.value.details["status_code"] == 400


class TestFactory:
    def test_default_is_similarity(self):
        assert isinstance(create_scorer(), SimilarityScorer)

    def test_claude(self):
        scorer = create_scorer(
            ScoringConfig(provider=ScoringProviderType.CLAUDE, model="claude-test"),
            api_key="test-key",
        )
        assert isinstance(scorer, ClaudeJudgeScorer)
        assert scorer.name == "claude:claude-test"

    def test_available_providers(self):
        assert get_available_providers() == ["similarity", "claude"]
