"""Claude-backed judge scorer."""

import json
import logging
from typing import Optional

from anthropic import (
    APIConnectionError,
    APIStatusError,
    AsyncAnthropic,
    InternalServerError,
    RateLimitError,
)
from pydantic import BaseModel, Field, ValidationError

from eval_jobs.errors import RetryableWorkerError, TerminalWorkerError
from eval_jobs.jobs.models import JobConfiguration
from eval_jobs.models.evaluation import EvaluationItem, ItemScore

logger = logging.getLogger("eval_jobs.scoring.claude")

JUDGE_SYSTEM_PROMPT = """You are an evaluation judge. You compare an AI assistant's \
actual response with the expected response for the same prompt and rate how well \
the actual response conveys the same meaning.

Score from 0.0 (unrelated or contradictory) to 1.0 (semantically equivalent). \
Judge meaning, not wording."""

ANSWER_SYSTEM_PROMPT = "Answer the user's prompt concisely and accurately."


class JudgeVerdict(BaseModel):
    """Structured verdict returned by the judge."""

    similarity_score: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    differences: Optional[str] = None


def _strip_code_fence(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        lines = content.split("\n")
        content = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    return content


class ClaudeJudgeScorer:
    """Scores items by asking Claude to compare the responses.

    When an item has no ``actual_response`` Claude first answers the prompt,
    then judges its own answer against the expected response. Retries are
    left to the caller: the client is created with ``max_retries=0`` and
    transient API failures surface as RetryableWorkerError.
    """

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 1024,
        temperature: float = 0.0,
        api_key: Optional[str] = None,
        client: Optional[AsyncAnthropic] = None,
    ):
        """Initialize the scorer.

        Args:
            model: Claude model ID to use.
            max_tokens: Maximum tokens per response.
            temperature: Sampling temperature for generated answers.
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var).
            client: Pre-built client, mainly for tests.
        """
        self._client = client or AsyncAnthropic(api_key=api_key, max_retries=0)
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature

    @property
    def name(self) -> str:
        return f"claude:{self._model}"

    async def _complete(self, system: str, content: str, temperature: float) -> str:
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": content}],
            )
        except (APIConnectionError, RateLimitError, InternalServerError) as e:
            # APITimeoutError is a subclass of APIConnectionError
            raise RetryableWorkerError(f"Transient Claude API failure: {e}") from e
        except APIStatusError as e:
            raise TerminalWorkerError(
                f"Claude API rejected the request: {e}",
                details={"status_code": e.status_code},
            ) from e

        text = ""
        for block in response.content:
            if hasattr(block, "text"):
                text += block.text
        return text

    async def _answer(self, item: EvaluationItem, configuration: JobConfiguration) -> str:
        system = ANSWER_SYSTEM_PROMPT
        agent = configuration.agent_configuration
        if agent and agent.additional_instructions:
            system = f"{system}\n\n{agent.additional_instructions}"

        prompt = item.prompt
        if configuration.prompt_template:
            prompt = configuration.prompt_template.replace("{prompt}", item.prompt)

        return await self._complete(system, prompt, self._temperature)

    async def score(self, item: EvaluationItem, configuration: JobConfiguration) -> ItemScore:
        """Score one item with Claude as the judge.

        Raises:
            RetryableWorkerError: On connection, rate-limit, timeout and
                server errors, or an unparseable verdict.
            TerminalWorkerError: On any other API error.
        """
        actual = item.actual_response
        if actual is None:
            actual = await self._answer(item, configuration)

        schema = json.dumps(JudgeVerdict.model_json_schema(), indent=2)
        system = (
            f"{JUDGE_SYSTEM_PROMPT}\n\n"
            f"You must respond with valid JSON that matches this schema:\n\n{schema}\n\n"
            "Respond ONLY with the JSON object."
        )
        content = (
            f"Prompt:\n{item.prompt}\n\n"
            f"Expected response:\n{item.expected_response}\n\n"
            f"Actual response:\n{actual}"
        )

        raw = await self._complete(system, content, 0.0)
        try:
            verdict = JudgeVerdict.model_validate(json.loads(_strip_code_fence(raw)))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Unparseable verdict for item {item.item_id}: {raw[:200]}")
            raise RetryableWorkerError(f"Judge returned an invalid verdict: {e}") from e

        return ItemScore(
            actual_response=actual,
            similarity_score=verdict.similarity_score,
            reasoning=verdict.reasoning or None,
            differences=verdict.differences,
        )
