"""Integration tests for LLMClient with Groq API.

These tests require a valid GROQ_API_KEY in the environment.
They will be skipped if the API key is not available.
"""
import os

import pytest

from services.llm_client import GeneratedAnswer, LLMClient
from test_llm_client import _context_chunk


@pytest.mark.skipif(
    not os.getenv("GROQ_API_KEY"),
    reason="GROQ_API_KEY not set in environment"
)
class TestLLMClientIntegration:
    """Integration tests for LLMClient with real Groq API."""

    @pytest.mark.asyncio
    async def test_generate(self):
        response = await LLMClient().generate("Reply with the single word: ready", max_tokens=10)

        assert response.text
        assert response.tokens_input > 0
        assert response.tokens_output > 0

    @pytest.mark.asyncio
    async def test_answer_from_context(self):
        context = [_context_chunk("plan.md", "The product launch moves to September after the budget review.")]

        answer = await LLMClient().answer("When is the product launch?", context)

        assert isinstance(answer, GeneratedAnswer)
        assert "September" in answer.text
        assert answer.sources == ["plan.md"]
