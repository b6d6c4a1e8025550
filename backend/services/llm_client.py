"""LLM client for Groq API answer generation over assembled context."""
import asyncio
import time
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Sequence, Union
from groq import AsyncGroq
from groq import RateLimitError, AuthenticationError, APIError, APITimeoutError
import logging

from models.retrieval import ContextChunk
from config import GROQ_API_KEY, ANSWER_MODEL, ANSWER_MAX_TOKENS, ANSWER_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from LLM generation."""
    text: str
    tokens_input: int
    tokens_output: int
    latency_ms: int
    model_used: str


@dataclass
class LLMError:
    """Structured error response from LLM operations."""
    code: str
    message: str
    details: Dict[str, Any]


class LLMClientError(Exception):
    """Custom exception for LLM client errors with structured error information."""

    def __init__(self, error: LLMError):
        self.error = error
        super().__init__(error.message)


@dataclass
class GeneratedAnswer:
    """Narrative answer synthesised by the model."""
    text: str
    sources: List[str]
    model_used: str
    tokens_input: int
    tokens_output: int
    latency_ms: int
    degraded: bool = field(default=False, init=False)


@dataclass
class FallbackAnswer:
    """Templated answer listing sources, used when generation is unavailable."""
    text: str
    sources: List[str]
    reason: str  # LLMError code
    degraded: bool = field(default=True, init=False)


Answer = Union[GeneratedAnswer, FallbackAnswer]


def source_names(context: Sequence[ContextChunk]) -> List[str]:
    """Distinct document names in context order."""
    names: List[str] = []
    for chunk in context:
        if chunk.document_name not in names:
            names.append(chunk.document_name)
    return names


class LLMClient:
    """Client for interfacing with Groq API for answer generation."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = ANSWER_MODEL,
        max_tokens: int = ANSWER_MAX_TOKENS,
        timeout: float = ANSWER_TIMEOUT_SECONDS,
        client: Optional[AsyncGroq] = None
    ):
        """
        Initialize LLM client with Groq API key.

        Args:
            api_key: Groq API key (defaults to GROQ_API_KEY from environment)
            model: Chat model used for answers
            max_tokens: Maximum tokens to generate
            timeout: Seconds before generation is abandoned for the fallback
            client: Pre-built AsyncGroq client
        """
        self.api_key = api_key or GROQ_API_KEY
        if client is None and not self.api_key:
            raise ValueError("GROQ_API_KEY must be provided or set in environment")

        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.client = client or AsyncGroq(api_key=self.api_key)
        logger.info("LLMClient initialized successfully")

    async def generate(self, prompt: str, model: Optional[str] = None, max_tokens: Optional[int] = None) -> LLMResponse:
        """
        Generate a completion using Groq API.

        Args:
            prompt: Complete prompt with context and query
            model: Model name (defaults to the configured answer model)
            max_tokens: Maximum tokens to generate

        Returns:
            LLMResponse with text, token counts, and latency

        Raises:
            LLMClientError: Structured error with code, message, and details
        """
        model = model or self.model
        start_time = time.time()

        try:
            logger.debug(f"Generating response with model: {model}")

            response = await self.client.chat.completions.create(
                model=model,
                messages=[
                    {
                        "role": "user",
                        "content": prompt
                    }
                ],
                max_tokens=max_tokens or self.max_tokens,
                temperature=0.7
            )

            latency_ms = int((time.time() - start_time) * 1000)
            text = response.choices[0].message.content
            tokens_input = response.usage.prompt_tokens
            tokens_output = response.usage.completion_tokens

            logger.info(
                f"Generated response: model={model}, "
                f"input_tokens={tokens_input}, output_tokens={tokens_output}, "
                f"latency={latency_ms}ms"
            )

            return LLMResponse(
                text=text,
                tokens_input=tokens_input,
                tokens_output=tokens_output,
                latency_ms=latency_ms,
                model_used=model
            )

        except RateLimitError as e:
            raise self._error(
                "RATE_LIMIT_ERROR", "Rate limit exceeded. Please try again in a few moments.",
                model, start_time, e, retry_after=60
            )
        except AuthenticationError as e:
            raise self._error(
                "AUTHENTICATION_ERROR", "Authentication failed. Please check your API key.",
                model, start_time, e
            )
        except APITimeoutError as e:
            raise self._error("TIMEOUT_ERROR", "Request timed out. Please try again.", model, start_time, e)
        except APIError as e:
            raise self._error("API_ERROR", f"Groq API error: {str(e)}", model, start_time, e)
        except Exception as e:
            raise self._error("UNKNOWN_ERROR", f"Unexpected error: {str(e)}", model, start_time, e)

    async def answer(self, query: str, context: Sequence[ContextChunk]) -> Answer:
        """
        Answer a query from assembled context.

        Never raises for generator failures: an unreachable, failing or slow
        model yields a FallbackAnswer listing the retrieved sources.

        Args:
            query: User question
            context: Assembled context chunks

        Returns:
            GeneratedAnswer on success, FallbackAnswer otherwise
        """
        sources = source_names(context)
        prompt = self.build_prompt(query, context)

        try:
            response = await asyncio.wait_for(self.generate(prompt), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Answer generation exceeded {self.timeout}s; using fallback answer")
            return FallbackAnswer(text=self.fallback_text(query, sources), sources=sources, reason="TIMEOUT_ERROR")
        except LLMClientError as e:
            logger.warning(f"Answer generation failed ({e.error.code}); using fallback answer")
            return FallbackAnswer(text=self.fallback_text(query, sources), sources=sources, reason=e.error.code)

        return GeneratedAnswer(
            text=response.text,
            sources=sources,
            model_used=response.model_used,
            tokens_input=response.tokens_input,
            tokens_output=response.tokens_output,
            latency_ms=response.latency_ms
        )

    @staticmethod
    def _error(code: str, message: str, model: str, start_time: float, e: Exception, **extra_details) -> LLMClientError:
        latency_ms = int((time.time() - start_time) * 1000)
        error = LLMError(
            code=code,
            message=message,
            details={
                "model": model,
                "latency_ms": latency_ms,
                "original_error": str(e),
                **extra_details
            }
        )
        logger.error(
            f"{code}: model={model}, latency={latency_ms}ms, error={e}",
            exc_info=True,
            extra={"error_code": error.code, "error_details": error.details}
        )
        return LLMClientError(error)

    @staticmethod
    def fallback_text(query: str, sources: Sequence[str]) -> str:
        """Templated reply used when the model cannot be reached."""
        if not sources:
            return (
                f'I found 0 relevant document(s) about "{query}". '
                "Try uploading more documents to expand my knowledge."
            )
        listing = "\n".join(f"- {name}" for name in sources)
        return (
            f'I found {len(sources)} relevant document(s) about "{query}". '
            f'The most relevant is "{sources[0]}".\n\nSources:\n{listing}'
        )

    @staticmethod
    def build_prompt(query: str, context: Optional[Sequence[ContextChunk]] = None) -> str:
        """
        Build prompt template with numbered sources and the query.

        Args:
            query: User question
            context: Assembled context chunks

        Returns:
            Complete prompt string
        """
        context_section = ""
        if context:
            blocks = []
            for i, chunk in enumerate(context, start=1):
                marker = " (truncated)" if chunk.truncated else ""
                blocks.append(
                    f"[Source {i}: {chunk.document_name}, {chunk.content_timestamp.date().isoformat()}{marker}]\n"
                    f"{chunk.text}"
                )
            context_section = "Context from knowledge base:\n" + "\n\n".join(blocks) + "\n\n"

        prompt = f"""You are a helpful AI assistant with access to the user's personal knowledge base. Use the provided context to answer questions accurately and concisely.

{context_section}User question: {query}

Instructions:
- Answer based on the provided context
- If the context doesn't contain relevant information, say so clearly
- Refer to sources by their number when you use them

Answer:"""

        return prompt
