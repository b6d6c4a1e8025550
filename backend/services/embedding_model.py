"""Embedding model integration with Hugging Face Inference API."""
import asyncio
import time
import logging
from typing import List, Optional
import httpx
import numpy as np
from config import (
    HUGGINGFACE_API_KEY,
    EMBEDDING_MODEL,
    EMBEDDING_DIMENSION,
    EMBEDDING_MAX_RETRIES,
    EMBEDDING_INITIAL_DELAY,
    EMBEDDING_TIMEOUT,
)
from services.errors import PermanentEmbeddingError, TransientEmbeddingError

logger = logging.getLogger(__name__)

# Status codes meaning the text itself was rejected; retrying cannot help.
_CONTENT_REJECTED = {400, 413, 422}
_AUTH_FAILED = {401, 403}


class EmbeddingModel:
    """Async wrapper for the Hugging Face Inference API feature-extraction endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = HUGGINGFACE_API_KEY,
        model_name: str = EMBEDDING_MODEL,
        dimension: int = EMBEDDING_DIMENSION,
        max_retries: int = EMBEDDING_MAX_RETRIES,
        initial_delay: float = EMBEDDING_INITIAL_DELAY,
        timeout: float = EMBEDDING_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the embedding model client.

        Args:
            api_key: Hugging Face API key
            model_name: Model identifier (default: sentence-transformers/all-mpnet-base-v2)
            dimension: Expected vector length
            max_retries: Maximum attempts for transient failures
            initial_delay: Initial delay in seconds for exponential backoff
            timeout: Request timeout in seconds
            client: Optional shared httpx.AsyncClient
        """
        if not api_key:
            raise ValueError("HUGGINGFACE_API_KEY environment variable is required")

        self.api_key = api_key
        self.model_name = model_name
        self.dimension = dimension
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.timeout = timeout
        self.api_url = f"https://api-inference.huggingface.co/models/{model_name}"
        self._client = client

        logger.info(f"Initialized EmbeddingModel with model: {model_name}")

    async def embed_text(self, text: str) -> np.ndarray:
        """
        Generate embedding for a single text string.

        Args:
            text: Text to embed

        Returns:
            Embedding vector (float32)

        Raises:
            PermanentEmbeddingError: If the text is empty or rejected by the API
            TransientEmbeddingError: If the API stays unavailable after all retries
        """
        if not text or not text.strip():
            raise PermanentEmbeddingError("Text cannot be empty")

        embeddings = await self._embed_with_retry([text])
        if len(embeddings) != 1:
            raise PermanentEmbeddingError(
                "Embedding API returned a mismatched batch",
                {"expected": 1, "received": len(embeddings)}
            )
        return self._to_vector(embeddings[0])

    def _to_vector(self, raw) -> np.ndarray:
        vector = np.asarray(raw, dtype=np.float32)
        if vector.ndim != 1 or vector.shape[0] != self.dimension:
            raise PermanentEmbeddingError(
                "Embedding has unexpected shape",
                {"expected_dimension": self.dimension, "shape": list(vector.shape)}
            )
        return vector

    async def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        """
        Call the HF API with exponential backoff for transient failures.

        HF free tier models "sleep" and answer 503 while loading; 429, 5xx,
        timeouts and network errors are retried the same way.

        Raises:
            PermanentEmbeddingError: On content or authentication rejection
            TransientEmbeddingError: If every attempt failed transiently
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

        payload = {
            "inputs": texts,
            "options": {
                "wait_for_model": True  # Wait for model to load if sleeping
            }
        }

        delay = self.initial_delay
        last_error = None

        for attempt in range(self.max_retries):
            try:
                start_time = time.time()
                response = await self._post(headers, payload)
                elapsed = time.time() - start_time

                if response.status_code in _CONTENT_REJECTED:
                    raise PermanentEmbeddingError(
                        "Embedding API rejected the text",
                        {"status_code": response.status_code, "body": response.text[:200]}
                    )

                if response.status_code in _AUTH_FAILED:
                    logger.error("Authentication failed for Hugging Face API")
                    raise PermanentEmbeddingError("Invalid API key", {"status_code": response.status_code})

                if response.status_code == 200:
                    if elapsed > 10.0:
                        logger.info(
                            f"Model loading delay detected: {elapsed:.1f}s for {len(texts)} texts "
                            f"(attempt {attempt + 1})"
                        )
                    else:
                        logger.debug(f"Generated embeddings for {len(texts)} texts in {elapsed:.2f}s")
                    return response.json()

                # 503 (model loading), 429 (rate limit) and other server errors
                last_error = f"API request failed with status {response.status_code}"
                logger.warning(f"{last_error} on attempt {attempt + 1}/{self.max_retries}")

            except httpx.TimeoutException:
                last_error = f"Request timeout after {self.timeout}s"
                logger.warning(f"{last_error} on attempt {attempt + 1}/{self.max_retries}")

            except httpx.RequestError as e:
                last_error = f"Network error: {str(e)}"
                logger.warning(f"{last_error} on attempt {attempt + 1}/{self.max_retries}")

            if attempt < self.max_retries - 1:
                await asyncio.sleep(delay)
                delay = min(delay * 2, 60.0)  # Exponential backoff, max 60s

        error_msg = f"Failed to generate embeddings after {self.max_retries} attempts. Last error: {last_error}"
        logger.error(error_msg)
        raise TransientEmbeddingError(error_msg, {"attempts": self.max_retries, "last_error": last_error})

    async def _post(self, headers: dict, payload: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.api_url, headers=headers, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.api_url, headers=headers, json=payload)

    async def warmup(self) -> bool:
        """
        Warm up the model with a dummy query to avoid cold start delays.

        Returns:
            True if warmup successful, False otherwise
        """
        try:
            logger.info("Warming up embedding model...")
            start_time = time.time()
            await self.embed_text("warmup query")
            elapsed = time.time() - start_time
            logger.info(f"Model warmup completed in {elapsed:.1f}s")
            return True
        except (PermanentEmbeddingError, TransientEmbeddingError) as e:
            logger.error(f"Model warmup failed: {str(e)}")
            return False
