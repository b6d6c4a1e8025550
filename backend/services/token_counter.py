"""Token counting backed by tiktoken."""
import logging
from typing import Optional

import tiktoken

from config import TOKEN_ENCODING

logger = logging.getLogger(__name__)


class TokenCounter:
    """Counts and truncates text in model tokens. The encoding loads on first use."""

    def __init__(self, encoding_name: str = TOKEN_ENCODING):
        self.encoding_name = encoding_name
        self._encoder: Optional[tiktoken.Encoding] = None

    @property
    def encoder(self) -> tiktoken.Encoding:
        if self._encoder is None:
            self._encoder = tiktoken.get_encoding(self.encoding_name)
            logger.info(f"Initialized tiktoken encoder ({self.encoding_name})")
        return self._encoder

    def count(self, text: str) -> int:
        return len(self.encoder.encode(text))

    def truncate(self, text: str, max_tokens: int) -> str:
        """Return the longest prefix of `text` that fits in `max_tokens` tokens."""
        if max_tokens <= 0:
            return ""
        tokens = self.encoder.encode(text)
        if len(tokens) <= max_tokens:
            return text
        return self.encoder.decode(tokens[:max_tokens])
