"""Token estimation and exact counting with a bounded cache."""

from __future__ import annotations

import math
import threading
from typing import Any

import tiktoken
from loguru import logger

from .config import TokenCounterConfig

MESSAGE_OVERHEAD = 4  # role/formatting tokens per chat message
PRIMING_TOKENS = 2


class TokenCounter:
    """Counts tokens for budget management.

    Two modes:

    * :meth:`estimate` -- ``ceil(len / 3.5)``, cheap, used while selecting.
    * :meth:`count` -- exact tiktoken count for a model, used to verify the
      final prompt. Unknown models use the default encoding; if no encoding
      can be loaded a CJK-aware character heuristic is used instead.

    Both are memoized in one bounded cache keyed by ``model:content``. When it
    grows past capacity only the most recently inserted half is kept. The
    cache is guarded by a lock so the counter can be shared across users.
    """

    _ESTIMATE_KEY = "~estimate"

    def __init__(
        self,
        model: str | None = None,
        config: TokenCounterConfig | None = None,
    ):
        self._config = config or TokenCounterConfig()
        self._model = model or self._config.default_model
        self._encoders: dict[str, Any] = {}
        self._cache: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def model(self) -> str:
        return self._model

    @property
    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def estimate(self, text: str) -> int:
        """Fast heuristic token estimate."""
        key = f"{self._ESTIMATE_KEY}:{text}"
        cached = self._lookup(key)
        if cached is not None:
            return cached
        tokens = math.ceil(len(text) / self._config.chars_per_token)
        self._remember(key, tokens)
        return tokens

    def count(self, text: str, model: str | None = None) -> int:
        """Exact token count for ``model`` (defaults to the counter's model)."""
        model = model or self._model
        key = f"{model}:{text}"
        cached = self._lookup(key)
        if cached is not None:
            return cached

        encoder = self._get_encoder(model)
        if encoder is not None:
            tokens = len(encoder.encode(text, disallowed_special=()))
        else:
            tokens = self._heuristic_tokens(text)
        self._remember(key, tokens)
        return tokens

    def count_messages(
        self, messages: list[dict], model: str | None = None
    ) -> int:
        """Count total tokens in a list of chat messages."""
        if not messages:
            return 0
        total = PRIMING_TOKENS
        for msg in messages:
            total += MESSAGE_OVERHEAD
            content = msg.get("content", "")
            if isinstance(content, str):
                total += self.count(content, model)
            elif isinstance(content, list):
                # Multimodal content (text + images)
                for item in content:
                    if isinstance(item, dict) and item.get("type") == "text":
                        total += self.count(item.get("text", ""), model)
                    elif isinstance(item, dict) and item.get("type") == "image_url":
                        total += 85
            if msg.get("name"):
                total += self.count(msg["name"], model)
        return total

    def estimate_message(self, content: str) -> int:
        """Estimated cost of one chat message including its overhead."""
        return self.estimate(content) + MESSAGE_OVERHEAD

    def _lookup(self, key: str) -> int | None:
        with self._lock:
            return self._cache.get(key)

    def _remember(self, key: str, tokens: int) -> None:
        capacity = self._config.cache_capacity
        with self._lock:
            self._cache[key] = tokens
            if len(self._cache) > capacity:
                keep = max(1, capacity // 2)
                recent = list(self._cache.items())[-keep:]
                self._cache = dict(recent)
                logger.debug(f"Token cache pruned to {len(self._cache)} entries")

    def _get_encoder(self, model: str) -> Any:
        with self._lock:
            if model in self._encoders:
                return self._encoders[model]

        encoder = None
        try:
            encoder = tiktoken.encoding_for_model(model)
        except KeyError:
            logger.debug(
                f"No tokenizer registered for {model!r}, "
                f"using {self._config.default_encoding}"
            )
            try:
                encoder = tiktoken.get_encoding(self._config.default_encoding)
            except Exception as e:
                logger.warning(f"Default tokenizer unavailable: {e}")
        except Exception as e:
            logger.warning(
                f"Tokenizer for {model!r} unavailable ({e}), "
                "using character-based estimation"
            )

        with self._lock:
            self._encoders[model] = encoder
        return encoder

    @staticmethod
    def _heuristic_tokens(text: str) -> int:
        """Estimate tokens using character-based heuristics.

        English: ~4 characters per token
        CJK (Korean, Japanese, Chinese): ~2 characters per token
        """
        if not text:
            return 0
        cjk_count = sum(
            1
            for c in text
            if "\u4e00" <= c <= "\u9fff"  # CJK Unified
            or "\uac00" <= c <= "\ud7af"  # Korean Hangul
            or "\u3040" <= c <= "\u309f"  # Hiragana
            or "\u30a0" <= c <= "\u30ff"  # Katakana
        )
        non_cjk = len(text) - cjk_count
        return max(1, (non_cjk // 4) + (cjk_count // 2))
