"""Context budget assembler.

Builds the chat prompt for one reply within the model's token limit:

1. The system prompt and the current message are always included.
2. A reply buffer of ``min(reply_reserve_max, ratio * limit)`` is held back.
3. History is chosen in two tiers: the most recent block first (newest to
   oldest, stopping at the first message that does not fit), then the older
   messages by importance.
4. The chosen history is emitted in chronological order.
5. The result is verified with exact token counts and trimmed if needed.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from .config import ContextConfig
from .importance import ImportanceScorer
from .models import ChatMessage, LongTermMemory
from .token_counter import PRIMING_TOKENS, TokenCounter


@dataclass
class _Selected:
    index: int
    recent: bool
    score: float


class ContextAssembler:
    """Fits conversation history into a token budget.

    Selection uses the cheap estimate; only the final prompt is counted
    exactly.
    """

    def __init__(
        self,
        token_counter: TokenCounter,
        scorer: ImportanceScorer | None = None,
        config: ContextConfig | None = None,
    ):
        self.token_counter = token_counter
        self.scorer = scorer or ImportanceScorer()
        self.config = config or ContextConfig()

    def reply_reserve(self, model_token_limit: int) -> int:
        return min(
            self.config.reply_reserve_max,
            int(model_token_limit * self.config.reply_reserve_ratio),
        )

    def assemble(
        self,
        system_prompt: str | None,
        history: list[ChatMessage],
        current_message: str,
        model_token_limit: int | None = None,
        attachment_text: str | None = None,
        model: str | None = None,
    ) -> list[dict]:
        """Assemble ``[system?, *history, current]`` within the token limit.

        Args:
            system_prompt: Optional system message placed first.
            history: Prior messages, oldest first.
            current_message: The user message being answered.
            model_token_limit: Context window size of the target model.
            attachment_text: Extra content appended to the current message.
                If it pushes the prompt over the limit the context is
                rebuilt once around the enlarged message.
            model: Model name for exact counting.

        Returns:
            Chat messages ready to send.
        """
        limit = model_token_limit or self.config.default_model_token_limit

        messages = self._build(system_prompt, history, current_message, limit, model)

        if attachment_text:
            enlarged = f"{current_message}\n\n{attachment_text}"
            messages[-1] = {"role": "user", "content": enlarged}
            if self.token_counter.count_messages(messages, model) > limit:
                logger.debug("Attachment exceeds budget, rebuilding context")
                messages = self._build(system_prompt, history, enlarged, limit, model)

        return messages

    def _build(
        self,
        system_prompt: str | None,
        history: list[ChatMessage],
        current_message: str,
        limit: int,
        model: str | None,
    ) -> list[dict]:
        counter = self.token_counter

        fixed = PRIMING_TOKENS + counter.estimate_message(current_message)
        if system_prompt:
            fixed += counter.estimate_message(system_prompt)

        reserve = self.reply_reserve(limit)
        available = limit - reserve - fixed

        selected = self._select(history, available) if available > 0 else []

        logger.debug(
            f"Context budget: limit={limit}, reserve={reserve}, fixed={fixed}, "
            f"available={available}, selected={len(selected)}/{len(history)}"
        )

        messages = self._emit(system_prompt, history, selected, current_message)

        # Exact verification; drop the lowest-priority history until it fits.
        while selected and counter.count_messages(messages, model) > limit:
            dropped = selected.pop(self._lowest_priority(selected))
            logger.debug(f"Dropped history message {dropped.index} to fit budget")
            messages = self._emit(system_prompt, history, selected, current_message)

        return messages

    def _select(self, history: list[ChatMessage], available: int) -> list[_Selected]:
        counter = self.token_counter
        remaining = available
        selected: list[_Selected] = []

        block = min(self.config.recent_block_size, len(history))
        split = len(history) - block

        for i in range(len(history) - 1, split - 1, -1):
            cost = counter.estimate_message(history[i].content)
            if cost > remaining:
                break
            remaining -= cost
            selected.append(_Selected(index=i, recent=True, score=0.0))

        older = [
            _Selected(index=i, recent=False, score=self.scorer.score_message(history[i]))
            for i in range(split)
        ]
        older.sort(
            key=lambda s: (s.score, history[s.index].timestamp, s.index),
            reverse=True,
        )
        for candidate in older:
            cost = counter.estimate_message(history[candidate.index].content)
            if cost <= remaining:
                remaining -= cost
                selected.append(candidate)

        return selected

    @staticmethod
    def _lowest_priority(selected: list[_Selected]) -> int:
        """Position of the message to drop first.

        Older-tier messages go before the recent block: the lowest score,
        then the earliest. Within the recent block the oldest goes first.
        """
        older = [(s.score, s.index, pos) for pos, s in enumerate(selected) if not s.recent]
        if older:
            return min(older)[2]
        return min((s.index, pos) for pos, s in enumerate(selected))[1]

    @staticmethod
    def _emit(
        system_prompt: str | None,
        history: list[ChatMessage],
        selected: list[_Selected],
        current_message: str,
    ) -> list[dict]:
        messages: list[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for s in sorted(selected, key=lambda s: s.index):
            messages.append(history[s.index].to_chat())
        messages.append({"role": "user", "content": current_message})
        return messages

    def format_memories(self, memories: list[LongTermMemory], max_tokens: int) -> str:
        """Render retrieved memories as bullet lines within ``max_tokens``."""
        lines: list[str] = []
        used = 0
        for memory in memories:
            line = f"- {memory.summary or memory.content}"
            tokens = self.token_counter.estimate(line)
            if used + tokens > max_tokens:
                break
            lines.append(line)
            used += tokens
        return "\n".join(lines)
