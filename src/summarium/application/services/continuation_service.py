from __future__ import annotations

import logging
from dataclasses import dataclass

from summarium.infrastructure.llm.chat_gateway import ChatGateway, ChatMessage, CompletionReason

logger = logging.getLogger(__name__)

SEED_NONE = "none"
SEED_PARTIAL = "partial"
SEED_TAIL = "tail"

SYSTEM_PERSONA = "You are a careful, thorough book summarizer. Follow the user prompt exactly."
MULTI_CALL_NOTICE = (
    "IMPORTANT: This response may be generated across multiple calls. "
    "Do not repeat yourself. Continue seamlessly where you left off. "
    "Do NOT wrap in markdown code blocks. Output plain text only."
)

_MAX_FIT_ROUNDS = 8
_MIN_TAIL_CHARS = 2_000
_MIN_SOURCE_CHARS = 120_000


@dataclass(slots=True)
class ContinuationStep:
    fragment: str
    addition: str
    completion_reason: CompletionReason
    max_tokens: int
    seed_mode: str
    source_chars_used: int
    host: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.completion_reason.is_natural_stop


def strip_overlap(existing: str, addition: str, *, window: int = 8000, min_overlap: int = 80) -> str:
    """Drop a leading part of ``addition`` that repeats the end of ``existing``.

    Only overlaps of at least ``min_overlap`` characters within the last ``window``
    characters count, so short coincidental repeats are kept.
    """
    if not existing or not addition:
        return addition
    tail = existing[-max(0, window):]
    longest = min(len(tail), len(addition))
    for size in range(longest, min_overlap - 1, -1):
        if addition.startswith(tail[-size:]):
            return addition[size:]
    return addition


class ContinuationService:
    """Produces the next increment of a long generated document, one provider call per step."""

    def __init__(
        self,
        gateway: ChatGateway,
        *,
        max_output_tokens: int = 7000,
        partial_max_chars: int = 18_000,
        tail_chars: int = 12_000,
        context_limit_tokens: int = 0,
        token_safety_margin: int = 2048,
        min_output_tokens: int = 800,
    ) -> None:
        self.gateway = gateway
        self.max_output_tokens = max_output_tokens
        self.partial_max_chars = partial_max_chars
        self.tail_chars = tail_chars
        self.context_limit_tokens = context_limit_tokens
        self.token_safety_margin = token_safety_margin
        self.min_output_tokens = min_output_tokens

    def build_messages(
        self,
        *,
        source_text: str,
        instruction: str,
        accumulated_output: str,
        source_chars: int | None = None,
        tail_chars: int | None = None,
    ) -> tuple[list[ChatMessage], str]:
        grounding = source_text if source_chars is None else source_text[:source_chars]
        messages = [
            ChatMessage(role="system", content=SYSTEM_PERSONA),
            ChatMessage(role="system", content=f"SOURCE TEXT (with page markers):\n{grounding}"),
            ChatMessage(role="user", content=f"{instruction}\n\n{MULTI_CALL_NOTICE}"),
        ]
        if not accumulated_output.strip():
            return messages, SEED_NONE

        if len(accumulated_output) <= self.partial_max_chars:
            messages.append(ChatMessage(role="assistant", content=accumulated_output, partial=True))
            return messages, SEED_PARTIAL

        keep = self.tail_chars if tail_chars is None else tail_chars
        tail = accumulated_output[-max(0, keep):]
        messages.append(
            ChatMessage(
                role="system",
                content=(
                    f"SUMMARY_SO_FAR_TAIL (do NOT output this):\n{tail}\n\n"
                    "Continue from the end of the summary so far. Do not repeat content already written."
                ),
            )
        )
        return messages, SEED_TAIL

    def step(
        self,
        *,
        source_text: str,
        instruction: str,
        accumulated_output: str,
        model: str,
    ) -> ContinuationStep:
        source_chars = len(source_text)
        tail_chars = self.tail_chars
        messages, seed_mode = self.build_messages(
            source_text=source_text,
            instruction=instruction,
            accumulated_output=accumulated_output,
        )
        max_tokens = self.max_output_tokens

        if self.context_limit_tokens > 0:
            input_tokens = self.gateway.estimate_tokens(model=model, messages=messages)
            for _ in range(_MAX_FIT_ROUNDS):
                if self._remaining_tokens(input_tokens) >= self.min_output_tokens:
                    break
                if seed_mode == SEED_TAIL and tail_chars > _MIN_TAIL_CHARS:
                    tail_chars = max(_MIN_TAIL_CHARS, int(tail_chars * 0.7))
                elif source_chars > _MIN_SOURCE_CHARS:
                    source_chars = max(_MIN_SOURCE_CHARS, int(source_chars * 0.75))
                else:
                    break
                messages, seed_mode = self.build_messages(
                    source_text=source_text,
                    instruction=instruction,
                    accumulated_output=accumulated_output,
                    source_chars=source_chars,
                    tail_chars=tail_chars,
                )
                input_tokens = self.gateway.estimate_tokens(model=model, messages=messages)
            remaining = max(0, self._remaining_tokens(input_tokens))
            max_tokens = max(self.min_output_tokens, min(self.max_output_tokens, remaining))
            if source_chars < len(source_text):
                logger.warning(
                    "Grounding text trimmed to %s of %s characters to fit the context window",
                    source_chars,
                    len(source_text),
                )

        result = self.gateway.complete(model=model, messages=messages, max_tokens=max_tokens)
        addition = strip_overlap(accumulated_output, result.content)
        logger.info(
            "Continuation step produced %s chars (seed=%s, finish=%s, host=%s)",
            len(result.content),
            seed_mode,
            result.completion_reason.value,
            result.host,
        )
        return ContinuationStep(
            fragment=result.content,
            addition=addition,
            completion_reason=result.completion_reason,
            max_tokens=max_tokens,
            seed_mode=seed_mode,
            source_chars_used=source_chars,
            host=result.host,
        )

    def _remaining_tokens(self, input_tokens: int) -> int:
        return self.context_limit_tokens - input_tokens - self.token_safety_margin
