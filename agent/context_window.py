"""Context window management.

Keeps the conversation sent to the backend inside the model's token budget:
a rough character-based estimate decides whether pruning is needed, and
pruning keeps the leading system entry plus the newest entries while folding
everything evicted into one synthetic summary entry.
"""

import logging
from typing import List, Optional, Sequence

from agent.conversation import ASSISTANT, SYSTEM, TOOL, USER, ConversationEntry
from agent.model_metadata import MAX_CHAT_HISTORY_MESSAGES, get_model_context_length
from aterm_constants import CHARS_PER_TOKEN

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "=== Previous Conversation Summary ==="
PREVIEW_CHARS = 100
TAIL_BUDGET_RATIO = 0.9

_ROLE_LABELS = {USER: "User", ASSISTANT: "Assistant", SYSTEM: "System", TOOL: "Tool"}


def estimate_tokens(entries: Sequence[ConversationEntry]) -> int:
    """Rough token estimate (~4 chars/token) over every part of every entry."""
    return sum(e.char_count for e in entries) // CHARS_PER_TOKEN


def _preview(entry: ConversationEntry) -> str:
    if entry.role == TOOL:
        results = entry.tool_results
        if results:
            text = results[0].content
            label = f"Tool({results[0].tool_name})"
        else:
            text, label = entry.text, "Tool"
    else:
        label = _ROLE_LABELS.get(entry.role, entry.role)
        text = entry.text
        if not text.strip() and entry.tool_calls:
            text = "[called " + ", ".join(c.name for c in entry.tool_calls) + "]"

    first_line = text.strip().splitlines()[0] if text.strip() else ""
    if len(first_line) > PREVIEW_CHARS:
        first_line = first_line[:PREVIEW_CHARS] + "..."
    return f"{label}: {first_line}"


def create_summary(entries: Sequence[ConversationEntry]) -> str:
    """Deterministic, lossy digest of *entries*.

    Never longer than the concatenated text of the input; an empty input
    yields an empty string.
    """
    if not entries:
        return ""

    lines = [_preview(e) for e in entries]
    cap = sum(e.char_count for e in entries)
    if cap == 0:
        return ""

    full = "\n".join([
        SUMMARY_HEADER,
        f"({len(entries)} messages were pruned to fit context window)",
        "",
        *lines,
    ])
    if len(full) <= cap:
        return full
    return "\n".join(lines)[:cap]


class ContextWindowManager:
    """Estimates and prunes a conversation to fit a per-model token budget."""

    def __init__(self, max_tokens: Optional[int] = None, max_tail_entries: int = MAX_CHAT_HISTORY_MESSAGES):
        self.max_tokens = max_tokens
        self.max_tail_entries = max_tail_entries

    estimate_tokens = staticmethod(estimate_tokens)
    create_summary = staticmethod(create_summary)

    def budget_for(self, model_name: str, max_tokens: Optional[int] = None) -> int:
        return max_tokens or self.max_tokens or get_model_context_length(model_name)

    def fits_within_limit(self, entries: Sequence[ConversationEntry], model_name: str) -> bool:
        return estimate_tokens(entries) <= self.budget_for(model_name)

    def prune_chat_history(
        self,
        entries: Sequence[ConversationEntry],
        model_name: str,
        max_tokens: Optional[int] = None,
    ) -> Sequence[ConversationEntry]:
        """Return *entries* unchanged if within budget, else a pruned copy."""
        limit = self.budget_for(model_name, max_tokens)
        estimated = estimate_tokens(entries)
        if estimated <= limit:
            return entries

        logger.debug("Pruning chat history: %s tokens > %s limit", estimated, limit)
        limit_chars = limit * CHARS_PER_TOKEN

        body: List[ConversationEntry] = list(entries)
        head: List[ConversationEntry] = []
        if body and body[0].role == SYSTEM and not body[0].synthetic:
            head.append(body.pop(0))
        head_chars = sum(e.char_count for e in head)

        tail_budget = int(limit_chars * TAIL_BUDGET_RATIO) - head_chars
        tail: List[ConversationEntry] = []
        used = 0
        for entry in reversed(body):
            size = entry.char_count
            if tail and (used + size > tail_budget or len(tail) >= self.max_tail_entries):
                break
            tail.insert(0, entry)
            used += size

        # A tool result whose call was evicted is meaningless to the backend
        while len(tail) > 1 and tail[0].role == TOOL:
            used -= tail.pop(0).char_count

        evicted = body[: len(body) - len(tail)]
        pruned = list(head)

        remaining = limit_chars - head_chars - used
        if evicted and remaining > 0:
            if len(evicted) == 1 and evicted[0].synthetic:
                summary = evicted[0].text
            else:
                summary = create_summary(evicted)
            summary = summary[:remaining]
            if summary:
                pruned.append(ConversationEntry.system(summary, synthetic=True))

        pruned.extend(tail)
        logger.debug(
            "Pruned to %s entries (%s evicted), ~%s tokens",
            len(pruned), len(evicted), estimate_tokens(pruned),
        )
        return pruned
