"""Rebuild conversational context from durable history after a lost session."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from agent_gate.runtime.models import WorkItemStatus, WorkItemView

TRUNCATION_SUFFIX = "... [truncated]"


@dataclass(slots=True, frozen=True)
class ReconstructionPolicy:
    """Thresholds for detecting a silent resume failure and sizing the rebuild."""

    min_plausible_chars: int = 50
    suspicious_chars: int = 200
    suspicious_after_seconds: float = 60.0
    max_chars: int = 100_000
    prompt_preview_chars: int = 500
    summary_chars: int = 200
    max_verbatim_rounds: int = 3

    def is_implausible(self, text: str, duration_ms: int) -> bool:
        """True when a resumed reply looks like the agent lost its context."""

        length = len(text.strip())
        if length < self.min_plausible_chars:
            return True
        return (
            length < self.suspicious_chars
            and duration_ms >= self.suspicious_after_seconds * 1000
        )


@dataclass(slots=True, frozen=True)
class HistoryRound:
    """One completed prompt/response exchange."""

    number: int
    label: str
    prompt: str
    response: str


def rounds_from_items(items: Iterable[WorkItemView]) -> list[HistoryRound]:
    """Completed ledger items with a response, oldest first, as history rounds."""

    completed = [
        item
        for item in items
        if item.status is WorkItemStatus.COMPLETED and item.result_text
    ]
    completed.sort(key=lambda item: (item.created_at, item.item_id))
    return [
        HistoryRound(
            number=index,
            label=item.logical_key,
            prompt=item.payload,
            response=item.result_text or "",
        )
        for index, item in enumerate(completed, start=1)
    ]


def build_reconstruction_prompt(
    history: list[HistoryRound],
    current_prompt: str,
    *,
    policy: ReconstructionPolicy | None = None,
) -> str:
    """Prepend a history preamble to ``current_prompt`` within ``max_chars``.

    All rounds are kept verbatim when they fit. Otherwise the oldest rounds are
    summarised and the newest one to three stay verbatim. If that is still too
    large only the most recent round is kept.
    """

    policy = policy or ReconstructionPolicy()
    if not history:
        return current_prompt

    blocks = [
        (
            f"## Round {entry.number} ({entry.label})\n"
            f"**Prompt:** {_truncate(entry.prompt, policy.prompt_preview_chars)}\n"
            f"**Response:** {entry.response}"
        )
        for entry in history
    ]
    full = (
        "This is a continuation of an earlier conversation. The session was "
        "interrupted and context must be reconstructed from the work ledger.\n\n"
        "# Previous Rounds\n\n"
        + "\n\n".join(blocks)
        + "\n\n# Current Round\n\n"
        + current_prompt
    )
    if len(full) <= policy.max_chars:
        return full
    return _compressed_prompt(history, current_prompt, policy=policy)


def _compressed_prompt(
    history: list[HistoryRound],
    current_prompt: str,
    *,
    policy: ReconstructionPolicy,
) -> str:
    verbatim_count = max(1, min(policy.max_verbatim_rounds, len(history) // 2))
    to_summarize = history[:-verbatim_count]
    to_keep = history[-verbatim_count:]

    summary = "\n".join(
        f"- Round {entry.number}: {_truncate(entry.response, policy.summary_chars)}"
        for entry in to_summarize
    )
    verbatim = [
        f"## Round {entry.number} ({entry.label})\n**Response:** {entry.response}"
        for entry in to_keep
    ]
    compressed = (
        "This is a continuation of an earlier conversation. Context reconstructed "
        "from the work ledger.\n\n"
        f"# Summary of Earlier Rounds\n{summary}\n\n"
        "# Recent Rounds (verbatim)\n\n"
        + "\n\n".join(verbatim)
        + "\n\n# Current Round\n\n"
        + current_prompt
    )
    if len(compressed) <= policy.max_chars:
        return compressed

    header = "Context reconstructed from the work ledger (truncated).\n\n# Most Recent Round\n\n"
    footer = "\n\n# Current Round\n\n" + current_prompt
    room = policy.max_chars - len(header) - len(footer)
    last = verbatim[-1]
    if room <= len(TRUNCATION_SUFFIX):
        return current_prompt
    if len(last) > room:
        last = last[: room - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX
    return header + last + footer


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}{TRUNCATION_SUFFIX}"
