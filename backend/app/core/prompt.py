"""
Prompt assembly under a per-section token budget.

Layout of the assembled messages:
    system  (system prompt + "## Relevant Context" memory lines)
    history (recent user/assistant turns, oldest first)
    user    (current message)

Every truncation or exclusion is recorded as a human-readable reason so the
plan can be traced alongside the generation.
"""

import re
from dataclasses import dataclass

from loguru import logger
from pydantic import BaseModel, Field

from app.config import Settings
from app.core.tokens import estimate_tokens, truncate_to_tokens
from app.models.memory import MemoryCandidate

MEMORY_HEADER = "## Relevant Context"
TRUNCATED_USER_SUFFIX = "\n\n[Message truncated due to length]"

_SENTENCE = re.compile(r"[^.!?]+[.!?]+")


@dataclass(frozen=True)
class PromptBudget:
    total: int = 4000
    system: int = 200
    memory: int = 1500
    user: int = 2000
    top_k: int = 10
    clip_sentences: int = 0
    min_truncation_tokens: int = 50

    @classmethod
    def from_settings(cls, settings: Settings) -> "PromptBudget":
        return cls(
            total=settings.prompt_total_budget,
            system=settings.prompt_system_budget,
            memory=settings.prompt_memory_budget,
            user=settings.prompt_user_budget,
            top_k=settings.memory_top_k,
            clip_sentences=settings.memory_clip_sentences,
            min_truncation_tokens=settings.memory_min_truncation_tokens,
        )


class PromptMessage(BaseModel):
    role: str
    content: str


class PromptPlan(BaseModel):
    messages: list[PromptMessage] = Field(default_factory=list)
    system_tokens: int = 0
    memory_tokens: int = 0
    history_tokens: int = 0
    user_tokens: int = 0
    items_included: int = 0
    items_excluded: int = 0
    history_included: int = 0
    reasons: list[str] = Field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.system_tokens + self.memory_tokens + self.history_tokens + self.user_tokens

    def as_payload(self) -> list[dict[str, str]]:
        return [m.model_dump() for m in self.messages]

    def as_text(self) -> str:
        return "\n".join(m.content for m in self.messages)

    def summary(self) -> dict:
        return {
            "total_tokens": self.total_tokens,
            "system_tokens": self.system_tokens,
            "memory_tokens": self.memory_tokens,
            "history_tokens": self.history_tokens,
            "user_tokens": self.user_tokens,
            "items_included": self.items_included,
            "items_excluded": self.items_excluded,
            "history_included": self.history_included,
            "excluded_reasons": list(self.reasons),
        }


@dataclass
class _MemorySection:
    lines: list[str]
    tokens: int
    included: int
    excluded: int
    reasons: list[str]


def clip_sentences(text: str, max_sentences: int) -> str:
    if max_sentences <= 0:
        return text
    sentences = _SENTENCE.findall(text) or [text]
    if len(sentences) <= max_sentences:
        return text
    return " ".join(s.strip() for s in sentences[:max_sentences])


def build_memory_section(candidates: list[MemoryCandidate], budget: PromptBudget) -> _MemorySection:
    """
    Greedy fill of the memory budget by relevance. The first item that would
    overflow is truncated into the remaining room when that room is more than
    min_truncation_tokens, otherwise dropped; nothing after it is considered.
    """
    section = _MemorySection(lines=[], tokens=0, included=0, excluded=0, reasons=[])
    ranked = sorted(candidates, key=lambda c: c.score, reverse=True)

    top_k = min(budget.top_k, len(ranked))
    if len(ranked) > top_k:
        dropped = len(ranked) - top_k
        section.excluded += dropped
        section.reasons.append(f"{dropped} items excluded by top_k={top_k} limit")

    for index, item in enumerate(ranked[:top_k]):
        text = clip_sentences(item.text, budget.clip_sentences)
        item_tokens = estimate_tokens(text)

        if section.tokens + item_tokens > budget.memory:
            remaining = budget.memory - section.tokens
            if remaining > budget.min_truncation_tokens:
                truncated = truncate_to_tokens(text, remaining)
                section.lines.append(f"- {truncated}...")
                section.tokens += estimate_tokens(truncated)
                section.included += 1
                section.reasons.append("Last memory item truncated to fit token budget")
            else:
                section.excluded += 1
                section.reasons.append("Memory item excluded: would exceed token budget")
            skipped = top_k - index - 1
            if skipped:
                section.excluded += skipped
                section.reasons.append(f"{skipped} lower-ranked memory items skipped after budget was reached")
            break

        section.lines.append(f"- {text}")
        section.tokens += item_tokens
        section.included += 1

    return section


def fit_history(history: list[dict], budget_tokens: int) -> tuple[list[dict], int, int]:
    """Keep the newest turns that fit. Returns (kept, tokens, dropped)."""
    kept: list[dict] = []
    used = 0
    for message in reversed(history):
        tokens = estimate_tokens(message["content"])
        if used + tokens > budget_tokens:
            break
        kept.append(message)
        used += tokens
    kept.reverse()
    return kept, used, len(history) - len(kept)


def assemble_prompt(
    system_prompt: str,
    memory: list[MemoryCandidate],
    history: list[dict],
    user_message: str,
    budget: PromptBudget = PromptBudget(),
) -> PromptPlan:
    plan = PromptPlan()

    # ── System ──────────────────────────────────────────────────────────────
    system_tokens = estimate_tokens(system_prompt)
    if system_tokens > budget.system:
        system_prompt = truncate_to_tokens(system_prompt, budget.system)
        system_tokens = estimate_tokens(system_prompt)
        plan.reasons.append("System prompt truncated to fit budget")
    plan.system_tokens = system_tokens
    system_content = system_prompt

    # ── Memory ──────────────────────────────────────────────────────────────
    if memory:
        section = build_memory_section(memory, budget)
        if section.lines:
            system_content = f"{system_content}\n\n{MEMORY_HEADER}\n" + "\n".join(section.lines)
        plan.memory_tokens = section.tokens
        plan.items_included = section.included
        plan.items_excluded = section.excluded
        plan.reasons.extend(section.reasons)

    plan.messages.append(PromptMessage(role="system", content=system_content))

    # ── User ────────────────────────────────────────────────────────────────
    user_tokens = estimate_tokens(user_message)
    user_content = user_message
    if user_tokens > budget.user:
        user_content = truncate_to_tokens(user_message, budget.user)
        user_tokens = estimate_tokens(user_content)
        user_content += TRUNCATED_USER_SUFFIX
        plan.reasons.append("User message truncated to fit budget")
    plan.user_tokens = user_tokens

    # ── History fills what the ceiling leaves over ─────────────────────────
    if history:
        room = max(0, budget.total - plan.system_tokens - plan.memory_tokens - plan.user_tokens)
        kept, history_tokens, dropped = fit_history(history, room)
        plan.messages.extend(PromptMessage(role=m["role"], content=m["content"]) for m in kept)
        plan.history_tokens = history_tokens
        plan.history_included = len(kept)
        if dropped:
            plan.reasons.append(f"{dropped} older history messages dropped to fit token budget")

    plan.messages.append(PromptMessage(role="user", content=user_content))

    logger.debug(
        "[prompt] assembled total={} system={} memory={} history={} user={} reasons={}",
        plan.total_tokens,
        plan.system_tokens,
        plan.memory_tokens,
        plan.history_tokens,
        plan.user_tokens,
        plan.reasons,
    )
    return plan


class PromptAssembler:
    def __init__(self, budget: PromptBudget) -> None:
        self.budget = budget

    def assemble(
        self,
        system_prompt: str,
        memory: list[MemoryCandidate],
        history: list[dict],
        user_message: str,
    ) -> PromptPlan:
        return assemble_prompt(system_prompt, memory, history, user_message, self.budget)
