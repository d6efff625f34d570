from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ProviderKind(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"
    META = "meta"
    OPENROUTER = "openrouter"


@dataclass(frozen=True)
class ProviderTarget:
    provider: ProviderKind
    model_id: str


DEFAULT_TARGET = ProviderTarget(ProviderKind.OPENAI, "gpt-4o")

OPENROUTER_PREFIX = "openrouter/"

# Checked top to bottom; the first row with a matching substring wins.
MODEL_ROUTES: tuple[tuple[tuple[str, ...], ProviderKind], ...] = (
    (("claude", "anthropic"), ProviderKind.ANTHROPIC),
    (("gemini", "google"), ProviderKind.GEMINI),
    (("deepseek",), ProviderKind.DEEPSEEK),
    (("llama", "meta"), ProviderKind.META),
)

# Model id prefixes that reject a `temperature` parameter.
NO_TEMPERATURE_PREFIXES: tuple[str, ...] = (
    "o1",
    "o3",
    "o4",
    "gpt-5",
    "deepseek-reasoner",
)


def select_provider(model: str | None) -> ProviderTarget:
    if not model or not model.strip():
        return DEFAULT_TARGET
    model = model.strip()
    if model.lower().startswith(OPENROUTER_PREFIX):
        return ProviderTarget(ProviderKind.OPENROUTER, model[len(OPENROUTER_PREFIX) :])
    lowered = model.lower()
    for needles, kind in MODEL_ROUTES:
        if any(n in lowered for n in needles):
            return ProviderTarget(kind, model)
    return ProviderTarget(ProviderKind.OPENAI, model)


def accepts_temperature(model_id: str) -> bool:
    name = model_id.lower().rsplit("/", 1)[-1]
    return not name.startswith(NO_TEMPERATURE_PREFIXES)
