"""Prompt builders for the Opinion Map pipeline."""

from opinion_map.prompts.label_prompts import (
    OPINION_LABEL_SYSTEM_PROMPT,
    build_opinion_label_user_prompt,
)

__all__ = [
    "OPINION_LABEL_SYSTEM_PROMPT",
    "build_opinion_label_user_prompt",
]
