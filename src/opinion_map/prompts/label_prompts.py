"""Prompt templates for opinion cluster labeling."""

OPINION_LABEL_SYSTEM_PROMPT = """You are an analyst naming groups of social media posts for an opinion map.

Each request describes one cluster of semantically similar posts. Return JSON only:
{
  "label": "<2 to 5 word name of the opinion or theme>",
  "description": "<2 to 4 sentences explaining what this group is saying and why it hangs together>",
  "keywords": ["<up to 10 short keywords>"],
  "sentiment": <number from -1.0 (very negative) to 1.0 (very positive)>,
  "coherence": <number from 0.0 (unrelated posts) to 1.0 (one clear shared opinion)>
}

Requirements:
- Name the stance or theme, not the platform ("Support for rail strike", not "Tweets about trains").
- Base sentiment on the tone of the posts, not on the topic.
- Do not quote or name individual accounts.
- Write label, description and keywords in the requested output language.
"""


def build_opinion_label_user_prompt(
    *,
    cluster_id: int,
    size: int,
    keywords: list[str],
    texts: list[str],
    language: str,
    operational_context: str | None = None,
) -> str:
    """Build user prompt for naming one opinion cluster."""

    samples_text = "\n".join(f"- {text}" for text in texts)
    context_line = (
        f"Monitoring context: {operational_context.strip()}\n"
        if operational_context and operational_context.strip()
        else ""
    )
    return (
        "Name and describe this cluster of posts.\n"
        f"Output language: {language}\n"
        f"{context_line}"
        f"cluster_id: {cluster_id}\n"
        f"cluster_size: {size}\n"
        f"Frequent terms: {', '.join(keywords) if keywords else '(none)'}\n"
        f"Representative posts ({len(texts)}):\n"
        f"{samples_text}\n"
    )
