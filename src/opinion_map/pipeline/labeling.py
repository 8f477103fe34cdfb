"""Cluster labeling with a language model, bounded retries and a keyword fallback."""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass

import numpy as np
from pydantic import BaseModel, ConfigDict, Field
from tenacity import Retrying, stop_after_attempt, wait_exponential, wait_random

from opinion_map.models import LLMJsonClient
from opinion_map.prompts import OPINION_LABEL_SYSTEM_PROMPT, build_opinion_label_user_prompt
from opinion_map.schemas import ClusterRecord

logger = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 80
MAX_REASONING_LENGTH = 350
FALLBACK_COHERENCE_CEILING = 0.3

_TOKEN_PATTERN = re.compile(r"[#@]?[^\W_]+(?:['’-][^\W_]+)*", re.UNICODE)
_URL_PATTERN = re.compile(r"https?://\S+|www\.\S+", re.IGNORECASE)

STOPWORDS = frozenset(
    """
    a about above after again against all also am an and any are as at be because been before
    being below between both but by can could did do does doing down during each few for from
    further had has have having he her here hers herself him himself his how i if in into is it
    its itself just me more most my myself no nor not now of off on once only or other our ours
    ourselves out over own same she should so some such than that the their theirs them
    themselves then there these they this those through to too under until up very was we were
    what when where which while who whom why will with would you your yours yourself yourselves
    rt via amp https http www com
    au aux avec ce ces cette dans de des du elle elles en est et être eux il ils je la le les
    leur leurs lui ma mais me même mes moi mon ne nos notre nous on ou où par pas pour qu que
    qui sa se ses son sur ta te tes toi ton tu un une vos votre vous ça été était sont
    fait faire plus comme tout tous toute toutes aussi bien très encore déjà alors donc
    """.split()
)


class ClusterLabelingError(ValueError):
    """Raised when cluster labeling inputs or payloads fail validation."""


class _ClusterLabelPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    label: str = Field(min_length=1)
    description: str = Field(min_length=1)
    keywords: list[str]
    sentiment: float
    coherence: float


@dataclass(frozen=True, slots=True)
class ClusterDigest:
    """Everything the labeler needs to know about one cluster."""

    cluster_id: int
    size: int
    centroid: tuple[float, float, float]
    texts: list[str]
    keywords: list[str]
    mean_confidence: float


def extract_keywords(texts: Sequence[str], *, limit: int = 10) -> list[str]:
    """Most frequent non-stopword terms; ties keep first-seen order."""

    counts: Counter[str] = Counter()
    for text in texts:
        for token in _TOKEN_PATTERN.findall(_URL_PATTERN.sub(" ", text.lower())):
            word = token.lstrip("#@")
            if len(word) < 3 or word.isdigit() or word in STOPWORDS:
                continue
            counts[word] += 1
    return [word for word, _ in counts.most_common(limit)]


def select_representatives(
    coordinates: np.ndarray,
    centroid: np.ndarray,
    *,
    limit: int,
) -> list[int]:
    """Indexes of the `limit` members closest to the centroid, closest first."""

    distances = np.linalg.norm(coordinates - centroid, axis=1)
    return [int(index) for index in np.argsort(distances, kind="stable")[:limit]]


def build_cluster_digests(
    *,
    cluster_ids: np.ndarray,
    outliers: np.ndarray,
    coordinates: np.ndarray,
    confidences: np.ndarray,
    texts: Sequence[str],
    sample_size: int = 50,
    keyword_count: int = 10,
) -> list[ClusterDigest]:
    """Summarize each cluster from its confident members; outliers are left out."""

    if sample_size <= 0:
        raise ClusterLabelingError(f"sample_size must be positive, got {sample_size}.")
    if not (len(cluster_ids) == len(outliers) == len(coordinates) == len(texts)):
        raise ClusterLabelingError("Cluster inputs must all have one entry per post.")

    digests: list[ClusterDigest] = []
    for cluster_id in sorted({int(value) for value in cluster_ids.tolist()}):
        member_mask = (cluster_ids == cluster_id) & ~outliers
        member_indexes = np.flatnonzero(member_mask)
        if member_indexes.size == 0:
            continue
        member_coords = coordinates[member_indexes]
        centroid = member_coords.mean(axis=0)
        member_texts = [texts[int(index)] for index in member_indexes]
        representative = select_representatives(member_coords, centroid, limit=sample_size)
        digests.append(
            ClusterDigest(
                cluster_id=cluster_id,
                size=int(member_indexes.size),
                centroid=(float(centroid[0]), float(centroid[1]), float(centroid[2])),
                texts=[member_texts[index] for index in representative],
                keywords=extract_keywords(member_texts, limit=keyword_count),
                mean_confidence=float(np.mean(confidences[member_indexes])),
            )
        )
    return digests


def _clamp(value: float, lower: float, upper: float) -> float:
    if not np.isfinite(value):
        value = 0.0
    return float(min(upper, max(lower, value)))


def _truncate(text: str, limit: int) -> str:
    cleaned = " ".join(text.split())
    return cleaned if len(cleaned) <= limit else cleaned[: limit - 1].rstrip() + "…"


def build_fallback_record(digest: ClusterDigest) -> ClusterRecord:
    """Deterministic keyword-derived label used when the model cannot label a cluster."""

    keywords = digest.keywords
    label = ", ".join(keywords[:3]) if keywords else f"Cluster {digest.cluster_id}"
    reasoning = (
        f"This cluster discusses topics related to {', '.join(keywords[:5])}."
        if keywords
        else "Cluster analysis unavailable."
    )
    return ClusterRecord(
        cluster_id=digest.cluster_id,
        label=_truncate(label, MAX_LABEL_LENGTH),
        keywords=list(keywords),
        reasoning=reasoning,
        tweet_count=digest.size,
        centroid_x=digest.centroid[0],
        centroid_y=digest.centroid[1],
        centroid_z=digest.centroid[2],
        avg_sentiment=0.0,
        coherence_score=_clamp(digest.mean_confidence, 0.0, FALLBACK_COHERENCE_CEILING),
        labeling_fallback_used=True,
    )


def _request_label(
    digest: ClusterDigest,
    *,
    llm_client: LLMJsonClient,
    language: str,
    operational_context: str | None,
) -> _ClusterLabelPayload:
    payload = llm_client.complete_json(
        system_prompt=OPINION_LABEL_SYSTEM_PROMPT,
        user_prompt=build_opinion_label_user_prompt(
            cluster_id=digest.cluster_id,
            size=digest.size,
            keywords=digest.keywords,
            texts=digest.texts,
            language=language,
            operational_context=operational_context,
        ),
        schema_name="opinion_cluster_label",
        json_schema=_ClusterLabelPayload.model_json_schema(),
        strict_schema=True,
    )
    return _ClusterLabelPayload.model_validate(payload)


def label_one_cluster(
    digest: ClusterDigest,
    *,
    llm_client: LLMJsonClient,
    language: str = "English",
    operational_context: str | None = None,
    max_attempts: int = 3,
    backoff_seconds: float = 5.0,
    keyword_count: int = 10,
) -> ClusterRecord:
    """Label one cluster, retrying model or validation failures, then falling back."""

    retryer = Retrying(
        wait=wait_exponential(multiplier=backoff_seconds, min=backoff_seconds)
        + wait_random(0.0, backoff_seconds / 4),
        stop=stop_after_attempt(max(1, max_attempts)),
        reraise=True,
    )
    try:
        for attempt in retryer:
            with attempt:
                parsed = _request_label(
                    digest,
                    llm_client=llm_client,
                    language=language,
                    operational_context=operational_context,
                )
    except Exception:
        logger.warning(
            "Labeling cluster %d failed after %d attempts; using keyword fallback.",
            digest.cluster_id,
            max_attempts,
            exc_info=True,
        )
        return build_fallback_record(digest)

    keywords = [keyword.strip() for keyword in parsed.keywords if keyword.strip()]
    return ClusterRecord(
        cluster_id=digest.cluster_id,
        label=_truncate(parsed.label, MAX_LABEL_LENGTH),
        keywords=(keywords or list(digest.keywords))[:keyword_count],
        reasoning=_truncate(parsed.description, MAX_REASONING_LENGTH),
        tweet_count=digest.size,
        centroid_x=digest.centroid[0],
        centroid_y=digest.centroid[1],
        centroid_z=digest.centroid[2],
        avg_sentiment=_clamp(parsed.sentiment, -1.0, 1.0),
        coherence_score=_clamp(parsed.coherence, 0.0, 1.0),
        labeling_fallback_used=False,
    )


def label_clusters(
    *,
    digests: list[ClusterDigest],
    llm_client: LLMJsonClient,
    language: str = "English",
    operational_context: str | None = None,
    max_attempts: int = 3,
    backoff_seconds: float = 5.0,
    keyword_count: int = 10,
    max_concurrency: int = 1,
    progress_callback: Callable[[int, int], None] | None = None,
) -> list[ClusterRecord]:
    """Label every cluster in parallel up to `max_concurrency`; output follows cluster id order."""

    if max_concurrency <= 0:
        raise ClusterLabelingError(f"max_concurrency must be positive, got {max_concurrency}.")

    ordered = sorted(digests, key=lambda item: item.cluster_id)
    total = len(ordered)
    labeled_by_id: dict[int, ClusterRecord] = {}
    done = 0

    with ThreadPoolExecutor(max_workers=min(max_concurrency, max(1, total))) as pool:
        future_to_cluster_id = {
            pool.submit(
                label_one_cluster,
                digest,
                llm_client=llm_client,
                language=language,
                operational_context=operational_context,
                max_attempts=max_attempts,
                backoff_seconds=backoff_seconds,
                keyword_count=keyword_count,
            ): digest.cluster_id
            for digest in ordered
        }
        for future in as_completed(future_to_cluster_id):
            record = future.result()
            labeled_by_id[future_to_cluster_id[future]] = record
            done += 1
            if progress_callback is not None:
                progress_callback(done, total)

    return [labeled_by_id[digest.cluster_id] for digest in ordered]
