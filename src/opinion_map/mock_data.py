"""Generate synthetic social posts for development, demos and testing."""

from __future__ import annotations

import random
from datetime import UTC, date, datetime, time, timedelta

from sqlalchemy.engine import Engine
from sqlmodel import Session

from opinion_map.store.posts import insert_posts
from opinion_map.store.tables import Post


def _theme(*, theme: str, hashtags: list[str], templates: list[str]) -> dict:
    return {"theme": theme, "hashtags": hashtags, "templates": templates}


_THEMES: list[dict] = [
    _theme(
        theme="public_transport",
        hashtags=["transport", "tram"],
        templates=[
            "The new tram line {variant} is always late, commuters deserve better service.",
            "Bus frequency on route {variant} dropped again, public transport keeps getting worse.",
            "Love the extended metro hours this week {variant}, finally a usable night service.",
        ],
    ),
    _theme(
        theme="housing_costs",
        hashtags=["housing", "rent"],
        templates=[
            "Rent went up again in district {variant}, young families cannot afford housing here.",
            "Another luxury housing project approved {variant} while affordable rent units wait.",
            "Rent control vote {variant} is the only way to keep housing within reach.",
        ],
    ),
    _theme(
        theme="city_budget",
        hashtags=["budget", "council"],
        templates=[
            "Council budget {variant} cuts libraries but funds a new stadium, wrong priorities.",
            "Transparent budget hearings {variant} are a good step for the council.",
            "Property tax increase {variant} in the budget needs a proper public debate.",
        ],
    ),
    _theme(
        theme="air_quality",
        hashtags=["pollution", "climate"],
        templates=[
            "Air pollution near the ring road {variant} is choking the school playgrounds.",
            "Low emission zone {variant} finally reduces pollution on the main avenue.",
            "Climate plan {variant} needs real targets for pollution, not just promises.",
        ],
    ),
    _theme(
        theme="local_football",
        hashtags=["football", "derby"],
        templates=[
            "What a derby win {variant}! The football club owns this city tonight.",
            "Football club ticket prices {variant} are pushing loyal fans out of the stadium.",
            "Derby day {variant} traffic around the football stadium was chaos again.",
        ],
    ),
    _theme(
        theme="cycling_lanes",
        hashtags=["velo", "cycling"],
        templates=[
            "Les nouvelles pistes cyclables {variant} rendent le centre enfin agréable à vélo.",
            "Encore des travaux de pistes cyclables {variant}, les commerçants du centre souffrent.",
            "La sécurité des cyclistes {variant} doit passer avant le stationnement des voitures.",
        ],
    ),
]

_FAKE_AUTHORS: list[tuple[str, str]] = [
    ("Alex Martin", "alexm"),
    ("Sam Dupont", "samd"),
    ("Jordan Lee", "jlee"),
    ("Camille Moreau", "camille_m"),
    ("Riley Chen", "rchen"),
    ("Noa Bernard", "noab"),
    ("Taylor Smith", "tsmith"),
    ("Louise Petit", "lpetit"),
]


def generate_mock_posts(
    count: int = 600,
    *,
    seed: int = 7,
    start_date: date = date(2025, 1, 1),
    days: int = 14,
    repost_ratio: float = 0.05,
) -> list[dict]:
    """Generate a deterministic list of themed post dicts spread over `days` days."""

    if count <= 0:
        raise ValueError(f"count must be positive, got {count}.")
    if days <= 0:
        raise ValueError(f"days must be positive, got {days}.")

    rng = random.Random(seed)
    start = datetime.combine(start_date, time(6, 0), tzinfo=UTC)
    minutes_span = days * 24 * 60 - 6 * 60
    output: list[dict] = []

    for index in range(count):
        theme = _THEMES[index % len(_THEMES)]
        variant = index + 1
        text = rng.choice(theme["templates"]).format(variant=variant)
        author_name, author_username = _FAKE_AUTHORS[rng.randrange(len(_FAKE_AUTHORS))]
        if rng.random() < repost_ratio:
            original_author = _FAKE_AUTHORS[rng.randrange(len(_FAKE_AUTHORS))][1]
            text = f"RT @{original_author}: {text}"
        output.append(
            {
                "external_id": f"post-{variant:05d}",
                "text": text,
                "author_name": author_name,
                "author_username": author_username,
                "hashtags": list(theme["hashtags"]),
                "engagement": int(rng.paretovariate(1.5) * 3),
                "posted_at": start + timedelta(minutes=rng.randrange(minutes_span)),
                "theme": theme["theme"],
            }
        )

    return output


def seed_demo_posts(
    engine: Engine,
    *,
    zone_id: str,
    count: int = 600,
    seed: int = 7,
    start_date: date = date(2025, 1, 1),
    days: int = 14,
) -> list[int]:
    """Insert generated posts for a zone and return their ids."""

    posts = [
        Post(
            zone_id=zone_id,
            external_id=item["external_id"],
            text=item["text"],
            author_name=item["author_name"],
            author_username=item["author_username"],
            hashtags=item["hashtags"],
            engagement=item["engagement"],
            posted_at=item["posted_at"],
        )
        for item in generate_mock_posts(count, seed=seed, start_date=start_date, days=days)
    ]
    with Session(engine) as db:
        post_ids = insert_posts(db, posts)
        db.commit()
    return post_ids
