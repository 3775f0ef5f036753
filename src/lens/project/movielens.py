"""MovieLens warehouse: staging → dimensions → facts → marts.

Raw files are the MovieLens CSV exports (movies.csv, ratings.csv, tags.csv,
genome-scores.csv, genome-tags.csv, links.csv) in ``raw_data_dir``.
"""

from __future__ import annotations
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from lens.pipeline.decorators import model

_INITCAP_DELIMITERS = set(" \t\n\r!?@\"^#$&~_,.:;+-*%/|\\[](){}<>")


def _int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    return int(value)


def _decimal(value: str | None) -> Decimal | None:
    if value is None or not value.strip():
        return None
    try:
        return Decimal(value.strip())
    except InvalidOperation:
        return None


def _epoch(value: str | None) -> datetime | None:
    seconds = _int(value)
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def initcap(value: str | None) -> str | None:
    """Upper-case the first letter of every word, lower-case the rest."""
    if value is None:
        return None
    out = []
    start = True
    for ch in value:
        out.append(ch.upper() if start else ch.lower())
        start = ch in _INITCAP_DELIMITERS
    return "".join(out)


# ─── Staging ───

@model(name="src_movies", tags=["staging"])
async def src_movies(ref):
    async for row in ref.raw("movies.csv"):
        yield {"movie_id": _int(row["movieId"]), "title": row["title"], "genres": row["genres"]}


@model(name="src_ratings", tags=["staging"])
async def src_ratings(ref):
    async for row in ref.raw("ratings.csv"):
        yield {
            "user_id": _int(row["userId"]),
            "movie_id": _int(row["movieId"]),
            "rating": _decimal(row["rating"]),
            "rating_timestamp": _epoch(row["timestamp"]),
        }


@model(name="src_tags", tags=["staging"])
async def src_tags(ref):
    async for row in ref.raw("tags.csv"):
        yield {
            "user_id": _int(row["userId"]),
            "movie_id": _int(row["movieId"]),
            "tag": row["tag"],
            "tag_timestamp": _epoch(row["timestamp"]),
        }


@model(name="src_genome_score", tags=["staging"])
async def src_genome_score(ref):
    async for row in ref.raw("genome-scores.csv"):
        yield {
            "movie_id": _int(row["movieId"]),
            "tag_id": _int(row["tagId"]),
            "relevance": _decimal(row["relevance"]),
        }


@model(name="src_genome_tags", tags=["staging"])
async def src_genome_tags(ref):
    async for row in ref.raw("genome-tags.csv"):
        yield {"tag_id": _int(row["tagId"]), "tag": row["tag"]}


# ─── Dimensions ───

@model(name="dim_movies", materialized="table", depends_on=["src_movies"], tags=["dimension"])
async def dim_movies(ref):
    async for row in ref("src_movies"):
        genres = row["genres"] or ""
        yield {
            "movie_id": row["movie_id"],
            "movie_title": initcap((row["title"] or "").strip()),
            "genre_array": [g for g in genres.split("|") if g],
            "genres": genres,
        }


@model(name="dim_genome_tags", materialized="table", depends_on=["src_genome_tags"],
       tags=["dimension"])
async def dim_genome_tags(ref):
    async for row in ref("src_genome_tags"):
        yield {"tag_id": row["tag_id"], "tag_name": initcap((row["tag"] or "").strip())}


@model(name="dim_users", materialized="table", depends_on=["src_ratings", "src_tags"],
       tags=["dimension"])
async def dim_users(ref):
    users = set()
    async for row in ref("src_ratings"):
        users.add(row["user_id"])
    async for row in ref("src_tags"):
        users.add(row["user_id"])
    for user_id in sorted(u for u in users if u is not None):
        yield {"user_id": user_id}


# ─── Facts ───

@model(
    name="fct_ratings",
    materialized="incremental",
    depends_on=["src_ratings"],
    watermark_column="rating_timestamp",
    schema_policy="fail",
    tags=["fact"],
)
async def fct_ratings(ref):
    async for row in ref("src_ratings"):
        if row["rating"] is not None:
            yield row


@model(name="fct_genome_scores", materialized="table", depends_on=["src_genome_score"],
       tags=["fact"])
async def fct_genome_scores(ref):
    async for row in ref("src_genome_score"):
        relevance = row["relevance"]
        if relevance is not None and relevance > 0:
            yield {
                "movie_id": row["movie_id"],
                "tag_id": row["tag_id"],
                "relevance_score": relevance.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP),
            }


# ─── Snapshots ───

@model(
    name="snap_tags",
    materialized="snapshot",
    depends_on=["src_tags"],
    unique_key=["user_id", "movie_id", "tag"],
    updated_at="tag_timestamp",
    invalidate_hard_deletes=True,
    tags=["snapshot"],
)
async def snap_tags(ref):
    async for row in ref("src_tags"):
        yield row


# ─── Marts ───

@model(
    name="dim_movies_with_tags",
    materialized="ephemeral",
    depends_on=["dim_movies", "dim_genome_tags", "fct_genome_scores"],
)
async def dim_movies_with_tags(ref):
    movies = {m["movie_id"]: m async for m in ref("dim_movies")}
    tags = {t["tag_id"]: t["tag_name"] async for t in ref("dim_genome_tags")}
    async for score in ref("fct_genome_scores"):
        movie = movies.get(score["movie_id"])
        if movie is None:
            continue
        yield {
            "movie_id": score["movie_id"],
            "movie_title": movie["movie_title"],
            "genres": movie["genres"],
            "tag_name": tags.get(score["tag_id"]),
            "relevance_score": score["relevance_score"],
        }


@model(name="mart_movie_tag_relevance", materialized="table",
       depends_on=["dim_movies_with_tags"], tags=["mart"])
async def mart_movie_tag_relevance(ref):
    """Most relevant genome tag per movie."""
    best: dict[int, dict] = {}
    async for row in ref("dim_movies_with_tags"):
        current = best.get(row["movie_id"])
        if current is None or row["relevance_score"] > current["relevance_score"]:
            best[row["movie_id"]] = row
    for movie_id in sorted(best):
        yield best[movie_id]


@model(name="mart_movie_ratings", materialized="table",
       depends_on=["fct_ratings", "dim_movies"], tags=["mart"])
async def mart_movie_ratings(ref):
    """Rating count and average per movie."""
    totals: dict[int, list] = {}
    async for row in ref("fct_ratings"):
        count_sum = totals.setdefault(row["movie_id"], [0, Decimal(0)])
        count_sum[0] += 1
        count_sum[1] += Decimal(row["rating"])
    async for movie in ref("dim_movies"):
        count, total = totals.get(movie["movie_id"], (0, Decimal(0)))
        yield {
            "movie_id": movie["movie_id"],
            "movie_title": movie["movie_title"],
            "rating_count": count,
            "average_rating": (total / count).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            if count else None,
        }
