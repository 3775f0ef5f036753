"""Shared test fixtures for Lens tests."""

from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from lens.core.database import use_transactional_ddl
from lens.pipeline.types import MaterializationType
from lens.tables.memory import MemoryTable


def ts(day: int, hour: int = 0) -> datetime:
    """A naive UTC timestamp in January 2024."""
    return datetime(2024, 1, day, hour)


@pytest.fixture
def ratings():
    return [
        {"user_id": 1, "movie_id": 10, "rating": 4.0, "rating_timestamp": ts(1)},
        {"user_id": 2, "movie_id": 10, "rating": 3.5, "rating_timestamp": ts(2)},
        {"user_id": 1, "movie_id": 20, "rating": 5.0, "rating_timestamp": ts(3)},
    ]


@pytest.fixture
def fact_table():
    return MemoryTable("fct_ratings", strategy=MaterializationType.INCREMENTAL)


@pytest_asyncio.fixture(scope="function")
async def sql_engine(tmp_path):
    """A file-backed SQLite engine, one database per test."""
    engine = use_transactional_ddl(
        create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'warehouse.db'}")
    )
    yield engine
    await engine.dispose()


# ─── Sample MovieLens raw files ───

MOVIES_CSV = """movieId,title,genres
1,toy story (1995),Adventure|Animation|Children
2,JUMANJI (1995),Adventure|Children|Fantasy
3,Heat (1995),Action|Crime|Thriller
"""

RATINGS_CSV = """userId,movieId,rating,timestamp
1,1,4.0,964982703
1,2,3.5,964982931
2,1,5.0,964983000
2,3,,964983100
"""

TAGS_CSV = """userId,movieId,tag,timestamp
1,1,pixar,1445714994
2,1,funny,1445715000
2,3,heist,1445715100
"""

GENOME_SCORES_CSV = """movieId,tagId,relevance
1,1,0.95
1,2,0.10
2,1,0.0
3,2,0.8765432
"""

GENOME_TAGS_CSV = """tagId,tag
1,007
2,action-packed
"""


@pytest.fixture
def raw_dir(tmp_path):
    """A directory holding a small MovieLens export."""
    raw = tmp_path / "raw"
    raw.mkdir()
    (raw / "movies.csv").write_text(MOVIES_CSV)
    (raw / "ratings.csv").write_text(RATINGS_CSV)
    (raw / "tags.csv").write_text(TAGS_CSV)
    (raw / "genome-scores.csv").write_text(GENOME_SCORES_CSV)
    (raw / "genome-tags.csv").write_text(GENOME_TAGS_CSV)
    return raw
