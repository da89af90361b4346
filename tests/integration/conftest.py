"""Integration test fixtures — Docker-based Manticore and Redis with seed data.

Expects the services to be running, e.g.:
    docker run -d -p 9308:9308 manticoresearch/manticore
    docker run -d -p 6379:6379 redis:7

Seed data is loaded into a dedicated real-time index on first use.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import pytest
import redis

from bibliosearch.adapters.manticore.query import build_insert_sql
from bibliosearch.config.settings import DEFAULT_LANGUAGES, DEFAULT_WORK_TYPES
from bibliosearch.models.work import WorkRecord

MANTICORE_URL = "http://localhost:9308"
TEST_INDEX = "it_works_rt"

SEED_WORKS: list[dict[str, Any]] = [
    {
        "id": 101,
        "title": "Advances in Solar Nowcasting Using Deep Learning",
        "abstract": "A convolutional network predicts solar irradiance from satellite imagery.",
        "author_string": "Johnson, Alice; Smith, Bob",
        "venue_name": "Solar Energy",
        "doi": "10.1016/solar.2024.001",
        "year": 2024,
        "work_type": "ARTICLE",
        "language": "en",
        "peer_reviewed": True,
    },
    {
        "id": 102,
        "title": "Transformer Models for Natural Language Understanding",
        "abstract": "We survey transformer models and their benchmarks.",
        "author_string": "Smith, Bob",
        "venue_name": "ACL",
        "year": 2023,
        "work_type": "CONFERENCE",
        "language": "en",
        "peer_reviewed": True,
    },
    {
        "id": 103,
        "title": "Aprendizado federado para imagens médicas",
        "abstract": "Federated learning across hospital sites.",
        "author_string": "Zhang, Carol",
        "year": 2022,
        "work_type": "THESIS",
        "language": "pt",
    },
    {
        "id": 104,
        "title": "Reinforcement Learning for Robotic Manipulation",
        "abstract": "Sim-to-real reinforcement learning for dexterous manipulation.",
        "author_string": "Lee, David; Johnson, Alice",
        "venue_name": "Solar Energy",
        "year": 2024,
        "work_type": "ARTICLE",
        "language": "en",
    },
]


def _wait_for_service(url: str, timeout: float = 60.0) -> bool:
    """Block until *url* returns HTTP 200, or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            r = httpx.get(url, timeout=10)
            if r.status_code == 200:
                return True
        except httpx.HTTPError:
            pass
        time.sleep(2)
    return False


# ── Manticore ───────────────────────────────────────────────────


async def _sql(client: httpx.AsyncClient, statement: str) -> None:
    resp = await client.post("/sql", params={"mode": "raw"}, data={"query": statement})
    resp.raise_for_status()
    payload = resp.json()
    result = payload[0] if isinstance(payload, list) else payload
    if result.get("error"):
        raise RuntimeError(f"{statement[:60]}: {result['error']}")


async def _seed_manticore(host: str = MANTICORE_URL, index: str = TEST_INDEX) -> None:
    async with httpx.AsyncClient(base_url=host, timeout=30) as client:
        await _sql(client, f"DROP TABLE IF EXISTS {index}")
        # Author and venue are both searchable and groupable
        await _sql(
            client,
            f"CREATE TABLE {index} ("
            "title text, subtitle text, abstract text, "
            "author_string string attribute indexed, venue_name string attribute indexed, "
            "doi string, year int, created_ts bigint, work_type string, language string, peer_reviewed bool)",
        )
        for work in SEED_WORKS:
            statement = build_insert_sql(
                index,
                WorkRecord(**work),
                created_ts=int(time.time()),
                work_types=DEFAULT_WORK_TYPES,
                languages=DEFAULT_LANGUAGES,
            )
            await _sql(client, statement)


@pytest.fixture(scope="session")
def manticore_ready() -> str:
    """Ensure Manticore is running and seeded."""
    if not _wait_for_service(MANTICORE_URL):
        pytest.skip(f"Manticore not available at {MANTICORE_URL}")
    asyncio.run(_seed_manticore())
    return MANTICORE_URL


# ── Redis ───────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def redis_ready() -> str:
    """Ensure Redis is running."""
    client = redis.Redis(host="localhost", port=6379, socket_connect_timeout=2)
    try:
        client.ping()
    except redis.RedisError:
        pytest.skip("Redis not available at localhost:6379")
    finally:
        client.close()
    return "localhost"
