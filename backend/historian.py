"""
historian.py — Windowed tag statistics from the plant historian.

Two adapters expose the same two calls:

  window_average(tag, start, end)    -> float
  window_statistics(tag, start, end) -> WindowStats(mean, std, count)

SqlHistorian asks the database to aggregate the tag_samples table;
HttpHistorian asks a REST historian for the same numbers. Neither
computes statistics from raw samples in Python.

An unknown tag, an empty window, a timeout or a transport failure all
raise MissingDataError. A valid 0.0 reading is never used to signal
"no data".
"""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx
from sqlalchemy import func
from sqlalchemy.orm import Session

from models import TagSample, utc_naive

log = logging.getLogger(__name__)

HISTORIAN_URL = os.getenv("HISTORIAN_URL", "")
HISTORIAN_TIMEOUT = float(os.getenv("HISTORIAN_TIMEOUT", "10"))


class MissingDataError(LookupError):
    """Historian returned no samples for a tag/window, or could not be reached."""

    def __init__(self, tag: str, reason: str):
        super().__init__(f"{tag}: {reason}")
        self.tag = tag
        self.reason = reason


@dataclass(frozen=True)
class WindowStats:
    mean: float
    std: float
    count: int


class SqlHistorian:
    """Aggregate queries against the tag_samples table.

    Population std is derived from COUNT, SUM(x) and SUM(x*x) so the same
    query runs on SQLite (no STDDEV) and Postgres.
    """

    def __init__(self, db: Session):
        self.db = db

    def _aggregate(self, tag: str, start: datetime, end: datetime):
        return (
            self.db.query(
                func.count(TagSample.value),
                func.sum(TagSample.value),
                func.sum(TagSample.value * TagSample.value),
            )
            .filter(
                TagSample.tag == tag,
                TagSample.ts >= utc_naive(start),
                TagSample.ts <= utc_naive(end),
            )
            .one()
        )

    def window_statistics(self, tag: str, start: datetime, end: datetime) -> WindowStats:
        count, total, total_sq = self._aggregate(tag, start, end)
        if not count:
            raise MissingDataError(tag, f"no samples in [{start.isoformat()}, {end.isoformat()}]")
        mean = total / count
        # Clamp tiny negative variance from float cancellation
        var = max(0.0, total_sq / count - mean * mean)
        return WindowStats(mean=mean, std=math.sqrt(var), count=int(count))

    def window_average(self, tag: str, start: datetime, end: datetime) -> float:
        return self.window_statistics(tag, start, end).mean


class HttpHistorian:
    """REST historian client.

    Expects GET {base_url}/tags/{tag}/stats?start=ISO&end=ISO returning
    {"mean": float, "std": float, "count": int}. 404 means unknown tag.
    """

    def __init__(self, base_url: str, timeout: float = HISTORIAN_TIMEOUT,
                 client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def window_statistics(self, tag: str, start: datetime, end: datetime) -> WindowStats:
        url = f"{self.base_url}/tags/{tag}/stats"
        params = {"start": start.isoformat(), "end": end.isoformat()}
        try:
            resp = self._client.get(url, params=params, timeout=self.timeout)
        except httpx.TimeoutException:
            log.warning("Historian timeout for %s after %.1fs", tag, self.timeout)
            raise MissingDataError(tag, "historian timeout")
        except httpx.HTTPError as e:
            log.warning("Historian request failed for %s: %s", tag, e)
            raise MissingDataError(tag, f"historian unreachable: {e}")

        if resp.status_code == 404:
            raise MissingDataError(tag, "unknown tag")
        if resp.status_code >= 400:
            raise MissingDataError(tag, f"historian HTTP {resp.status_code}")

        try:
            data = resp.json()
            count = int(data.get("count", 0) or 0)
            mean = data.get("mean")
            std = data.get("std")
            if count <= 0 or mean is None or std is None:
                raise MissingDataError(tag, "empty window")
            mean, std = float(mean), float(std)
        except (ValueError, TypeError, AttributeError) as e:
            raise MissingDataError(tag, f"malformed historian response: {e}")

        if not (math.isfinite(mean) and math.isfinite(std)):
            raise MissingDataError(tag, "malformed historian response: non-finite statistics")
        return WindowStats(mean=mean, std=std, count=count)

    def window_average(self, tag: str, start: datetime, end: datetime) -> float:
        return self.window_statistics(tag, start, end).mean


def make_historian(db: Optional[Session] = None, url: str = HISTORIAN_URL):
    """HttpHistorian when HISTORIAN_URL is set, else SqlHistorian on db."""
    if url:
        return HttpHistorian(url)
    if db is None:
        raise ValueError("SqlHistorian needs a database session")
    return SqlHistorian(db)
