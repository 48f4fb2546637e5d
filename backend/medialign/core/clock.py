"""Naive-UTC timestamps, matching what SQLite round-trips."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)
