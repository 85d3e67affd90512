"""Deterministic leaderboard ranking.

Users ranked by score DESC, then by user_id ASC. Every row gets its own
sequential rank (1, 2, 3, ...), even across ties.
"""

from __future__ import annotations

from typing import Any


def rank_entries(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Rank entries deterministically by score.

    Input: list of dicts with at least:
        - user_id: int
        - score: int

    Output: the same dicts sorted and augmented with ``rank`` (1-indexed,
    contiguous). An empty input yields an empty list.
    """
    if not entries:
        return []

    def sort_key(e: dict[str, Any]) -> tuple[int, int]:
        return (-e.get("score", 0), e["user_id"])

    ranked = sorted(entries, key=sort_key)
    for idx, e in enumerate(ranked):
        e["rank"] = idx + 1
    return ranked
