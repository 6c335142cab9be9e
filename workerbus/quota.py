"""Refresh of the cached storage limits held in the environment."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Dict, Mapping

if TYPE_CHECKING:
    from .environment import Environment


def _normalize_limit(key: str, raw: Any, default: int) -> Dict[str, Any]:
    if isinstance(raw, Mapping):
        limit = raw.get("limit", default)
        plan = raw.get("plan", "custom")
        note = raw.get("note", "")
    else:
        limit, plan, note = raw, "custom", ""
    try:
        limit = int(limit)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid storage limit for {key!r}: {limit!r}") from exc
    if limit < 0:
        raise ValueError(f"Negative storage limit for {key!r}")
    return {"limit": limit, "plan": plan, "note": note}


def compute_limits(env: "Environment") -> Dict[str, Dict[str, Any]]:
    default = env.config.default_storage_limit
    return {
        str(key): _normalize_limit(str(key), raw, default)
        for key, raw in env.config.custom_limits.items()
    }


async def update_cached_limits(env: "Environment") -> None:
    """Recompute the limits and publish them if they changed."""

    await asyncio.sleep(0)
    limits = compute_limits(env)
    if limits != env.limits:
        env.update(limits=limits)
