"""Ordered query strategies for reading a recipient's notifications.

Stored records have drifted in shape over time (recipient under ``userId`` or
only under ``raw.userId``; server or client timestamps). Strategies are tried
in order and the first non-empty result wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from collab_notify.logs import get_logger
from collab_notify.store.base import NotificationStore, StoreDocument, StoreQuery, read_path

logger = get_logger(__name__)

_USER_PATHS = ("userId", "raw.userId", "metadata.userId", "targetUserId")


def belongs_to_user(data: dict[str, Any], user_id: str) -> bool:
    return any(read_path(data, path) == user_id for path in _USER_PATHS)


@dataclass(frozen=True)
class QueryStrategy:
    name: str
    build: Callable[[str, int], StoreQuery]
    post_filter: Callable[[dict[str, Any], str], bool] | None = None


def default_strategies(scan_limit: int = 100) -> list[QueryStrategy]:
    return [
        QueryStrategy("user-field", lambda uid, n: StoreQuery().where("userId", uid).limited(n)),
        QueryStrategy("raw-user-field", lambda uid, n: StoreQuery().where("raw.userId", uid).limited(n)),
        QueryStrategy(
            "created-at-ordered",
            lambda uid, n: StoreQuery().where("userId", uid).ordered("createdAt").limited(n),
        ),
        QueryStrategy(
            "fallback-timestamp-ordered",
            lambda uid, n: StoreQuery().where("userId", uid).ordered("createdAtFallback").limited(n),
        ),
        QueryStrategy(
            "unfiltered-scan",
            lambda uid, n: StoreQuery().limited(scan_limit),
            post_filter=belongs_to_user,
        ),
    ]


async def run_strategies(
    store: NotificationStore,
    strategies: list[QueryStrategy],
    user_id: str,
    limit: int,
) -> list[StoreDocument]:
    """Return the first non-empty strategy result, or ``[]``. Never raises."""
    for strategy in strategies:
        try:
            docs = await store.query(strategy.build(user_id, limit))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.warning("query strategy failed", strategy=strategy.name, user_id=user_id, error=str(exc))
            continue
        if strategy.post_filter is not None:
            docs = [d for d in docs if strategy.post_filter(d.data, user_id)]
        if docs:
            logger.debug("query strategy matched", strategy=strategy.name, user_id=user_id, count=len(docs))
            return docs
    logger.debug("no query strategy returned records", user_id=user_id)
    return []
