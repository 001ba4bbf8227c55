"""
Realtime story feed statistics and cache invalidation.

Tracks how many new stories arrived since the reader last refreshed, when the
feed last changed and whether the stories topic is connected. Consumers that
hold fetched pages register for invalidation signals and refetch the query keys
they are handed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Sequence

import structlog

from .connection import Subscription, SubscriptionStatus
from .events import ChangeEvent, Operation
from .router import ChangeEventRouter
from .transport import ChangeFilter

log = structlog.get_logger()

STORIES_TOPIC = "stories-realtime"
SOURCES_TOPIC = "sources-realtime"
BREAKING_TOPIC = "breaking-news-realtime"

NEWS_QUERY_KEYS = ("news", "infinite-news")
REFRESH_QUERY_KEYS = ("news", "infinite-news", "world-stats")

InvalidationListener = Callable[[Sequence[str]], None]


def standard_topics(
    schema: str = "public",
    breaking_table: str = "breaking_news",
) -> dict[str, tuple[ChangeFilter, ...]]:
    """Topics the reader subscribes to, keyed by channel name."""
    return {
        STORIES_TOPIC: (
            ChangeFilter("INSERT", "stories", schema),
            ChangeFilter("UPDATE", "stories", schema),
        ),
        SOURCES_TOPIC: (
            ChangeFilter("*", "story_sources", schema),
        ),
        BREAKING_TOPIC: (
            ChangeFilter("INSERT", breaking_table, schema),
            ChangeFilter("UPDATE", breaking_table, schema, filter="is_active=eq.true"),
        ),
    }


class StoryFeedMonitor:
    def __init__(self) -> None:
        self.new_stories = 0
        self.last_update: datetime | None = None
        self.is_connected = False
        self._listeners: list[InvalidationListener] = []

    def attach(self, router: ChangeEventRouter) -> None:
        router.register("stories", Operation.INSERT, self.on_story_inserted)
        router.register("stories", Operation.UPDATE, self.on_story_updated)
        router.register("story_sources", "*", self.on_source_changed)

    def on_invalidate(self, listener: InvalidationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def on_story_inserted(self, event: ChangeEvent) -> None:
        self.new_stories += 1
        self.last_update = datetime.now(timezone.utc)
        log.debug("feed.story_inserted", id=event.record_id, new_stories=self.new_stories)

    def on_story_updated(self, event: ChangeEvent) -> None:
        self.last_update = datetime.now(timezone.utc)
        log.debug("feed.story_updated", id=event.record_id)
        self._invalidate(NEWS_QUERY_KEYS)

    def on_source_changed(self, event: ChangeEvent) -> None:
        log.debug("feed.source_changed", operation=event.operation.value, id=event.record_id)

    def on_subscription_status(self, sub: Subscription) -> None:
        if sub.topic == STORIES_TOPIC:
            self.is_connected = sub.status is SubscriptionStatus.CONNECTED

    def refresh(self) -> None:
        """Refetch everything the feed shows and clear the new-story counter."""
        self._invalidate(REFRESH_QUERY_KEYS)
        self.reset_new_count()

    def reset_new_count(self) -> None:
        self.new_stories = 0

    def _invalidate(self, keys: Sequence[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(keys)
            except Exception:
                log.exception("feed.invalidation_listener_error", keys=list(keys))
