"""Topic subscriptions kept in the key-value store, and a local cache of them."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field

from .storage import Store

log = logging.getLogger(__name__)

TOPICS_CAT = "topics"


class TopicError(ValueError):
    """Raised when a topic request is invalid."""


@dataclass(frozen=True)
class Subscriber:
    """One URL subscribed to a topic."""

    url: str
    remark: str = ""


@dataclass
class Topic:
    """A topic and the subscribers known for it."""

    name: str
    subscribers: list[Subscriber] = field(default_factory=list)
    version: int = 0


def _dump_subscribers(subscribers: list[Subscriber]) -> str:
    return json.dumps(
        [{"url": s.url, "remark": s.remark} for s in subscribers],
        separators=(",", ":"),
        ensure_ascii=False,
    )


def _load_subscribers(text: str) -> list[Subscriber]:
    items = json.loads(text) if text else []
    return [Subscriber(url=item.get("url", ""), remark=item.get("remark", "")) for item in items or []]


def _check(topic: str, url: str) -> None:
    if not topic:
        raise TopicError("empty topic")
    if not url:
        raise TopicError("empty url")


def subscribe(store: Store, topic: str, url: str, remark: str = "") -> None:
    """Add ``url`` to the subscribers of ``topic``, creating the topic if needed."""
    _check(topic, url)
    new = Subscriber(url=url, remark=remark)
    kvs = store.find_kv(TOPICS_CAT, topic)
    if not kvs:
        store.create_kv(TOPICS_CAT, topic, _dump_subscribers([new]))
        return
    kv = kvs[0]
    subscribers = _load_subscribers(kv.v)
    if any(s.url == url for s in subscribers):
        raise TopicError("this url exists")
    subscribers.append(new)
    kv.v = _dump_subscribers(subscribers)
    store.update_kv(kv)


def unsubscribe(store: Store, topic: str, url: str) -> None:
    """Remove ``url`` from the subscribers of ``topic``."""
    _check(topic, url)
    kvs = store.find_kv(TOPICS_CAT, topic)
    if not kvs:
        raise TopicError("no such a topic")
    kv = kvs[0]
    subscribers = _load_subscribers(kv.v)
    if not subscribers:
        raise TopicError("this topic is empty")
    remaining = list(subscribers)
    for index, subscriber in enumerate(subscribers):
        if subscriber.url == url:
            del remaining[index]
            break
    if len(remaining) == len(subscribers):
        raise TopicError("no such an url ")
    kv.v = _dump_subscribers(remaining)
    store.update_kv(kv)


def delete_topic(store: Store, topic: str) -> None:
    """Delete a topic together with all its subscribers."""
    if not topic:
        raise TopicError("empty topic")
    store.delete_kv(TOPICS_CAT, topic)


class TopicCache:
    """In-memory copy of the topics, refreshed from the store by version."""

    def __init__(self) -> None:
        self.topics: dict[str, Topic] = {}
        self._lock = threading.Lock()

    def update(self, store: Store) -> None:
        """Reload every topic whose stored version is newer than the cached one."""
        kvs = store.find_kv(TOPICS_CAT, "")
        with self._lock:
            for kv in kvs:
                old = self.topics.get(kv.k)
                if old is not None and old.version >= kv.version:
                    continue
                new = Topic(name=kv.k, subscribers=_load_subscribers(kv.v), version=kv.version)
                self.topics[kv.k] = new
                log.info("topic updated. old topic:%s new topic:%s", old, new)
            log.debug("all topic updated. topic:%s", self.topics)

    def urls(self, topic: str) -> list[str]:
        """Return the subscriber URLs of ``topic``, empty if it is unknown."""
        with self._lock:
            found = self.topics.get(topic)
            return [] if found is None else [s.url for s in found.subscribers]