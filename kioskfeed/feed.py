from typing import Any

from .broadcast import Broadcaster
from .config import Settings
from .normalizer import Normalization, PayloadNormalizer
from .storage import ResultStore


class Feed:
    """Ingestion pipeline: normalize, store, then push to live subscribers.

    Owns the result store and the subscriber set; nothing else mutates
    either.
    """

    def __init__(
        self,
        store: ResultStore,
        broadcaster: Broadcaster,
        normalizer: PayloadNormalizer,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.normalizer = normalizer

    @classmethod
    def from_settings(cls, settings: Settings) -> "Feed":
        return cls(
            store=ResultStore(capacity=settings.store_capacity),
            broadcaster=Broadcaster(),
            normalizer=PayloadNormalizer(
                content_format=settings.content_format,
                layout=settings.content_layout,
            ),
        )

    def ingest(self, body: Any) -> Normalization:
        """Run one webhook body through the pipeline.

        Runs without awaiting, so concurrent webhook calls never interleave
        inside it.  The returned result is the stored (timestamped) copy.
        """
        normalized = self.normalizer.normalize(body)
        stored = self.store.add(normalized.result)
        self.broadcaster.publish(stored)
        return normalized._replace(result=stored)
