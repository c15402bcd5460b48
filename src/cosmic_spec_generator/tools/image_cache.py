"""Bounded cache of images extracted from recently uploaded documents."""

from __future__ import annotations

import logging
import secrets
import threading
import time
from collections import OrderedDict

from ..models import ExtractedImage

logger = logging.getLogger(__name__)


def new_doc_id() -> str:
    """``doc_<epoch ms>_<random>`` identifier for an upload."""
    return f"doc_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


class ImageCache:
    """Fixed-capacity store; inserting past capacity evicts the oldest insert.

    Reads do not refresh an entry's position.
    """

    def __init__(self, capacity: int = 10) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: OrderedDict[str, list[ExtractedImage]] = OrderedDict()
        self._lock = threading.Lock()

    def put(self, doc_id: str, images: list[ExtractedImage]) -> None:
        with self._lock:
            self._entries.pop(doc_id, None)
            self._entries[doc_id] = list(images)
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted cached images for %s", evicted)

    def get(self, doc_id: str) -> list[ExtractedImage] | None:
        with self._lock:
            images = self._entries.get(doc_id)
            return list(images) if images is not None else None

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
