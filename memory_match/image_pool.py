from __future__ import annotations

from typing import Iterable, List, Sequence
import logging

from .cards import Image


logger = logging.getLogger(__name__)

# demo images shipped with the frontend under /demo-cards/
DEMO_CARD_COUNT = 20


def demo_images(count: int) -> List[Image]:
    return [
        Image(id=f"demo-{i}", url=f"/demo-cards/card-{i}.svg", display_name=f"Demo Card {i}")
        for i in range(1, min(count, DEMO_CARD_COUNT) + 1)
    ]


def build_image_pool(candidates: Iterable[Image], min_required: int) -> List[Image]:
    """Deduplicate candidates by URL and pad with demo images when short."""
    seen = set()
    pool: List[Image] = []
    for img in candidates:
        if img.kind != "regular" or img.url in seen:
            continue
        seen.add(img.url)
        pool.append(img)
    if len(pool) < min_required:
        for demo in demo_images(min_required - len(pool) + 5):
            if demo.url in seen:
                continue
            seen.add(demo.url)
            pool.append(demo)
            if len(pool) >= min_required:
                break
    return pool


class NullImageSource:
    """Image source for players without holdings; the pool falls back to demo images."""

    async def fetch_candidate_images(self, address: str) -> List[Image]:
        return []


class ImagePool:
    """Append-only image pool for one session.

    Every stage load bumps ``generation``; a prefetch that finishes after a
    newer load started is dropped instead of merged.
    """

    def __init__(self, source, address: str) -> None:
        self.source = source
        self.address = address
        self.generation = 0
        self._images: List[Image] = []

    @property
    def images(self) -> List[Image]:
        return list(self._images)

    def __len__(self) -> int:
        return len(self._images)

    async def load_for_stage(self, pairs_needed: int) -> List[Image]:
        self.generation += 1
        if len(self._images) >= pairs_needed:
            return self.images
        try:
            fetched = await self.source.fetch_candidate_images(self.address)
        except Exception as e:
            logger.warning("image source failed for %s, using demo images: %s", self.address, e)
            fetched = []
        self._merge(fetched, pairs_needed)
        return self.images

    async def prefetch(self, pairs_needed: int) -> bool:
        """Background-extend the pool for an upcoming stage; True if merged."""
        if len(self._images) >= pairs_needed:
            return False
        generation = self.generation
        try:
            fetched = await self.source.fetch_candidate_images(self.address)
        except Exception as e:
            logger.warning("prefetch failed for %s: %s", self.address, e)
            return False
        if generation != self.generation:
            logger.debug("discarding stale prefetch (generation %d, now %d)", generation, self.generation)
            return False
        self._merge(fetched, pairs_needed)
        return True

    def _merge(self, fetched: Sequence[Image], min_required: int) -> None:
        merged = build_image_pool(list(self._images) + list(fetched), min_required)
        known = {img.url for img in self._images}
        self._images.extend(img for img in merged if img.url not in known)
