from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence
import random


RESTORE_DENSITY = 8


class InvalidConfiguration(ValueError):
    pass


@dataclass(frozen=True)
class Image:
    id: str
    url: str
    display_name: str
    kind: str = "regular"


@dataclass(frozen=True)
class Card:
    id: str
    pair_id: str
    image: Image
    face_state: str
    position: int

    @property
    def is_restore(self) -> bool:
        return self.image.kind == "restore"


@dataclass(frozen=True)
class StageConfig:
    stage: int
    total_cards: int
    pairs_needed: int


RESTORE_IMAGE = Image(id="restore", url="/heart.svg", display_name="Heart", kind="restore")


def card_count(stage: int) -> int:
    # Stage 1=4, Stage 2=8, Stage 3=12, ...
    return stage * 4


def stage_config(stage: int) -> StageConfig:
    if stage < 1:
        raise InvalidConfiguration("invalid_stage")
    total = card_count(stage)
    return StageConfig(stage=stage, total_cards=total, pairs_needed=total // 2)


def restore_count(total_cards: int) -> int:
    return total_cards // RESTORE_DENSITY


def build_deck(
    images: Sequence[Image],
    pairs_needed: int,
    total_cards: int,
    rng_seed: int | None = None,
) -> List[Card]:
    """Build a shuffled deck for one stage.

    One restore pair is injected per eight cards; the remaining pairs take
    the first images of the pool in order. Positions are the post-shuffle
    indices.
    """
    if pairs_needed < 0 or total_cards < 0:
        raise InvalidConfiguration("negative_card_count")
    n_restore = restore_count(total_cards)
    n_regular = pairs_needed - n_restore
    if n_regular < 0:
        raise InvalidConfiguration("too_many_restore_cards")
    if len(images) < n_regular:
        raise InvalidConfiguration("not_enough_images")

    cards: List[Card] = []
    for i, image in enumerate(images[:n_regular]):
        pair_id = f"pair-{i}"
        cards.append(Card("", pair_id, image, "hidden", 0))
        cards.append(Card("", pair_id, image, "hidden", 0))
    for h in range(n_restore):
        pair_id = f"restore-{h}"
        cards.append(Card("", pair_id, RESTORE_IMAGE, "hidden", 0))
        cards.append(Card("", pair_id, RESTORE_IMAGE, "hidden", 0))

    rng = random.Random(rng_seed)
    rng.shuffle(cards)
    # ids carry no pair information; they are only handles for flip intents
    return [Card(f"card-{pos}", c.pair_id, c.image, c.face_state, pos) for pos, c in enumerate(cards)]
