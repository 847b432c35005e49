from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Sequence, Tuple

from .cards import Card, Image, InvalidConfiguration, build_deck, stage_config


MAX_HP = 100
RESTORE_AMOUNT = 20
# damage by consecutive miss count; the last value repeats
MISS_DAMAGE = (0, 5, 10)

STATUSES = ("loading", "playing", "stage_complete", "game_over", "error")


@dataclass(frozen=True)
class GameState:
    status: str
    stage: int
    cards: Tuple[Card, ...]
    flipped_card_ids: Tuple[str, ...]
    matched_pairs: int
    total_pairs: int
    moves_this_stage: int
    total_moves_across_stages: int
    hp: int
    max_hp: int
    consecutive_misses: int
    last_cleared_moves: int
    error_message: str | None
    rng_seed: int | None


def new_game(rng_seed: int | None = None, max_hp: int = MAX_HP) -> GameState:
    return GameState(
        status="loading",
        stage=1,
        cards=(),
        flipped_card_ids=(),
        matched_pairs=0,
        total_pairs=0,
        moves_this_stage=0,
        total_moves_across_stages=0,
        hp=max_hp,
        max_hp=max_hp,
        consecutive_misses=0,
        last_cleared_moves=0,
        error_message=None,
        rng_seed=rng_seed,
    )


def miss_damage(consecutive_misses: int) -> int:
    if consecutive_misses <= 0:
        return 0
    return MISS_DAMAGE[min(consecutive_misses, len(MISS_DAMAGE)) - 1]


def _deck_seed(s: GameState, stage: int) -> int | None:
    if s.rng_seed is None:
        return None
    return s.rng_seed + stage


def _deal(s: GameState, stage: int, images: Sequence[Image], **carry: Any) -> GameState:
    try:
        cfg = stage_config(stage)
        deck = build_deck(images, cfg.pairs_needed, cfg.total_cards, rng_seed=_deck_seed(s, stage))
    except InvalidConfiguration as e:
        return set_error(s, str(e))
    return replace(
        s,
        status="playing",
        stage=stage,
        cards=tuple(deck),
        flipped_card_ids=(),
        matched_pairs=0,
        total_pairs=cfg.pairs_needed,
        moves_this_stage=0,
        error_message=None,
        **carry,
    )


def start_stage(s: GameState, stage: int, images: Sequence[Image]) -> GameState:
    if s.status != "loading":
        return s
    return _deal(s, stage, images, hp=s.max_hp, consecutive_misses=0, total_moves_across_stages=0)


def flip(s: GameState, card_id: str) -> GameState:
    if s.status != "playing" or len(s.flipped_card_ids) >= 2:
        return s
    card = _find(s, card_id)
    if card is None or card.face_state != "hidden":
        return s
    cards = tuple(replace(c, face_state="flipped") if c.id == card_id else c for c in s.cards)
    return replace(s, cards=cards, flipped_card_ids=s.flipped_card_ids + (card_id,))


def is_match(a: Card, b: Card) -> bool:
    return a.pair_id == b.pair_id or (a.is_restore and b.is_restore)


def resolve_match(s: GameState) -> Tuple[GameState, Dict[str, Any]]:
    noop = {"matched": False, "damage": 0, "healed": 0, "status_after": s.status}
    if s.status != "playing" or len(s.flipped_card_ids) != 2:
        return s, noop
    id_a, id_b = s.flipped_card_ids
    a, b = _find(s, id_a), _find(s, id_b)
    if a is None or b is None:
        return s, noop

    matched = is_match(a, b)
    face = "matched" if matched else "hidden"
    cards = tuple(replace(c, face_state=face) if c.id in (id_a, id_b) else c for c in s.cards)
    moves = s.moves_this_stage + 1
    if matched:
        hp = s.hp
        if a.is_restore or b.is_restore:
            hp = min(s.max_hp, s.hp + RESTORE_AMOUNT)
        pairs = s.matched_pairs + 1
        status = "stage_complete" if pairs == s.total_pairs else "playing"
        ns = replace(
            s,
            cards=cards,
            flipped_card_ids=(),
            matched_pairs=pairs,
            moves_this_stage=moves,
            consecutive_misses=0,
            hp=hp,
            status=status,
        )
        return ns, {"matched": True, "damage": 0, "healed": hp - s.hp, "status_after": status}

    misses = s.consecutive_misses + 1
    damage = miss_damage(misses)
    hp = max(0, s.hp - damage)
    status = "game_over" if hp == 0 else "playing"
    ns = replace(
        s,
        cards=cards,
        flipped_card_ids=(),
        moves_this_stage=moves,
        consecutive_misses=misses,
        hp=hp,
        status=status,
    )
    return ns, {"matched": False, "damage": s.hp - hp, "healed": 0, "status_after": status}


def advance_stage(s: GameState, images: Sequence[Image]) -> GameState:
    if s.status != "stage_complete":
        return s
    return _deal(
        s,
        s.stage + 1,
        images,
        total_moves_across_stages=s.total_moves_across_stages + s.moves_this_stage,
        last_cleared_moves=s.moves_this_stage,
    )


def set_error(s: GameState, message: str) -> GameState:
    if s.status == "game_over":
        return s
    return replace(s, status="error", error_message=message)


def score_for(s: GameState) -> Tuple[int, int] | None:
    """The (stage, moves) pair to put on chain for the current state."""
    if s.status == "stage_complete":
        return s.stage, s.moves_this_stage
    if s.status == "game_over" and s.stage > 1:
        return s.stage - 1, s.last_cleared_moves
    return None


def _find(s: GameState, card_id: str) -> Card | None:
    for c in s.cards:
        if c.id == card_id:
            return c
    return None


def to_client_view(s: GameState) -> List[Dict[str, Any]]:
    cards: List[Dict[str, Any]] = []
    for c in sorted(s.cards, key=lambda c: c.position):
        cell: Dict[str, Any] = {"id": c.id, "position": c.position, "state": c.face_state}
        if c.face_state != "hidden" or s.status == "game_over":
            cell["image"] = {
                "id": c.image.id,
                "url": c.image.url,
                "name": c.image.display_name,
                "kind": c.image.kind,
            }
        cards.append(cell)
    return cards
