from collections import Counter

import pytest

from memory_match.cards import (
    Image,
    InvalidConfiguration,
    RESTORE_IMAGE,
    build_deck,
    card_count,
    stage_config,
)


def imgs(n):
    return [Image(id=f"img-{i}", url=f"https://img.example/{i}.png", display_name=f"Img {i}") for i in range(n)]


def test_stage_sizing_is_stage_times_four():
    assert [card_count(s) for s in (1, 2, 3, 4)] == [4, 8, 12, 16]
    for stage in range(1, 30):
        cfg = stage_config(stage)
        assert cfg.total_cards % 2 == 0
        assert cfg.pairs_needed == cfg.total_cards // 2
        assert stage_config(stage) == cfg


def test_stage_config_rejects_stage_zero():
    with pytest.raises(InvalidConfiguration):
        stage_config(0)


@pytest.mark.parametrize("stage", [1, 2, 3, 5, 8, 10])
def test_deck_has_two_cards_per_pair_and_restore_density(stage):
    cfg = stage_config(stage)
    deck = build_deck(imgs(30), cfg.pairs_needed, cfg.total_cards, rng_seed=stage)
    assert len(deck) == cfg.total_cards
    assert set(Counter(c.pair_id for c in deck).values()) == {2}
    restore = [c for c in deck if c.is_restore]
    assert len(restore) == 2 * (cfg.total_cards // 8)
    assert all(c.image == RESTORE_IMAGE for c in restore)
    assert sorted(c.position for c in deck) == list(range(cfg.total_cards))
    assert [c.position for c in deck] == list(range(cfg.total_cards))
    assert all(c.face_state == "hidden" for c in deck)


def test_deck_uses_first_images_in_order():
    cfg = stage_config(2)
    deck = build_deck(imgs(10), cfg.pairs_needed, cfg.total_cards, rng_seed=1)
    used = {c.image.id for c in deck if not c.is_restore}
    # 4 pairs, one of them restore
    assert used == {"img-0", "img-1", "img-2"}


def test_deck_is_deterministic_for_a_seed():
    a = build_deck(imgs(10), 6, 12, rng_seed=99)
    b = build_deck(imgs(10), 6, 12, rng_seed=99)
    assert a == b
    orders = {tuple(c.id for c in build_deck(imgs(10), 6, 12, rng_seed=s)) for s in range(10)}
    assert len(orders) > 1


def test_shuffle_is_roughly_uniform_for_first_slot():
    counts = Counter(build_deck(imgs(3), 4, 8, rng_seed=s)[0].pair_id for s in range(4000))
    assert set(counts) == {"pair-0", "pair-1", "pair-2", "restore-0"}
    assert all(800 < n < 1200 for n in counts.values())


def test_card_ids_do_not_reveal_pairs():
    deck = build_deck(imgs(3), 4, 8, rng_seed=5)
    assert [c.id for c in deck] == [f"card-{i}" for i in range(8)]


def test_invalid_configuration():
    with pytest.raises(InvalidConfiguration):
        build_deck(imgs(4), -1, 4)
    with pytest.raises(InvalidConfiguration):
        build_deck(imgs(4), 2, -4)
    with pytest.raises(InvalidConfiguration):
        build_deck(imgs(4), 1, 16)
    with pytest.raises(InvalidConfiguration) as exc:
        build_deck(imgs(1), 2, 4)
    assert str(exc.value) == "not_enough_images"
