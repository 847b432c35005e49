from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from .cards import stage_config
from .game_engine import (
    GameState,
    new_game,
    start_stage,
    flip as engine_flip,
    resolve_match as engine_resolve,
    advance_stage as engine_advance,
    score_for,
    to_client_view,
)
from .image_pool import ImagePool, NullImageSource
from .score_recorder import ScoreRecorder, ScoreRecordingSession


ACTIVE_STATUSES = ("loading", "playing", "stage_complete")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ms_between(a: Optional[datetime], b: datetime) -> Optional[int]:
    if a is None:
        return None
    return int((b - a).total_seconds() * 1000)


class InMemorySessions:
    """In-memory game sessions keyed by player, for tests and local dev.

    Each session owns its engine snapshot, its image pool and its score
    recorder. Engine transitions never raise; lookups of a missing session
    raise KeyError and refused host actions raise ValueError with a code.
    """

    def __init__(
        self,
        image_source=None,
        recorder_factory: Optional[Callable[[str], ScoreRecorder]] = None,
        rng_seed: Optional[int] = None,
    ) -> None:
        self.image_source = image_source or NullImageSource()
        self.recorder_factory = recorder_factory
        self.rng_seed = rng_seed
        self.games: Dict[str, Dict[str, Any]] = {}
        self.moves: Dict[str, list[Dict[str, Any]]] = {}

    def get_game(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.games.get(user_id)

    def _require(self, user_id: str) -> Dict[str, Any]:
        game = self.games.get(user_id)
        if not game:
            raise KeyError("game_not_found")
        return game

    async def start_game(self, user_id: str, rng_seed: Optional[int] = None) -> Dict[str, Any]:
        existing = self.games.get(user_id)
        if existing and existing["state"].status in ACTIVE_STATUSES:
            raise ValueError("active_game_exists")

        pool = ImagePool(self.image_source, user_id)
        cfg = stage_config(1)
        images = await pool.load_for_stage(cfg.pairs_needed)
        seed = rng_seed if rng_seed is not None else self.rng_seed
        state = start_stage(new_game(rng_seed=seed), 1, images)
        now = _now()
        doc = {
            "state": state,
            "pool": pool,
            "recorder": self.recorder_factory(user_id) if self.recorder_factory else None,
            "created_at": now,
            "updated_at": now,
            "stage_started_at": now,
            "finished_at": None,
        }
        self.games[user_id] = doc
        self.moves[user_id] = []
        return doc

    async def prefetch_next(self, user_id: str) -> bool:
        game = self.games.get(user_id)
        if not game:
            return False
        next_cfg = stage_config(game["state"].stage + 1)
        return await game["pool"].prefetch(next_cfg.pairs_needed)

    def _append_move(self, user_id: str, game: Dict[str, Any], move: Dict[str, Any]) -> None:
        moves = self.moves.setdefault(user_id, [])
        now = move["timestamp"]
        last_ts = moves[-1]["timestamp"] if moves else game["created_at"]
        move["seq"] = len(moves) + 1
        move["ms_since_stage_start"] = _ms_between(game.get("stage_started_at"), now)
        move["ms_since_prev_move"] = _ms_between(last_ts, now)
        moves.append(move)

    def _commit(self, game: Dict[str, Any], before: GameState, after: GameState) -> datetime:
        now = _now()
        game["state"] = after
        game["updated_at"] = now
        if after.status == "game_over" and before.status != "game_over":
            game["finished_at"] = now
        return now

    def flip(self, user_id: str, card_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        game = self._require(user_id)
        before = game["state"]
        after = engine_flip(before, card_id)
        now = self._commit(game, before, after)
        move = {
            "action": "flip",
            "card_id": card_id,
            "timestamp": now,
            "changed": after is not before,
            "status_after": after.status,
        }
        self._append_move(user_id, game, move)
        return game, move

    def resolve(self, user_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        game = self._require(user_id)
        before = game["state"]
        after, result = engine_resolve(before)
        now = self._commit(game, before, after)
        move = {
            "action": "resolve",
            "timestamp": now,
            "changed": after is not before,
            "matched": result["matched"],
            "damage": result["damage"],
            "healed": result["healed"],
            "hp_after": after.hp,
            "status_after": result["status_after"],
        }
        self._append_move(user_id, game, move)
        return game, move

    async def advance(self, user_id: str) -> Dict[str, Any]:
        game = self._require(user_id)
        state = game["state"]
        if state.status != "stage_complete":
            raise ValueError("stage_not_complete")
        recorder: Optional[ScoreRecorder] = game["recorder"]
        if recorder is not None:
            recorder.reset()
        cfg = stage_config(state.stage + 1)
        images = await game["pool"].load_for_stage(cfg.pairs_needed)
        # the stage may have changed while images were loading
        if game["state"] is not state:
            raise ValueError("state_changed")
        after = engine_advance(state, images)
        now = self._commit(game, state, after)
        game["stage_started_at"] = now
        self._append_move(
            user_id,
            game,
            {"action": "advance", "timestamp": now, "changed": True, "status_after": after.status, "stage": after.stage},
        )
        return game

    async def record(self, user_id: str) -> ScoreRecordingSession:
        game = self._require(user_id)
        score = score_for(game["state"])
        if score is None:
            raise ValueError("nothing_to_record")
        recorder: Optional[ScoreRecorder] = game["recorder"]
        if recorder is None:
            raise ValueError("recording_unavailable")
        if recorder.session.succeeded:
            raise ValueError("already_recorded")
        stage, moves = score
        return await recorder.record_score(stage, moves)

    def to_client(self, game: Dict[str, Any]) -> Dict[str, Any]:
        s: GameState = game["state"]
        recorder: Optional[ScoreRecorder] = game.get("recorder")
        return {
            "status": s.status,
            "stage": s.stage,
            "cards": to_client_view(s),
            "flipped_card_ids": list(s.flipped_card_ids),
            "matched_pairs": s.matched_pairs,
            "total_pairs": s.total_pairs,
            "moves": s.moves_this_stage,
            "total_moves": s.total_moves_across_stages,
            "hp": s.hp,
            "max_hp": s.max_hp,
            "consecutive_misses": s.consecutive_misses,
            "error": s.error_message,
            "images_loaded": len(game["pool"]),
            "score": recorder.session.to_client() if recorder is not None else None,
            "created_at": game["created_at"].isoformat(),
            "updated_at": game["updated_at"].isoformat(),
            "finished_at": game["finished_at"].isoformat() if game.get("finished_at") else None,
        }
