from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
import logging

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3

from .config import Settings
from .contract import GAME_COMPLETED_TOPIC
from .errors import LogFetchError, short_error


logger = logging.getLogger(__name__)

TOP_N = 20


@dataclass(frozen=True)
class GameRecord:
    player: str
    stage: int
    moves: int


@dataclass(frozen=True)
class LeaderboardEntry:
    player_address: str
    best_stage: int
    moves_at_best_stage: int

    def to_client(self) -> Dict[str, Any]:
        return {"address": self.player_address, "stage": self.best_stage, "moves": self.moves_at_best_stage}


@dataclass(frozen=True)
class StructuredLog:
    args: Mapping


@dataclass(frozen=True)
class RawTopicLog:
    topics: Sequence[Any]
    data: Any


WireLog = Union[StructuredLog, RawTopicLog]


def classify(log: Any) -> Optional[WireLog]:
    if not isinstance(log, Mapping):
        return None
    args = log.get("args")
    if isinstance(args, Mapping):
        return StructuredLog(args)
    topics = log.get("topics")
    if topics is not None and "data" in log:
        return RawTopicLog(tuple(topics), log["data"])
    return None


def decode_structured(log: StructuredLog) -> Optional[GameRecord]:
    player = log.args.get("player")
    stage = log.args.get("stage")
    moves = log.args.get("moves")
    if not player or stage is None or moves is None:
        return None
    try:
        return GameRecord(Web3.to_checksum_address(player), int(stage), int(moves))
    except (TypeError, ValueError):
        return None


def decode_raw(log: RawTopicLog) -> Optional[GameRecord]:
    if len(log.topics) < 2:
        return None
    try:
        topic0 = HexBytes(log.topics[0])
        if topic0 != HexBytes(GAME_COMPLETED_TOPIC):
            return None
        player_word = HexBytes(log.topics[1])
        data = HexBytes(log.data)
        if len(player_word) != 32 or len(data) < 64:
            return None
        stage, moves = abi_decode(["uint32", "uint32"], bytes(data[:64]))
        return GameRecord(Web3.to_checksum_address(player_word[-20:]), int(stage), int(moves))
    except (TypeError, ValueError, DecodingError):
        return None


def decode_log(log: Any) -> Optional[GameRecord]:
    wire = classify(log)
    if isinstance(wire, StructuredLog):
        return decode_structured(wire)
    if isinstance(wire, RawTopicLog):
        return decode_raw(wire)
    return None


def _better(a: GameRecord, b: GameRecord) -> bool:
    # depth of progress first, then efficiency
    return a.stage > b.stage or (a.stage == b.stage and a.moves < b.moves)


def aggregate(raw_logs: Iterable[Any], limit: int = TOP_N) -> List[LeaderboardEntry]:
    best: Dict[str, GameRecord] = {}
    skipped = 0
    for log in raw_logs:
        rec = decode_log(log)
        if rec is None:
            skipped += 1
            continue
        current = best.get(rec.player)
        if current is None or _better(rec, current):
            best[rec.player] = rec
    if skipped:
        logger.warning("skipped %d undecodable GameCompleted logs", skipped)
    ranked = sorted(best.values(), key=lambda r: (-r.stage, r.moves))
    return [LeaderboardEntry(r.player, r.stage, r.moves) for r in ranked[:limit]]


async def load_leaderboard(settings: Settings, fetcher) -> Dict[str, Any]:
    """Leaderboard response: ``{"entries": [...]}`` or ``{"error": "..."}``."""
    if not settings.contract_configured:
        return {"entries": []}
    try:
        logs = await fetcher.fetch_logs(
            settings.contract_address,
            GAME_COMPLETED_TOPIC,
            settings.deploy_block,
            "latest",
        )
    except Exception as e:
        logger.error("getLogs failed (%s): %s", settings.provider_label, e)
        msg = short_error(e, "Failed to fetch leaderboard")
        if not isinstance(e, LogFetchError):
            msg = f"{msg} (via {settings.provider_label})"
        return {"error": msg}
    return {"entries": [entry.to_client() for entry in aggregate(logs)]}
