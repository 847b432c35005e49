import asyncio

from web3 import Web3
from web3.datastructures import AttributeDict

from memory_match.config import Settings, ZERO_ADDRESS
from memory_match.contract import GAME_COMPLETED_TOPIC
from memory_match.errors import LogFetchError
from memory_match.leaderboard import (
    LeaderboardEntry,
    RawTopicLog,
    StructuredLog,
    aggregate,
    classify,
    decode_log,
    load_leaderboard,
)


A = Web3.to_checksum_address("0x" + "a1" * 20)
B = Web3.to_checksum_address("0x" + "b2" * 20)
CONTRACT = "0x" + "cc" * 20


def structured(player, stage, moves):
    return {"args": {"player": player, "stage": stage, "moves": moves}, "blockNumber": 1}


def raw(player, stage, moves, topic0=GAME_COMPLETED_TOPIC):
    word = "0x" + "00" * 12 + player[2:].lower()
    data = "0x" + stage.to_bytes(32, "big").hex() + moves.to_bytes(32, "big").hex()
    return {"topics": [topic0, word], "data": data, "blockNumber": "0x10"}


def test_best_per_player_and_ranking():
    logs = [structured(A, 3, 10), structured(A, 2, 5), structured(B, 3, 8)]
    entries = aggregate(logs)
    assert entries == [LeaderboardEntry(B, 3, 8), LeaderboardEntry(A, 3, 10)]


def test_same_stage_keeps_fewest_moves():
    entries = aggregate([structured(A, 4, 30), structured(A, 4, 12), structured(A, 4, 20)])
    assert entries == [LeaderboardEntry(A, 4, 12)]


def test_both_encodings_decode_to_same_record():
    a = decode_log(structured(A.lower(), 5, 17))
    b = decode_log(raw(A, 5, 17))
    assert a == b
    assert a.player == A
    assert isinstance(classify(structured(A, 1, 1)), StructuredLog)
    assert isinstance(classify(raw(A, 1, 1)), RawTopicLog)


def test_web3_event_data_is_structured():
    event = AttributeDict({"args": AttributeDict({"player": A, "stage": 2, "moves": 9}), "event": "GameCompleted"})
    rec = decode_log(event)
    assert (rec.player, rec.stage, rec.moves) == (A, 2, 9)


def test_mixed_sources_dedupe_by_address():
    entries = aggregate([raw(A, 2, 4), structured(A.lower(), 3, 40), raw(B, 1, 2)])
    assert entries == [LeaderboardEntry(A, 3, 40), LeaderboardEntry(B, 1, 2)]


def test_malformed_entries_are_skipped():
    bad = [
        {"args": {"stage": 1, "moves": 2}},
        {"args": {"player": A, "stage": None, "moves": 2}},
        {"args": {"player": "not-an-address", "stage": 1, "moves": 2}},
        {"topics": [GAME_COMPLETED_TOPIC], "data": "0x"},
        {"topics": [GAME_COMPLETED_TOPIC, "0x" + "00" * 32], "data": "0x1234"},
        raw(A, 9, 9, topic0="0x" + "ff" * 32),
        {"foo": "bar"},
        "garbage",
        None,
    ]
    entries = aggregate(bad + [structured(B, 2, 3)])
    assert entries == [LeaderboardEntry(B, 2, 3)]


def test_output_truncated_to_top_twenty():
    logs = [structured("0x" + f"{i:040x}", i % 5 + 1, 100 - i) for i in range(1, 31)]
    entries = aggregate(logs)
    assert len(entries) == 20
    keys = [(-e.best_stage, e.moves_at_best_stage) for e in entries]
    assert keys == sorted(keys)
    assert aggregate(logs, limit=3) == entries[:3]


class StubFetcher:
    def __init__(self, logs=None, error=None):
        self.logs = logs or []
        self.error = error
        self.calls = []

    async def fetch_logs(self, contract_address, event_topic, from_block, to_block):
        self.calls.append((contract_address, event_topic, from_block, to_block))
        if self.error:
            raise self.error
        return self.logs


def test_load_leaderboard_without_contract_does_no_io():
    fetcher = StubFetcher()
    body = asyncio.run(load_leaderboard(Settings(contract_address=ZERO_ADDRESS), fetcher))
    assert body == {"entries": []}
    assert fetcher.calls == []


def test_load_leaderboard_scans_from_deploy_block():
    fetcher = StubFetcher([structured(A, 2, 6)])
    body = asyncio.run(load_leaderboard(Settings(contract_address=CONTRACT, deploy_block=28_000_000), fetcher))
    assert body == {"entries": [{"address": A, "stage": 2, "moves": 6}]}
    assert fetcher.calls == [(CONTRACT, GAME_COMPLETED_TOPIC, 28_000_000, "latest")]


def test_load_leaderboard_reports_provider_on_error():
    fetcher = StubFetcher(error=ConnectionError("boom\nstack trace"))
    body = asyncio.run(load_leaderboard(Settings(contract_address=CONTRACT), fetcher))
    assert body == {"error": "boom (via public Base RPC)"}

    err = LogFetchError("Alchemy", 0, 10, TimeoutError("timed out"))
    body = asyncio.run(load_leaderboard(Settings(contract_address=CONTRACT, alchemy_api_key="k"), StubFetcher(error=err)))
    assert body == {"error": "getLogs failed for blocks 0-10 via Alchemy: timed out"}
