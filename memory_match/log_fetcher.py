from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple
import asyncio
import logging

import requests
from aiohttp import ClientTimeout
from eth_abi.exceptions import DecodingError
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import LogTopicError, MismatchedABI

from .config import Settings
from .contract import MEMORY_GAME_ABI
from .errors import LogFetchError


logger = logging.getLogger(__name__)

Window = Tuple[int, int]

# Etherscan-style APIs refuse page * offset above this
EXPLORER_RESULT_WINDOW = 10000


def chunk_windows(from_block: int, to_block: int, chunk_size: int) -> List[Window]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    windows: List[Window] = []
    start = from_block
    while start <= to_block:
        end = min(start + chunk_size - 1, to_block)
        windows.append((start, end))
        start = end + 1
    return windows


class LogRangeFetcher:
    """Fetches a contract's event logs over a block range.

    With ``chunked=False`` the whole range goes to the provider in one call.
    Otherwise the range is split into ``chunk_size`` windows that run in
    batches of ``parallel_batch`` concurrent requests; batches run one after
    another and results keep block order. Any failing window aborts the
    fetch with a LogFetchError.
    """

    def __init__(
        self,
        client,
        provider: str = "rpc",
        chunked: bool = False,
        chunk_size: int = 1800,
        parallel_batch: int = 8,
    ) -> None:
        if parallel_batch < 1:
            raise ValueError("parallel_batch must be positive")
        self.client = client
        self.provider = provider
        self.chunked = chunked
        self.chunk_size = chunk_size
        self.parallel_batch = parallel_batch

    async def fetch_logs(self, contract_address: str, event_topic: str, from_block: int, to_block="latest") -> List[Any]:
        if not self.chunked:
            return await self._fetch_window(contract_address, event_topic, from_block, to_block)

        if to_block == "latest":
            try:
                to_block = int(await self.client.block_number())
            except Exception as e:
                raise LogFetchError(self.provider, from_block, "latest", e) from e
        if from_block > to_block:
            return []

        windows = chunk_windows(from_block, to_block, self.chunk_size)
        logs: List[Any] = []
        for i in range(0, len(windows), self.parallel_batch):
            batch = windows[i:i + self.parallel_batch]
            tasks = [
                asyncio.ensure_future(self._fetch_window(contract_address, event_topic, start, end))
                for start, end in batch
            ]
            try:
                results = await asyncio.gather(*tasks)
            except BaseException:
                # no request outlives an aborted fetch
                for task in tasks:
                    task.cancel()
                raise
            for chunk in results:
                logs.extend(chunk)
        logger.debug(
            "fetched %d logs in %d windows via %s (blocks %s-%s)",
            len(logs), len(windows), self.provider, from_block, to_block,
        )
        return logs

    async def _fetch_window(self, contract_address: str, event_topic: str, start, end) -> List[Any]:
        try:
            return list(await self.client.get_logs(contract_address, event_topic, start, end))
        except Exception as e:
            raise LogFetchError(self.provider, start, end, e) from e


class Web3LogClient:
    """Node RPC log source; logs come back decoded as GameCompleted events."""

    def __init__(self, rpc_url: str, contract_address: str, timeout: int = 20) -> None:
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": ClientTimeout(total=timeout)}))
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=MEMORY_GAME_ABI)
        self.event = contract.events.GameCompleted()

    async def block_number(self) -> int:
        return await self.w3.eth.block_number

    async def get_logs(self, contract_address: str, event_topic: str, from_block, to_block) -> List[Any]:
        raw = await self.w3.eth.get_logs(
            {
                "address": Web3.to_checksum_address(contract_address),
                "topics": [event_topic],
                "fromBlock": from_block,
                "toBlock": to_block,
            }
        )
        out: List[Any] = []
        for log in raw:
            try:
                out.append(self.event.process_log(log))
            except (MismatchedABI, LogTopicError, DecodingError):
                # leave undecodable entries raw; aggregation skips them
                out.append(log)
        return out


class ExplorerLogClient:
    """Block-explorer ``module=logs&action=getLogs`` source (topic/data logs)."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        timeout: int = 20,
        page_size: int = 1000,
        max_result_window: int = EXPLORER_RESULT_WINDOW,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self.page_size = page_size
        self.max_result_window = max_result_window
        self.session = session or requests.Session()

    async def block_number(self) -> int:
        body = await asyncio.to_thread(self._get, {"module": "proxy", "action": "eth_blockNumber"})
        return int(body["result"], 16)

    async def get_logs(self, contract_address: str, event_topic: str, from_block, to_block) -> List[Any]:
        return await asyncio.to_thread(self._get_all, contract_address, event_topic, from_block, to_block)

    def _get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if self.api_key:
            params = dict(params, apikey=self.api_key)
        resp = self.session.get(self.api_url, params=params, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def _get_all(self, contract_address: str, event_topic: str, from_block, to_block) -> List[Any]:
        logs: List[Any] = []
        start = from_block
        page = 1
        while True:
            body = self._get(
                {
                    "module": "logs",
                    "action": "getLogs",
                    "address": contract_address,
                    "topic0": event_topic,
                    "fromBlock": start,
                    "toBlock": to_block,
                    "page": page,
                    "offset": self.page_size,
                }
            )
            result = body.get("result")
            if str(body.get("status")) != "1":
                message = str(body.get("message") or "")
                if "no records" in message.lower():
                    return logs
                raise RuntimeError(f"explorer getLogs error: {result or message}")
            if not isinstance(result, list):
                raise RuntimeError("explorer getLogs returned a malformed result")
            logs.extend(result)
            if len(result) < self.page_size:
                return logs
            if (page + 1) * self.page_size <= self.max_result_window:
                page += 1
                continue
            # page * offset is capped: restart paging at the last block seen,
            # dropping its logs so they are fetched again in full
            last_block = _block_number(result[-1])
            if last_block <= int(start):
                raise RuntimeError(
                    f"explorer getLogs: block {last_block} holds more than {self.max_result_window} logs"
                )
            while logs and _block_number(logs[-1]) == last_block:
                logs.pop()
            logger.debug("explorer result window full, restarting at block %d", last_block)
            start = last_block
            page = 1


def _block_number(log: Dict[str, Any]) -> int:
    value = log.get("blockNumber")
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def build_log_fetcher(settings: Settings) -> LogRangeFetcher:
    if settings.leaderboard_source == "explorer":
        client = ExplorerLogClient(
            settings.explorer_api_url,
            api_key=settings.explorer_api_key,
            timeout=settings.rpc_timeout_sec,
        )
        return LogRangeFetcher(client, provider=settings.provider_label, chunked=False)
    client = Web3LogClient(settings.log_rpc_url, settings.contract_address, timeout=settings.rpc_timeout_sec)
    return LogRangeFetcher(
        client,
        provider=settings.provider_label,
        chunked=settings.use_chunking,
        chunk_size=settings.log_chunk_size,
        parallel_batch=settings.log_parallel_batch,
    )
