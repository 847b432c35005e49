from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence
import asyncio
import logging

from aiohttp import ClientTimeout
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError
from web3.types import RPCEndpoint

from .config import BASE_MAINNET, ChainInfo, Settings, is_zero_address
from .contract import MEMORY_GAME_ABI
from .errors import (
    ContractRejected,
    NetworkMismatch,
    ProviderRequestError,
    TransactionFailed,
    short_error,
)


logger = logging.getLogger(__name__)

UNRECOGNIZED_CHAIN = 4902
UINT32_MAX = 2**32 - 1

IN_FLIGHT = ("switching_network", "sending", "confirming")

SWITCHED = "switched"
FAILED = "failed"
NOT_APPLICABLE = "not_applicable"


@dataclass(frozen=True)
class SwitchOutcome:
    outcome: str
    error: Optional[BaseException] = None


class WalletSwitch:
    """Ask the connected wallet to change networks."""

    name = "wallet"

    async def attempt(self, wallet, chain: ChainInfo) -> SwitchOutcome:
        try:
            await wallet.switch_chain(chain.chain_id)
        except Exception as e:
            return SwitchOutcome(FAILED, e)
        return SwitchOutcome(SWITCHED)


class RawProviderSwitch:
    """wallet_switchEthereumChain straight on the provider.

    Only safe for injected connections, where the raw provider is the
    connected wallet itself. A 4902 answer means the wallet does not know
    the chain yet: add it, then switch again.
    """

    name = "raw_provider"

    async def attempt(self, wallet, chain: ChainInfo) -> SwitchOutcome:
        provider = getattr(wallet, "raw_provider", None)
        if getattr(wallet, "connection_kind", None) != "injected" or provider is None:
            return SwitchOutcome(NOT_APPLICABLE)
        switch_params = [{"chainId": chain.hex_id}]
        try:
            await provider.request("wallet_switchEthereumChain", switch_params)
        except ProviderRequestError as e:
            # some providers send the code as a string
            if str(e.code) != str(UNRECOGNIZED_CHAIN):
                return SwitchOutcome(FAILED, e)
            try:
                await provider.request("wallet_addEthereumChain", [chain.add_chain_params()])
                # some wallets do not switch after adding
                await provider.request("wallet_switchEthereumChain", switch_params)
            except Exception as e2:
                return SwitchOutcome(FAILED, e2)
        except Exception as e:
            return SwitchOutcome(FAILED, e)
        return SwitchOutcome(SWITCHED)


DEFAULT_SWITCH_STRATEGIES = (WalletSwitch(), RawProviderSwitch())


async def switch_network(wallet, chain: ChainInfo, strategies: Sequence = DEFAULT_SWITCH_STRATEGIES) -> str:
    """Run switch strategies in order; returns the name of the one that worked.

    Not-applicable strategies are skipped. If none succeeds the latest
    failure is raised, so a connection without a raw provider surfaces the
    wallet's own error.
    """
    last_error: Optional[BaseException] = None
    for strategy in strategies:
        result = await strategy.attempt(wallet, chain)
        if result.outcome == SWITCHED:
            return strategy.name
        if result.outcome == FAILED:
            last_error = result.error
    if last_error is not None:
        raise last_error
    raise NetworkMismatch(f"Cannot switch to {chain.name}: no compatible wallet provider found")


@dataclass
class ScoreRecordingSession:
    status: str = "idle"
    last_error: Optional[str] = None
    tx_hash: Optional[str] = None
    timeline: List[str] = field(default_factory=lambda: ["idle"])

    @property
    def succeeded(self) -> bool:
        return self.status in ("confirmed", "skipped")

    def to_client(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "error": self.last_error,
            "tx_hash": self.tx_hash,
            "timeline": list(self.timeline),
        }


class ScoreRecorder:
    def __init__(
        self,
        contract_address: str,
        wallet,
        gateway,
        chain: ChainInfo = BASE_MAINNET,
        strategies: Sequence = DEFAULT_SWITCH_STRATEGIES,
        on_status: Optional[Callable[[ScoreRecordingSession], None]] = None,
    ) -> None:
        self.contract_address = contract_address
        self.wallet = wallet
        self.gateway = gateway
        self.chain = chain
        self.strategies = strategies
        self.on_status = on_status
        self.session = ScoreRecordingSession()
        self._busy = False

    @property
    def in_flight(self) -> bool:
        return self._busy or self.session.status in IN_FLIGHT

    def reset(self) -> None:
        if self.in_flight:
            raise ValueError("recording_in_progress")
        self.session = ScoreRecordingSession()

    def _set(self, status: str) -> None:
        self.session.status = status
        self.session.timeline.append(status)
        if self.on_status is not None:
            self.on_status(self.session)

    async def record_score(self, stage: int, moves: int) -> ScoreRecordingSession:
        # claimed before the first await so a second caller is refused
        if self.in_flight:
            raise ValueError("recording_in_progress")
        self._busy = True
        try:
            return await self._record(stage, moves)
        finally:
            self._busy = False

    async def _record(self, stage: int, moves: int) -> ScoreRecordingSession:
        self.session = ScoreRecordingSession()

        if is_zero_address(self.contract_address):
            logger.warning("contract address not set; skipping on-chain record")
            self._set("skipped")
            return self.session

        try:
            if not (0 <= stage <= UINT32_MAX and 0 <= moves <= UINT32_MAX):
                raise ValueError("stage and moves must fit in uint32")
            if self.wallet is None:
                raise NetworkMismatch("No wallet connected")
            await self._ensure_network()
            # surfaces reverts (cooldown, bad arguments) before any signature prompt
            await self.gateway.simulate_record_game(self.wallet.address, stage, moves)
            self._set("sending")
            self.session.tx_hash = await self.wallet.send_record_game(self.contract_address, stage, moves)
            self._set("confirming")
            await self.gateway.wait_for_confirmation(self.session.tx_hash, confirmations=1)
            self._set("confirmed")
        except Exception as e:
            logger.warning("recordGame(%s, %s) failed: %r", stage, moves, e)
            self.session.last_error = short_error(e)
            self._set("error")
        return self.session

    async def _ensure_network(self) -> None:
        current = await self.wallet.chain_id()
        if current == self.chain.chain_id:
            return
        self._set("switching_network")
        used = await switch_network(self.wallet, self.chain, self.strategies)
        current = await self.wallet.chain_id()
        if current != self.chain.chain_id:
            raise NetworkMismatch(f"Wallet is on chain {current}, expected {self.chain.name} ({self.chain.chain_id})")
        logger.info("switched wallet to %s via %s", self.chain.name, used)


class Web3RawProvider:
    """Raw request channel on a web3 provider; error responses become ProviderRequestError."""

    def __init__(self, w3: AsyncWeb3) -> None:
        self.w3 = w3

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        resp = await self.w3.provider.make_request(RPCEndpoint(method), params or [])
        error = resp.get("error")
        if error:
            if isinstance(error, dict):
                raise ProviderRequestError(error.get("code"), str(error.get("message") or method))
            raise ProviderRequestError(None, str(error))
        return resp.get("result")


class Web3Wallet:
    """Wallet reached through a web3 provider that signs on the player's behalf."""

    def __init__(self, w3: AsyncWeb3, address: str, connection_kind: str = "injected") -> None:
        self.w3 = w3
        self.address = Web3.to_checksum_address(address)
        self.connection_kind = connection_kind
        self.raw_provider = Web3RawProvider(w3) if connection_kind == "injected" else None

    async def chain_id(self) -> int:
        return await self.w3.eth.chain_id

    async def switch_chain(self, chain_id: int) -> None:
        await self.w3.manager.coro_request(
            RPCEndpoint("wallet_switchEthereumChain"), [{"chainId": hex(chain_id)}]
        )

    async def send_record_game(self, contract_address: str, stage: int, moves: int) -> str:
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=MEMORY_GAME_ABI)
        tx_hash = await contract.functions.recordGame(stage, moves).transact({"from": self.address})
        return Web3.to_hex(tx_hash)


class Web3ContractGateway:
    """Read side of recordGame: simulation and confirmation waiting."""

    def __init__(self, w3: AsyncWeb3, contract_address: str, receipt_timeout: int = 120, poll_interval: float = 2.0) -> None:
        self.w3 = w3
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=MEMORY_GAME_ABI)
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval

    async def simulate_record_game(self, account: str, stage: int, moves: int) -> None:
        try:
            await self.contract.functions.recordGame(stage, moves).call({"from": account})
        except ContractLogicError as e:
            reason = short_error(e, "execution reverted")
            prefix = "execution reverted: "
            if reason.lower().startswith(prefix):
                reason = reason[len(prefix):].strip() or "execution reverted"
            raise ContractRejected(reason) from e

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int = 1):
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt["status"] != 1:
            raise TransactionFailed(f"recordGame reverted in transaction {tx_hash}")
        target = receipt["blockNumber"] + confirmations - 1
        while await self.w3.eth.block_number < target:
            await asyncio.sleep(self.poll_interval)
        return receipt


def _web3(url: str, timeout: int) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": ClientTimeout(total=timeout)}))


def build_score_recorder(settings: Settings, player_address: Optional[str]) -> ScoreRecorder:
    """Recorder wired to web3 providers from settings.

    Without a signer endpoint or a usable player address the recorder has no
    wallet; it still skips cleanly when no contract is configured.
    """
    wallet = None
    gateway = None
    if settings.contract_configured:
        gateway = Web3ContractGateway(_web3(settings.rpc_url, settings.rpc_timeout_sec), settings.contract_address)
        if settings.signer_rpc_url and player_address and Web3.is_address(player_address):
            wallet = Web3Wallet(
                _web3(settings.signer_rpc_url, settings.rpc_timeout_sec),
                player_address,
                connection_kind=settings.signer_kind,
            )
    return ScoreRecorder(settings.contract_address, wallet, gateway, chain=settings.chain)
