from __future__ import annotations


MAX_ERROR_LEN = 200


class LogFetchError(RuntimeError):
    def __init__(self, provider: str, from_block, to_block, cause: BaseException) -> None:
        self.provider = provider
        self.from_block = from_block
        self.to_block = to_block
        self.cause = cause
        super().__init__(
            f"getLogs failed for blocks {from_block}-{to_block} via {provider}: {short_error(cause)}"
        )


class ContractRejected(RuntimeError):
    """recordGame would revert on current chain state."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Contract rejected recordGame: {reason}")


class NetworkMismatch(RuntimeError):
    pass


class TransactionFailed(RuntimeError):
    pass


class ProviderRequestError(RuntimeError):
    """Error response from a raw EIP-1193 style provider request."""

    def __init__(self, code, message: str) -> None:
        self.code = code
        super().__init__(message)


def short_error(exc: BaseException, fallback: str = "Transaction failed") -> str:
    # web3 exceptions keep the readable text apart from their args tuple
    msg = getattr(exc, "short_message", None) or getattr(exc, "message", None)
    if not isinstance(msg, str) or not msg:
        msg = str(exc)
    msg = msg.strip().split("\n")[0].strip() if msg else ""
    if not msg:
        return fallback
    if len(msg) > MAX_ERROR_LEN:
        msg = msg[: MAX_ERROR_LEN - 3] + "..."
    return msg
