from __future__ import annotations

from typing import Sequence


class ChainstreamError(Exception):
    """Base class for every error raised by the indexer core."""


class RPCError(ChainstreamError):
    """One endpoint answered with an error body, a malformed body or a bad HTTP status."""

    def __init__(self, message: str, *, code: int | None = None, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.endpoint = endpoint


class RateLimited(RPCError):
    def __init__(self, message: str, *, endpoint: str | None = None, retry_after: float | None = None) -> None:
        super().__init__(message, code=429, endpoint=endpoint)
        self.retry_after = retry_after


class ProviderExhausted(ChainstreamError):
    """Every endpoint configured for a chain failed the same call."""

    def __init__(self, chain: str, method: str, last_error: BaseException | None) -> None:
        super().__init__(f"all providers exhausted for {chain}.{method}: {last_error}")
        self.chain = chain
        self.method = method
        self.last_error = last_error


class UnsupportedChain(ChainstreamError):
    def __init__(self, chain: str) -> None:
        super().__init__(f"Unsupported chain: {chain}")
        self.chain = chain


class ValidationFailure(ChainstreamError):
    def __init__(self, issues: Sequence[object]) -> None:
        self.issues = tuple(issues)
        super().__init__("; ".join(str(i) for i in self.issues) or "validation failed")


class LimitReached(ChainstreamError):
    """Subscription budget exhausted. Ends a session cleanly, never as a failure."""

    def __init__(self, used: int, budget: int, requested: int) -> None:
        super().__init__(f"block budget reached: used={used} requested={requested} budget={budget}")
        self.used = used
        self.budget = budget
        self.requested = requested


class LocatorFailure(ChainstreamError):
    def __init__(self, message: str, *, block: int | None = None) -> None:
        super().__init__(message)
        self.block = block


class ContractNotFound(ChainstreamError):
    def __init__(self, chain: str, address: str, block: int) -> None:
        super().__init__(f"no contract code for {address} on {chain} at block {block}")
        self.chain = chain
        self.address = address
        self.block = block


class SessionNotFound(ChainstreamError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"unknown session: {session_id}")
        self.session_id = session_id


class ShuttingDown(ChainstreamError):
    pass


class StorageError(ChainstreamError):
    """A chunk could not be encoded or written by the transaction sink."""
