from __future__ import annotations

from typing import Optional


class TokenlensError(Exception):
    pass


class ConfigError(TokenlensError):
    """Unknown chain, or a chain with no usable provider URLs."""


class RPCError(TokenlensError):
    """A transport or JSON-RPC level failure from a single endpoint."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        status: Optional[int] = None,
        provider: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status
        self.provider = provider


class CallReverted(RPCError):
    """eth_call reverted: the function is missing or refused. Not a provider fault."""


class FailoverExhausted(TokenlensError):
    """Every attempt across the provider pool failed."""

    def __init__(self, chain: str, attempts: int, last_error: Optional[BaseException]) -> None:
        detail = str(last_error) if last_error is not None else "Unknown error"
        super().__init__(f"RPC failover exhausted for {chain} after {attempts} attempts: {detail}")
        self.chain = chain
        self.attempts = attempts
        self.last_error = last_error


class ScanCancelled(TokenlensError):
    """The caller's cancel event was set while work was in progress."""
