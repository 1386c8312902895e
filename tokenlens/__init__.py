"""Token analytics over raw EVM event logs.

This package derives holder distribution, token flow, DApp interaction ranking
and contract-risk signals for an arbitrary ERC20-like contract by scanning
event logs through unreliable, rate-limited public RPC endpoints. It includes:

- Config loading (env + YAML defaults) and a chain registry
- A provider pool with circuit breaking and an execute-with-failover primitive
- An adaptive log scanner that tunes its chunk size to provider limits
- An event decoder and transaction-type classification
- Holder ledger, flow, DApp activity and live-transaction aggregators
- Bytecode and contract-call based risk heuristics
- A small CLI

Network access goes through ``rpc.EVMClient``; tests swap it for an in-memory
fake so nothing here needs real endpoints to be exercised.
"""

__version__ = "0.1.0"

__all__ = [
    "config",
    "chains",
    "errors",
    "rpc",
    "provider_pool",
    "failover",
    "classifier",
    "scanner",
    "decoder",
    "holders",
    "flow",
    "activity",
    "transactions",
    "risk",
    "analysis",
    "cli",
]
