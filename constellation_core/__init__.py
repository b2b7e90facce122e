"""
Constellation - a signature coordination server for multi-signature ledger accounts.

Key features:
- Ed25519 keys, strkey addresses and four-byte signature hints
- Threshold policy derived from each operation's category
- Incremental, deduplicated collection of signatures per transaction
- Push notifications to every signer over SSE or WebSocket
- Automatic submission to the ledger once every account is authorised
"""

__version__ = "0.3.0"
__all__ = [
    "keys",
    "transaction",
    "account",
    "thresholds",
    "verifier",
    "state",
    "store",
    "pubsub",
    "broadcast",
    "ledger",
    "horizon",
    "submission",
    "coordinator",
    "subscriptions",
    "api",
    "client",
]
