"""
Keystone - wallet core for an off-chain Bitcoin ledger client.

Key features:
- Password-sealed recovery phrase (PBKDF2-HMAC-SHA256 + AES-256-GCM)
- Time-limited unlock sessions under a random in-memory key
- Initialization state machine over session / seed / vault sources
- Background claiming of matured on-chain deposits
- Event-driven balance reconciliation with "funds received" notifications
"""

__version__ = "0.4.0"
__all__ = [
    "vault",
    "storage",
    "session",
    "init_machine",
    "claim_loop",
    "reconciler",
    "notifications",
    "ledger_client",
    "simulation",
    "core",
]
