#!/usr/bin/env python3
"""
Keystone Wallet Runner — boots the wallet core against the in-process
ledger simulation with:
  - Persisted, password-sealed vault (SQLite)
  - Unlock sessions with background expiry
  - Deposit claim loop and balance reconciliation
  - Interactive CLI for creating, unlocking and spending

Usage:
    python run_wallet.py --db data/keystone.db --network REGTEST

Environment variables (alternative to flags):
    KEYSTONE_DB_PATH, KEYSTONE_NETWORK, KEYSTONE_LOG_LEVEL, KEYSTONE_SESSION_TTL
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import json
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from keystone_core.config import KeystoneConfig, load_config  # noqa: E402
from keystone_core.core import WalletCore  # noqa: E402
from keystone_core.errors import DecryptionFailed, KeystoneError  # noqa: E402
from keystone_core.init_machine import InitializationStatus  # noqa: E402
from keystone_core.logging_config import setup_logging  # noqa: E402
from keystone_core.notifications import LoggingSink, Notification  # noqa: E402
from keystone_core.price import PriceFeed  # noqa: E402
from keystone_core.simulation import SimulatedLedgerClient, SimulatedWallet  # noqa: E402
from keystone_core.storage import VaultStore  # noqa: E402

logger = logging.getLogger("wallet")


class ConsoleSink(LoggingSink):
    """Prints notifications to the terminal as well as the log."""

    def notify(self, notification: Notification) -> None:
        super().notify(notification)
        print(f"\n  ** {notification.message}")


def build_core(cfg: KeystoneConfig, client: SimulatedLedgerClient) -> WalletCore:
    store = VaultStore(cfg.vault.db_path)
    price_feed = None
    if cfg.price.enabled:
        price_feed = PriceFeed(
            url=cfg.price.url,
            fallback=cfg.price.fallback_usd_per_sat,
            refresh_seconds=cfg.price.refresh_seconds,
            timeout_seconds=cfg.price.timeout_seconds,
        )
    return WalletCore(client, store, sink=ConsoleSink(), config=cfg, price_feed=price_feed)


def _simulated(core: WalletCore) -> SimulatedWallet | None:
    wallet = core.wallet
    if wallet is not None and isinstance(wallet.handle, SimulatedWallet):
        return wallet.handle
    return None


# ===================================================================
#  Interactive CLI
# ===================================================================

async def interactive_cli(core: WalletCore):
    """Simple async CLI for driving the wallet core."""
    loop = asyncio.get_running_loop()

    def print_help():
        print("""
╔══════════════════════════════════════════════════════════════╗
║  Keystone Wallet CLI                                          ║
╠══════════════════════════════════════════════════════════════╣
║  status            - Show wallet / session status              ║
║  create [phrase]   - Create (or import) a wallet               ║
║  unlock            - Unlock the stored wallet                  ║
║  retry             - Retry a failed wallet open                ║
║  import <seed>     - Open a wallet from a raw seed             ║
║  pubkey            - Show the identity public key              ║
║  balance           - Show the reconciled balance               ║
║  history [n] [off] - List recent transfers                     ║
║  deposit           - New single-use deposit address            ║
║  mature <addr> <n> - Simulate a matured deposit (test)         ║
║  receive <n>       - Simulate an incoming transfer (test)      ║
║  claim             - Run one deposit claim tick now            ║
║  send <dest> <n>   - Pay an address or invoice                 ║
║  tokens send ...   - Send tokens (tokens mint ... to test)     ║
║  invoice <n>       - Create a Lightning invoice                ║
║  passwd            - Change the vault password                 ║
║  logout            - End the session                           ║
║  reset             - Destroy the stored wallet                 ║
║  help              - Show this help                            ║
║  quit              - Exit                                      ║
╚══════════════════════════════════════════════════════════════╝
""")

    async def ask(prompt: str, secret: bool = False) -> str:
        reader = getpass.getpass if secret else input
        return await loop.run_in_executor(None, lambda: reader(prompt))

    print_help()

    while True:
        try:
            line = await loop.run_in_executor(None, lambda: input(f"\n[{core.status.value}] > "))
            parts = line.strip().split()
            if not parts:
                continue

            cmd = parts[0].lower()

            if cmd == "help":
                print_help()

            elif cmd == "status":
                print(json.dumps(core.describe(), indent=2, default=str))

            elif cmd == "create":
                phrase = " ".join(parts[1:]) or None
                password = await ask("  New password: ", secret=True)
                confirm = await ask("  Confirm password: ", secret=True)
                if password != confirm:
                    print("  Passwords do not match")
                    continue
                overwrite = False
                if core.sessions.has_persisted_vault():
                    answer = await ask("  Replace the existing wallet? [y/N] ")
                    if answer.strip().lower() != "y":
                        continue
                    overwrite = True
                mnemonic = await core.create_wallet(password, phrase, overwrite=overwrite)
                if phrase is None:
                    print("  Write down your recovery phrase:")
                    print(f"    {mnemonic}")
                print(f"  Wallet status: {core.status.value}")

            elif cmd == "unlock":
                password = await ask("  Password: ", secret=True)
                try:
                    status = await core.unlock(password)
                except DecryptionFailed as e:
                    print(f"  {e}")
                    continue
                print(f"  Wallet status: {status.value}")

            elif cmd == "balance":
                if core.reconciler is not None:
                    await core.reconciler.wait_idle()
                snapshot = core.balance
                if snapshot is None:
                    print("  Balance not loaded yet")
                    continue
                print(f"  {snapshot.base_unit_balance:,} sats")
                for token, amount in snapshot.token_balances.items():
                    print(f"  {token}: {amount}")
                usd = await core.balance_usd()
                if usd is not None:
                    print(f"  ~ ${usd:,.2f}")

            elif cmd == "retry":
                print(f"  Wallet status: {(await core.retry()).value}")
                if core.machine.error:
                    print(f"  {core.machine.error}")

            elif cmd == "import":
                if len(parts) < 2:
                    print("  Usage: import <seed>")
                    continue
                print(f"  Wallet status: {(await core.import_seed(parts[1])).value}")

            elif cmd == "pubkey":
                print(f"  {await core.master_public_key()}")

            elif cmd == "history":
                limit = int(parts[1]) if len(parts) > 1 else 20
                offset = int(parts[2]) if len(parts) > 2 else 0
                transfers = await core.list_transfers(limit, offset)
                if not transfers:
                    print("  No transfers")
                for t in transfers:
                    unit = t.get("token") or "sats"
                    sign = "+" if t.get("direction") == "incoming" else "-"
                    print(f"  {t['id']:<8} {t['type']:<15} {sign}{t['amount']:,} {unit}  {t['counterparty']}")

            elif cmd == "tokens":
                sim = _simulated(core)
                if len(parts) == 5 and parts[1] == "send":
                    result = await core.transfer_tokens(parts[2], int(parts[3]), parts[4])
                    print(f"  Sent: {json.dumps(result, default=str)}")
                elif len(parts) == 4 and parts[1] == "mint" and sim is not None:
                    sim.receive_tokens(parts[2], int(parts[3]))
                else:
                    print("  Usage: tokens send <token_pubkey> <amount> <address>")
                    print("         tokens mint <token_pubkey> <amount>  (test)")

            elif cmd == "deposit":
                address = await core.deposit_address()
                print(f"  Deposit address: {address}")

            elif cmd == "mature":
                sim = _simulated(core)
                if sim is None or len(parts) < 3:
                    print("  Usage: mature <deposit_address> <amount>  (wallet must be open)")
                    continue
                deposit_id = sim.mature_deposit(parts[1], int(parts[2]))
                print(f"  Deposit {deposit_id[:16]}... is claimable")

            elif cmd == "receive":
                sim = _simulated(core)
                if sim is None or len(parts) < 2:
                    print("  Usage: receive <amount>  (wallet must be open)")
                    continue
                sim.receive_transfer(int(parts[1]))

            elif cmd == "claim":
                if core.claim_loop is None:
                    print("  Wallet not initialized")
                    continue
                tick = await core.claim_loop.run_once()
                print(f"  Tick {tick.tick}: claimed={tick.claimed} failed={tick.failed}")

            elif cmd == "send":
                if len(parts) < 2:
                    print("  Usage: send <address|invoice> [amount]")
                    continue
                amount = int(parts[2]) if len(parts) > 2 else 0
                result = await core.send(parts[1], amount)
                print(f"  Sent: {json.dumps(result, default=str)}")

            elif cmd == "invoice":
                if len(parts) < 2:
                    print("  Usage: invoice <amount> [memo]")
                    continue
                invoice = await core.create_invoice(int(parts[1]), " ".join(parts[2:]))
                print(f"  Invoice: {getattr(invoice, 'invoice', invoice)}")

            elif cmd == "passwd":
                old = await ask("  Current password: ", secret=True)
                new = await ask("  New password: ", secret=True)
                try:
                    core.change_password(old, new)
                except DecryptionFailed as e:
                    print(f"  {e}")
                    continue
                print("  Password changed")

            elif cmd == "logout":
                await core.logout()
                print(f"  Wallet status: {(await core.boot()).value}")

            elif cmd == "reset":
                answer = await ask("  This deletes the stored wallet. Type 'reset' to confirm: ")
                if answer.strip() != "reset":
                    continue
                await core.reset()
                print(f"  Wallet status: {(await core.boot()).value}")

            elif cmd in ("quit", "exit", "q"):
                print("Shutting down...")
                await core.close()
                break

            else:
                print(f"  Unknown command: {cmd}. Type 'help'.")

        except (EOFError, KeyboardInterrupt):
            print("\nShutting down...")
            await core.close()
            break
        except (KeystoneError, ValueError) as e:
            print(f"  Error: {e}")


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args():
    p = argparse.ArgumentParser(description="Keystone Wallet")
    p.add_argument("--config", default=None, help="Path to keystone.toml config file")
    p.add_argument("--db", default=None, help="Vault database path")
    p.add_argument("--network", default=None, help="Ledger network (MAINNET, REGTEST, ...)")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    p.add_argument("--latency", type=float, default=0.0,
                   help="Simulated ledger latency in seconds")
    return p.parse_args()


async def main():
    args = parse_args()

    # Load config (TOML + env overrides)
    cfg = load_config(args.config)

    # CLI flags override config
    if args.db:
        cfg.vault.db_path = args.db
    if args.network:
        cfg.network.network = args.network.upper()
    if args.log_level:
        cfg.logging.level = args.log_level.upper()

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    core = build_core(cfg, SimulatedLedgerClient(latency=args.latency))
    status = await core.boot()
    logger.info(f"Wallet status: {status.value}")
    if status is InitializationStatus.NO_WALLET:
        print("  No wallet yet. Type 'create' to make one.")
    elif status is InitializationStatus.NEEDS_PASSWORD:
        print("  Wallet locked. Type 'unlock'.")

    try:
        await interactive_cli(core)
    finally:
        core.store.close()


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
