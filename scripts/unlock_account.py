#!/usr/bin/env python3
"""
Clear a persisted account lockdown - Requires explicit confirmation.

Use after resolving the platform's complaint (e.g. completing a
verification challenge in the official app) while the service is stopped.
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone

from gramvault.core.client.guard import LockdownState
from gramvault.core.database import close_db, init_db
from gramvault.core.vault import (
    LOCKDOWN_KEY,
    MACHINE_ID_KEY,
    SESSION_KEY,
    KeyValueVault,
)


async def unlock_account(reason: str, emergency: bool = False) -> bool:
    """Remove the persisted lockdown (and, for an emergency reset, the session)."""
    await init_db()
    vault = KeyValueVault()
    try:
        raw = await vault.get(LOCKDOWN_KEY)
        if raw is None:
            print("No persisted lockdown found.")
        else:
            state = LockdownState.from_dict(raw)
            until = (
                datetime.fromtimestamp(state.until, tz=timezone.utc).isoformat()
                if state.until
                else "unknown"
            )
            print(f"Lockdown: {state.reason} (until {until})")
            await vault.remove(LOCKDOWN_KEY)

        if emergency:
            await vault.remove(SESSION_KEY)
            await vault.remove(MACHINE_ID_KEY)
            print("Session and machine id removed - log in again.")
    finally:
        await close_db()

    print(f"\nAccount unlocked at {datetime.now(timezone.utc).isoformat()}")
    print(f"  Reason: {reason}")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Clear a persisted GramVault lockdown")
    parser.add_argument("reason", help="Why it is safe to unlock")
    parser.add_argument(
        "--emergency",
        action="store_true",
        help="Also purge the stored session and machine id",
    )
    args = parser.parse_args()

    print("\nWARNING: Unlocking while the platform still flags the account")
    print("makes a permanent restriction more likely.")
    print(f"Reason: {args.reason}")
    confirm = input("Type 'UNLOCK' to confirm: ")

    if confirm != "UNLOCK":
        print("Aborted.")
        sys.exit(1)

    success = asyncio.run(unlock_account(args.reason, args.emergency))
    sys.exit(0 if success else 1)
