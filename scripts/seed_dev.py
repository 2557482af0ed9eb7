#!/usr/bin/env python
"""Seed the development database with two users and a conversation.

Constraints:
- Refuses to run in staging or prod (CORDLINE_ENV check)
- Idempotent: users and conversations are get-or-create
- Never runs automatically (manual invocation only)

Usage:
    cd python && DATABASE_URL=... uv run python ../scripts/seed_dev.py
"""

import os
import sys
from uuid import UUID

ALICE_ID = UUID("00000000-0000-4000-8000-00000000a11c")
BOB_ID = UUID("00000000-0000-4000-8000-000000000b0b")


def main():
    cordline_env = os.getenv("CORDLINE_ENV", "local")
    if cordline_env not in ("local", "test"):
        print(f"ERROR: seed_dev.py refuses to run in CORDLINE_ENV={cordline_env}")
        sys.exit(1)

    if not os.getenv("DATABASE_URL"):
        print("ERROR: DATABASE_URL environment variable must be set")
        sys.exit(1)

    from cordline.db.session import get_session_factory
    from cordline.services.conversations import get_or_create_conversation
    from cordline.services.fanout import NoOpMessageBus
    from cordline.services.messages import send_message
    from cordline.services.users import ensure_user

    db = get_session_factory()()
    try:
        ensure_user(db, ALICE_ID, username="alice", display_name="Alice")
        ensure_user(db, BOB_ID, username="bob", display_name="Bob")

        plain_id, plain_created = get_or_create_conversation(db, ALICE_ID, BOB_ID)
        if plain_created:
            send_message(db, ALICE_ID, plain_id, text="Hi Bob!", bus=NoOpMessageBus())

        cord_id, cord_created = get_or_create_conversation(
            db, ALICE_ID, BOB_ID, encrypted=True, timer=60
        )
        if cord_created:
            send_message(db, ALICE_ID, cord_id, text="This one self-destructs.", bus=NoOpMessageBus())
    finally:
        db.close()

    print(f"Seeded plain conversation {plain_id} ({'created' if plain_created else 'exists'})")
    print(f"Seeded encrypted conversation {cord_id} ({'created' if cord_created else 'exists'})")


if __name__ == "__main__":
    main()
