from __future__ import annotations

import argparse
import asyncio
import sys

from sspgen.domain.models import System, User
from sspgen.persistence.db import SessionLocal
from sspgen.persistence.repos.intakes import upsert_intake


DEMO_USER_ID = "demo-user"
DEMO_SYSTEM_ID = "demo-customer-portal"
DEMO_SYSTEM_NAME = "Customer Portal"
DEMO_IMPACT_LEVEL = "moderate"
DEMO_INTAKE = {
    "mfa": True,
    "accessReviewFrequency": "quarterly",
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed a demo system and intake")
    parser.add_argument("--owner-id", default=DEMO_USER_ID, help="Owner user id for the demo system")
    return parser


async def seed_demo(owner_id: str) -> int:
    async with SessionLocal() as session:
        user = await session.get(User, owner_id)
        if user is None:
            session.add(User(id=owner_id, is_active=True))
            await session.flush()

        system = await session.get(System, DEMO_SYSTEM_ID)
        if system is None:
            system = System(
                id=DEMO_SYSTEM_ID,
                name=DEMO_SYSTEM_NAME,
                impact_level=DEMO_IMPACT_LEVEL,
                owner_id=owner_id,
            )
            session.add(system)
        else:
            # Keep the demo row aligned without touching other systems.
            system.name = DEMO_SYSTEM_NAME
            system.impact_level = DEMO_IMPACT_LEVEL
            system.owner_id = owner_id
        await session.flush()

        await upsert_intake(session, DEMO_SYSTEM_ID, dict(DEMO_INTAKE))
        await session.commit()

    print(f"Seeded demo system {DEMO_SYSTEM_ID} ({DEMO_SYSTEM_NAME}) for owner {owner_id}.")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    # Surface clear failures and exit non-zero so CI/dev scripts can detect issues.
    try:
        return asyncio.run(seed_demo(args.owner_id))
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
