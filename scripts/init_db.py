"""
Script to initialize the database (PostgreSQL only; use migrations in production).

Creates the tables from the models plus the appointment overlap exclusion
constraint, which the models do not declare.
"""

import asyncio
import sys

from sqlalchemy import insert, select, text

from app.database import engine
from app.models import metadata, users

OVERLAP_CONSTRAINT = "appointments_no_clinician_overlap"

# Same constraint as migration 001
OVERLAP_CONSTRAINT_DDL = f"""
ALTER TABLE appointments
ADD CONSTRAINT {OVERLAP_CONSTRAINT}
EXCLUDE USING gist (
    clinician_id WITH =,
    tstzrange(scheduled_at, ends_at, '[)') WITH &&
)
WHERE (
    status IN ('pending_payment', 'scheduled', 'in_progress')
    AND deleted_at IS NULL
)
"""

DEMO_USERS = [
    {
        "open_id": "demo-clinician",
        "email": "clinician@example.com",
        "full_name": "Dr Demo Clinician",
        "role": "clinician",
        "specialization": "General Practice",
        "ahpra_number": "MED0000000000",
    },
    {
        "open_id": "demo-patient",
        "email": "patient@example.com",
        "full_name": "Demo Patient",
        "role": "patient",
    },
]


async def init_db(seed: bool = False) -> None:
    """Create all tables, optionally with a demo clinician and patient."""
    async with engine.begin() as conn:
        # Required by the appointment overlap constraint
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))

        # Create all tables
        await conn.run_sync(metadata.create_all)

        constraint = await conn.execute(
            text("SELECT 1 FROM pg_constraint WHERE conname = :name"),
            {"name": OVERLAP_CONSTRAINT},
        )
        if constraint.first() is None:
            await conn.execute(text(OVERLAP_CONSTRAINT_DDL))

        if seed:
            for user in DEMO_USERS:
                exists = await conn.execute(
                    select(users.c.id).where(users.c.open_id == user["open_id"])
                )
                if exists.first() is None:
                    await conn.execute(insert(users).values(**user))
            print("✓ Demo users seeded")

        print("✓ Database initialized successfully!")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init_db(seed="--seed" in sys.argv[1:]))
