"""
Seed script -- populates the database with sample data for local development.

Run after migrations:
    python seed.py

Creates:
  - 8 sample users (3 drivers, 5 passengers; one passenger unverified)
  - 5 sample rides departing over the next few days, each with pickup points
"""

import asyncio
from datetime import timedelta

from sqlalchemy import text

from carpool.domain.clock import utc_now
from carpool.infrastructure.database import async_session_factory, engine
from carpool.infrastructure.repositories import (
    RideInventoryRepository,
    UserRepository,
)


USERS = [
    {"name": "Chinedu Okafor", "email": "chinedu.okafor@students.unilag.example"},
    {"name": "Aisha Bello", "email": "aisha.bello@students.unilag.example"},
    {"name": "Tunde Adeyemi", "email": "tunde.adeyemi@students.unilag.example"},
    {"name": "Ngozi Eze", "email": "ngozi.eze@students.unilag.example"},
    {"name": "Ibrahim Musa", "email": "ibrahim.musa@students.unilag.example"},
    {"name": "Funmilayo Ogunleye", "email": "funmi.ogunleye@students.unilag.example"},
    {"name": "Emeka Nwosu", "email": "emeka.nwosu@students.unilag.example"},
    {
        "name": "Zainab Abubakar",
        "email": "zainab.abubakar@students.unilag.example",
        "verified": False,
    },
]

# (driver index, hours from now, seats, fare per seat in NGN, pickup points)
RIDES = [
    (0, 3, 4, 1500.0, ["main-gate", "senate-building", "jaja-hall"]),
    (0, 27, 3, 1500.0, ["main-gate", "senate-building"]),
    (1, 5, 2, 2000.0, ["faculty-of-engineering", "sports-centre"]),
    (1, 50, 4, 1800.0, ["faculty-of-engineering"]),
    (2, 8, 6, 1000.0, ["moremi-hall", "akoka-bus-stop", "main-gate"]),
]


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM users"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Users ─────────────────────────────────────────────────────
        users = UserRepository(session)
        user_models = []
        for u in USERS:
            user_models.append(
                await users.create_user(
                    name=u["name"],
                    email=u["email"],
                    is_verified=u.get("verified", True),
                )
            )
        print(f"  Created {len(user_models)} users")

        # ── Rides ─────────────────────────────────────────────────────
        rides = RideInventoryRepository(session)
        now = utc_now().replace(minute=0, second=0, microsecond=0)
        for driver_idx, hours, seats, price, pickups in RIDES:
            await rides.create_ride(
                driver_id=user_models[driver_idx].id,
                departure_at=now + timedelta(hours=hours),
                total_seats=seats,
                price_per_seat=price,
                pickup_points=pickups,
            )
        print(f"  Created {len(RIDES)} rides")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
