"""Sample data sanity checks."""

from seed import RIDES, USERS


def test_ride_drivers_are_verified_users():
    for driver_idx, *_ in RIDES:
        assert USERS[driver_idx].get("verified", True)


def test_unique_emails():
    emails = [u["email"] for u in USERS]
    assert len(set(emails)) == len(emails)


def test_rides_fit_booking_policy():
    for _, hours, seats, fare, pickups in RIDES:
        assert hours > 0
        assert seats >= 1
        assert fare > 0
        assert pickups
