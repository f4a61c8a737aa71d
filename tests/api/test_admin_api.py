from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from reservations_service import models
from reservations_service.auth import SERVICE_ACCOUNT_ROLE, create_access_token, token_for_user
from reservations_service.clock import utcnow
from reservations_service.main import app

client = TestClient(app)

Role = models.UserRole


def auth(user) -> dict:
    return {"Authorization": f"Bearer {token_for_user(user)}"}


def service_account_headers() -> dict:
    token = create_access_token(
        {"sub": "reminder-cron", "role": SERVICE_ACCOUNT_ROLE, "user_id": 0},
        expires_delta=timedelta(minutes=5),
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin(make_user):
    return make_user("admin", Role.ADMIN)


@pytest.fixture
def member(make_user):
    return make_user("member")


def test_stats_for_admins_only(admin, member, make_room):
    room = make_room("Lab")

    assert client.get("/api/v1/admin/stats", headers=auth(member)).status_code == 403

    res = client.get("/api/v1/admin/stats", headers=auth(admin))
    assert res.status_code == 200
    data = res.json()
    assert data["total_users"] == 2
    assert data["total_rooms"] == 1
    assert data["utilization"] == [{"room_id": room.id, "room_name": "Lab", "bookings": 0, "hours": 0.0}]
    assert {"role": "admin", "count": 1} in data["role_distribution"]


def test_duration_settings_round_trip_and_validation(admin, member):
    res = client.get("/api/v1/admin/settings", headers=auth(admin))
    assert res.json() == {"min_reservation_minutes": 30, "max_reservation_minutes": 120}

    res = client.put(
        "/api/v1/admin/settings",
        json={"min_reservation_minutes": 15, "max_reservation_minutes": 180},
        headers=auth(admin),
    )
    assert res.status_code == 200
    assert client.get("/api/v1/admin/settings", headers=auth(admin)).json()["max_reservation_minutes"] == 180

    res = client.put(
        "/api/v1/admin/settings",
        json={"min_reservation_minutes": 90, "max_reservation_minutes": 60},
        headers=auth(admin),
    )
    assert res.status_code == 400
    assert res.json()["error"] == "validation_error"

    assert client.put(
        "/api/v1/admin/settings",
        json={"min_reservation_minutes": 15, "max_reservation_minutes": 180},
        headers=auth(member),
    ).status_code == 403


def test_reminder_trigger_with_service_account(db, admin, member, make_room):
    room = make_room("Lab")
    now = utcnow()
    db.add(
        models.Reservation(
            user_id=admin.id,
            room_id=room.id,
            start_time=now + timedelta(minutes=20),
            end_time=now + timedelta(minutes=80),
            status=models.ReservationStatus.ACTIVE,
            share_token="soon",
        )
    )
    db.commit()

    assert client.post("/api/v1/reminders/run", headers=auth(member)).status_code == 403

    first = client.post("/api/v1/reminders/run", headers=service_account_headers())
    second = client.post("/api/v1/reminders/run", headers=auth(admin))

    assert first.json() == {"total": 1, "sent": 1}
    assert second.json() == {"total": 0, "sent": 0}


def test_service_account_cannot_use_member_endpoints():
    res = client.get("/api/v1/reservations/me", headers=service_account_headers())
    assert res.status_code == 401
