from datetime import timedelta

import pytest

from reservations_service import models
from reservations_service.clock import utcnow
from reservations_service.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from reservations_service.lifecycle import (
    ReviewDecision,
    cancel_reservation,
    create_reservation,
    edit_reservation,
    review_request,
    submit_request,
    withdraw_request,
)
from reservations_service.settings import get_duration_bounds, update_duration_bounds

Role = models.UserRole
Kind = models.NotificationType

TOMORROW_10 = (utcnow() + timedelta(days=1)).replace(hour=10, minute=0, second=0, microsecond=0)


def at(hour, minute=0):
    return TOMORROW_10 + timedelta(hours=hour - 10, minutes=minute)


@pytest.fixture
def people(make_user, actor_of):
    admin = make_user("admin", Role.ADMIN)
    overrider = make_user("overrider", Role.INSTRUCTOR, can_reserve=True, can_override=True)
    lecturer = make_user("lecturer", Role.INSTRUCTOR, can_reserve=True)
    student = make_user("student", Role.BASIC)
    other = make_user("other", Role.BASIC)
    return {
        name: (user, actor_of(user))
        for name, user in [
            ("admin", admin),
            ("overrider", overrider),
            ("lecturer", lecturer),
            ("student", student),
            ("other", other),
        ]
    }


@pytest.fixture
def room(make_room):
    return make_room("Lab 1", capacity=8)


def book(db, actor, room, start, end, emitter, **kwargs):
    return create_reservation(db, actor, room.id, start, end, purpose="Class", emitter=emitter, **kwargs)


def approved_for(db, people, room, start, end, emitter, requester="student"):
    request = submit_request(db, people[requester][1], room.id, start, end, purpose="Study group")
    result = review_request(db, people["admin"][1], request.id, ReviewDecision.APPROVE, emitter=emitter)
    return result.reservation


# ---------- Direct booking ----------


def test_instructor_books_room_and_is_notified(db, people, room, emitter, outbox, inbox):
    lecturer, actor = people["lecturer"]

    reservation = book(db, actor, room, at(10), at(11), emitter)

    assert reservation.status == models.ReservationStatus.ACTIVE
    assert reservation.user_id == lecturer.id
    assert len(reservation.share_token) == 32
    [note] = inbox(lecturer.id)
    assert note.type == Kind.RESERVATION_CONFIRMED
    assert note.reservation_id == reservation.id
    assert [m.recipient for m in outbox] == ["lecturer@example.com"]


def test_overlapping_booking_is_rejected_and_touching_is_allowed(db, people, room, emitter):
    book(db, people["lecturer"][1], room, at(10), at(11), emitter)

    with pytest.raises(ConflictError) as exc:
        book(db, people["admin"][1], room, at(10, 30), at(11, 30), emitter)
    assert exc.value.status_code == 409
    assert "lecturer" not in exc.value.detail.lower()

    touching = book(db, people["admin"][1], room, at(11), at(12), emitter)
    assert touching.status == models.ReservationStatus.ACTIVE


def test_overlap_in_another_room_is_fine(db, people, room, make_room, emitter):
    book(db, people["lecturer"][1], room, at(10), at(11), emitter)
    other = make_room("Lab 2")
    assert book(db, people["lecturer"][1], other, at(10), at(11), emitter).room_id == other.id


@pytest.mark.parametrize("who", ["student"])
def test_request_only_users_cannot_book_directly(db, people, room, emitter, who):
    with pytest.raises(AuthorizationError):
        book(db, people[who][1], room, at(10), at(11), emitter)


def test_instructor_without_permission_record_must_request(db, make_user, actor_of, room, emitter):
    newcomer = make_user("newcomer", Role.INSTRUCTOR)
    with pytest.raises(AuthorizationError):
        book(db, actor_of(newcomer), room, at(10), at(11), emitter)


@pytest.mark.parametrize(
    "start,end,message",
    [
        (at(11), at(10), "after"),
        (at(10), at(10), "after"),
        (at(10), at(10, 20), "at least 30"),
        (at(10), at(12, 30), "cannot exceed 120"),
    ],
)
def test_interval_validation(db, people, room, emitter, start, end, message):
    with pytest.raises(ValidationError) as exc:
        book(db, people["lecturer"][1], room, start, end, emitter)
    assert message in exc.value.detail


def test_attendee_count_and_room_state_are_checked(db, people, room, make_room, emitter):
    with pytest.raises(ValidationError):
        book(db, people["lecturer"][1], room, at(10), at(11), emitter, attendee_count=9)

    closed = make_room("Closed", is_available=False)
    with pytest.raises(ValidationError):
        book(db, people["lecturer"][1], closed, at(10), at(11), emitter)

    staff_only = make_room("Boardroom", min_role=Role.ADMIN)
    with pytest.raises(NotFoundError):
        book(db, people["lecturer"][1], staff_only, at(10), at(11), emitter)


# ---------- Override on create ----------


def test_override_instructor_displaces_plain_instructor(db, people, room, emitter, inbox):
    lecturer, _ = people["lecturer"]
    displaced = book(db, people["lecturer"][1], room, at(10), at(11), emitter)

    new = book(db, people["overrider"][1], room, at(10), at(11), emitter, override=True)

    db.refresh(displaced)
    assert displaced.status == models.ReservationStatus.CANCELLED
    assert displaced.cancelled_at is not None
    assert new.status == models.ReservationStatus.ACTIVE
    [note] = inbox(lecturer.id, Kind.RESERVATION_OVERRIDDEN)
    assert note.reservation_id == displaced.id


def test_override_needs_the_flag(db, people, room, emitter):
    book(db, people["lecturer"][1], room, at(10), at(11), emitter)
    with pytest.raises(ConflictError):
        book(db, people["overrider"][1], room, at(10), at(11), emitter)


@pytest.mark.parametrize("holder", ["admin", "overrider"])
def test_override_cannot_displace_admins_or_other_overriders(db, people, room, make_user, actor_of, emitter, holder):
    if holder == "overrider":
        peer = make_user("peer", Role.INSTRUCTOR, can_reserve=True, can_override=True)
        book(db, actor_of(peer), room, at(10), at(11), emitter)
    else:
        book(db, people["admin"][1], room, at(10), at(11), emitter)

    with pytest.raises(ConflictError):
        book(db, people["overrider"][1], room, at(10), at(11), emitter, override=True)


def test_plain_instructor_override_flag_is_ignored(db, people, room, make_user, actor_of, emitter):
    colleague = make_user("colleague", Role.INSTRUCTOR, can_reserve=True)
    book(db, actor_of(colleague), room, at(10), at(11), emitter)
    with pytest.raises(ConflictError):
        book(db, people["lecturer"][1], room, at(10), at(11), emitter, override=True)


# ---------- Cancel ----------


def test_owner_cancels_and_second_cancel_is_a_no_op(db, people, room, emitter, inbox):
    lecturer, actor = people["lecturer"]
    reservation = book(db, actor, room, at(10), at(11), emitter)

    cancel_reservation(db, actor, reservation.id, emitter=emitter)
    again = cancel_reservation(db, actor, reservation.id, emitter=emitter)

    assert again.status == models.ReservationStatus.CANCELLED
    assert len(inbox(lecturer.id, Kind.RESERVATION_CANCELLED)) == 1


def test_cancelled_slot_can_be_booked_again(db, people, room, emitter):
    reservation = book(db, people["lecturer"][1], room, at(10), at(11), emitter)
    cancel_reservation(db, people["lecturer"][1], reservation.id, emitter=emitter)
    assert book(db, people["admin"][1], room, at(10), at(11), emitter).status == models.ReservationStatus.ACTIVE


def test_cancelling_an_ended_reservation_sends_nothing(db, people, room, emitter, inbox, outbox):
    lecturer, actor = people["lecturer"]
    yesterday = utcnow() - timedelta(days=1)
    reservation = book(db, actor, room, yesterday, yesterday + timedelta(hours=1), emitter)
    outbox.clear()

    cancel_reservation(db, actor, reservation.id, emitter=emitter)

    assert inbox(lecturer.id, Kind.RESERVATION_CANCELLED) == []
    assert outbox == []


def test_admin_cancel_tells_owner_someone_else_did_it(db, people, room, emitter, inbox):
    lecturer, actor = people["lecturer"]
    reservation = book(db, actor, room, at(10), at(11), emitter)

    cancel_reservation(db, people["admin"][1], reservation.id, emitter=emitter)

    [note] = inbox(lecturer.id, Kind.RESERVATION_CANCELLED)
    assert "another member" in note.message


def test_cancel_unknown_reservation(db, people):
    with pytest.raises(NotFoundError):
        cancel_reservation(db, people["admin"][1], 12345)


# ---------- Authorization matrix on real reservations ----------


def test_basic_user_cannot_touch_someone_elses_reservation(db, people, room, emitter):
    reservation = approved_for(db, people, room, at(10), at(11), emitter)
    with pytest.raises(AuthorizationError):
        cancel_reservation(db, people["other"][1], reservation.id, emitter=emitter)
    with pytest.raises(AuthorizationError):
        edit_reservation(db, people["other"][1], reservation.id, purpose="mine now", emitter=emitter)


def test_plain_instructor_cannot_act_on_other_reservations(db, people, room, emitter):
    reservation = approved_for(db, people, room, at(10), at(11), emitter)
    with pytest.raises(AuthorizationError):
        cancel_reservation(db, people["lecturer"][1], reservation.id, emitter=emitter)


def test_override_instructor_acts_on_non_admin_reservations_only(db, people, room, emitter):
    student_booking = approved_for(db, people, room, at(10), at(11), emitter)
    admin_booking = book(db, people["admin"][1], room, at(12), at(13), emitter)
    overrider = people["overrider"][1]

    edited = edit_reservation(db, overrider, student_booking.id, purpose="Moved", emitter=emitter)
    assert edited.purpose == "Moved"

    with pytest.raises(AuthorizationError):
        edit_reservation(db, overrider, admin_booking.id, purpose="Mine", emitter=emitter)
    with pytest.raises(AuthorizationError):
        cancel_reservation(db, overrider, admin_booking.id, emitter=emitter)


# ---------- Edit ----------


def test_edit_keeps_the_room_free_of_overlaps(db, people, room, emitter, inbox):
    lecturer, actor = people["lecturer"]
    first = book(db, actor, room, at(10), at(11), emitter)
    book(db, actor, room, at(12), at(13), emitter)

    # extending into its own old slot is fine
    moved = edit_reservation(db, actor, first.id, end_time=at(11, 30), emitter=emitter)
    assert moved.end_time == at(11, 30)
    assert len(inbox(lecturer.id, Kind.RESERVATION_UPDATED)) == 1

    with pytest.raises(ConflictError):
        edit_reservation(db, actor, first.id, start_time=at(11, 30), end_time=at(12, 30), emitter=emitter)

    db.refresh(first)
    assert first.start_time == at(10)
    assert first.end_time == at(11, 30)


def test_editing_a_missing_reservation_is_not_found(db, people, emitter):
    with pytest.raises(NotFoundError):
        edit_reservation(db, people["admin"][1], 9999, purpose="Nothing here", emitter=emitter)


def test_cancelled_reservation_cannot_be_edited(db, people, room, emitter):
    actor = people["lecturer"][1]
    reservation = book(db, actor, room, at(10), at(11), emitter)
    cancel_reservation(db, actor, reservation.id, emitter=emitter)
    with pytest.raises(ValidationError):
        edit_reservation(db, actor, reservation.id, purpose="Back again", emitter=emitter)


# ---------- Requests ----------


def test_request_is_approved_into_a_reservation(db, people, room, emitter, inbox):
    student, actor = people["student"]
    request = submit_request(db, actor, room.id, at(10), at(11), purpose="Study group", attendee_count=3)
    assert request.status == models.RequestStatus.PENDING

    result = review_request(db, people["admin"][1], request.id, ReviewDecision.APPROVE, emitter=emitter)

    assert result.request.status == models.RequestStatus.APPROVED
    assert result.request.reservation_id == result.reservation.id
    assert result.request.reviewed_by == people["admin"][0].id
    assert result.reservation.user_id == student.id
    assert result.reservation.attendee_count == 3
    [note] = inbox(student.id, Kind.RESERVATION_CONFIRMED)
    assert note.reservation_id == result.reservation.id


def test_approval_rechecks_the_slot_and_leaves_request_pending(db, people, room, emitter):
    request = submit_request(db, people["student"][1], room.id, at(10), at(11), purpose="Study group")
    book(db, people["lecturer"][1], room, at(10, 30), at(11, 30), emitter)

    with pytest.raises(ConflictError) as exc:
        review_request(db, people["admin"][1], request.id, ReviewDecision.APPROVE, emitter=emitter)
    assert "no longer available" in exc.value.detail

    db.refresh(request)
    assert request.status == models.RequestStatus.PENDING
    assert request.reservation_id is None
    active = (
        db.query(models.Reservation)
        .filter(models.Reservation.status == models.ReservationStatus.ACTIVE)
        .count()
    )
    assert active == 1


def test_approval_rechecks_room_availability_and_capacity(db, people, room, emitter):
    actor = people["student"][1]
    crowd = submit_request(db, actor, room.id, at(10), at(11), purpose="Study group", attendee_count=6)
    later = submit_request(db, actor, room.id, at(13), at(14), purpose="Study group")

    room.capacity = 4
    db.commit()
    with pytest.raises(ValidationError):
        review_request(db, people["admin"][1], crowd.id, ReviewDecision.APPROVE, emitter=emitter)

    room.is_available = False
    db.commit()
    with pytest.raises(ValidationError):
        review_request(db, people["admin"][1], later.id, ReviewDecision.APPROVE, emitter=emitter)

    db.expire_all()
    assert [crowd.status, later.status] == [models.RequestStatus.PENDING, models.RequestStatus.PENDING]
    assert db.query(models.Reservation).count() == 0


def test_rejection_needs_a_note_and_forwards_it(db, people, room, emitter, inbox):
    student, actor = people["student"]
    request = submit_request(db, actor, room.id, at(10), at(11), purpose="Study group")

    with pytest.raises(ValidationError):
        review_request(db, people["admin"][1], request.id, ReviewDecision.REJECT, note="  ", emitter=emitter)

    result = review_request(
        db, people["admin"][1], request.id, ReviewDecision.REJECT, note="Room reserved for exams", emitter=emitter
    )
    assert result.reservation is None
    assert result.request.status == models.RequestStatus.REJECTED
    [note] = inbox(student.id, Kind.PERMISSION_REJECTED)
    assert "Room reserved for exams" in note.message

    with pytest.raises(ValidationError):
        review_request(db, people["admin"][1], request.id, ReviewDecision.APPROVE, emitter=emitter)


def test_only_admins_review(db, people, room, emitter):
    request = submit_request(db, people["student"][1], room.id, at(10), at(11), purpose="Study group")
    with pytest.raises(AuthorizationError):
        review_request(db, people["overrider"][1], request.id, ReviewDecision.APPROVE, emitter=emitter)


def test_submission_checks(db, people, room, emitter):
    actor = people["student"][1]
    submit_request(db, actor, room.id, at(10), at(11), purpose="Study group")

    with pytest.raises(ValidationError):
        submit_request(db, actor, room.id, at(10), at(11), purpose="Again")
    with pytest.raises(ValidationError):
        submit_request(db, actor, room.id, at(14), at(15), purpose="   ")
    with pytest.raises(AuthorizationError):
        submit_request(db, people["lecturer"][1], room.id, at(14), at(15), purpose="Class")

    book(db, people["lecturer"][1], room, at(16), at(17), emitter)
    with pytest.raises(ConflictError):
        submit_request(db, actor, room.id, at(16), at(17), purpose="Study group")


def test_requester_withdraws_pending_request(db, people, room, emitter):
    actor = people["student"][1]
    request = submit_request(db, actor, room.id, at(10), at(11), purpose="Study group")

    with pytest.raises(NotFoundError):
        withdraw_request(db, people["other"][1], request.id)

    withdrawn = withdraw_request(db, actor, request.id)
    assert withdrawn.status == models.RequestStatus.CANCELLED

    with pytest.raises(ValidationError):
        withdraw_request(db, actor, request.id)


# ---------- Duration settings ----------


def test_duration_bounds_default_and_update(db, people, room, emitter):
    assert get_duration_bounds(db) == (30, 120)

    update_duration_bounds(db, people["admin"][0].id, 15, 240)

    assert get_duration_bounds(db) == (15, 240)
    short = book(db, people["lecturer"][1], room, at(10), at(10, 20), emitter)
    assert short.end_time - short.start_time == timedelta(minutes=20)


@pytest.mark.parametrize("low,high", [(10, 60), (30, 500), (60, 60), (90, 60)])
def test_duration_bounds_are_validated(db, people, low, high):
    with pytest.raises(ValidationError):
        update_duration_bounds(db, people["admin"][0].id, low, high)
    assert get_duration_bounds(db) == (30, 120)


def test_override_instructor_cancels_another_instructors_reservation(db, people, room, emitter, inbox):
    lecturer, lecturer_actor = people["lecturer"]
    reservation = book(db, lecturer_actor, room, at(9), at(10), emitter)

    cancelled = cancel_reservation(db, people["overrider"][1], reservation.id, emitter=emitter)

    assert cancelled.status == models.ReservationStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert len(inbox(lecturer.id, Kind.RESERVATION_CANCELLED)) == 1


def test_instructor_without_override_cannot_cancel_a_peer(db, people, room, make_user, actor_of, emitter):
    peer = make_user("peer", Role.INSTRUCTOR, can_reserve=True)
    reservation = book(db, actor_of(peer), room, at(9), at(10), emitter)

    with pytest.raises(AuthorizationError):
        cancel_reservation(db, people["lecturer"][1], reservation.id, emitter=emitter)
    own = book(db, people["lecturer"][1], room, at(10), at(11), emitter)
    assert cancel_reservation(db, people["lecturer"][1], own.id, emitter=emitter).status == models.ReservationStatus.CANCELLED
