# pytest services/invitation/tests/test_invitation_api.py -q

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

import services.invitation.main as invitation_main
from common.errors import ConflictError
from libs.db import utcnow
from models.audit import Audit
from models.invitation import Invitation
from models.user_models import EmergencyContact
from services.invitation.main import app


@pytest.fixture
def people(make_user):
    make_user(
        "uid-alice",
        email="alice@example.com",
        username="alice",
        display_name="Alice",
        phone="+15551110000",
    )
    make_user(
        "uid-bob",
        email="bob@example.com",
        username="bob",
        display_name="Bob",
        phone="077 123 4567",
    )
    make_user("uid-carol", email="carol@example.com", username="carol")


@pytest.fixture
def alice(people, as_user):
    return as_user(app, "uid-alice", email="alice@example.com")


@pytest.fixture
def bob(people, as_user):
    return as_user(app, "uid-bob", email="bob@example.com")


@pytest.fixture
def carol(people, as_user):
    return as_user(app, "uid-carol", email="carol@example.com")


@pytest.fixture
def seed_invitation(db_session):
    def _seed(**overrides) -> Invitation:
        now = utcnow()
        values = dict(
            invitation_id="inv_seeded",
            sender_user_id="uid-alice",
            sender_name="Alice",
            sender_email="alice@example.com",
            recipient_user_id="uid-bob",
            recipient_email="bob@example.com",
            recipient_name="Bob",
            relationship="Parent",
            status="pending",
            invite_code="SEEDED01",
            sent_at=now,
            expires_at=now + timedelta(days=7),
        )
        values.update(overrides)
        inv = Invitation(**values)
        db_session.add(inv)
        db_session.commit()
        return inv

    return _seed


def _send_to_bob(client, relationship="Parent"):
    r = client.post(
        "/v1/invitations",
        json={"recipient_username": "Bob", "relationship": relationship},
    )
    assert r.status_code == 201, r.text
    return r.json()


# ----------------------------
# Sending
# ----------------------------
def test_send_by_username(alice):
    body = _send_to_bob(alice)

    assert body["status"] == "pending"
    assert body["recipient_user_id"] == "uid-bob"
    assert body["recipient_username"] == "bob"
    assert body["sender_name"] == "Alice"
    assert len(body["invite_code"]) == 8
    assert body["invite_code"].isupper() or body["invite_code"].isdigit()


def test_send_expires_after_seven_days(alice, db_session):
    body = _send_to_bob(alice)

    inv = db_session.get(Invitation, body["invitation_id"])
    assert inv.expires_at - inv.sent_at == timedelta(days=7)


def test_send_by_email_to_someone_without_account(alice):
    r = alice.post("/v1/invitations", json={"recipient_email": "Dan@Example.com"})

    assert r.status_code == 201
    body = r.json()
    assert body["recipient_user_id"] is None
    assert body["recipient_email"] == "dan@example.com"
    assert body["recipient_name"] == "dan"


def test_send_requires_exactly_one_recipient(alice):
    assert alice.post("/v1/invitations", json={}).status_code == 400
    r = alice.post(
        "/v1/invitations",
        json={"recipient_username": "bob", "recipient_email": "bob@example.com"},
    )
    assert r.status_code == 400


def test_send_to_unknown_username_is_404(alice):
    r = alice.post("/v1/invitations", json={"recipient_username": "nobody"})

    assert r.status_code == 404


def test_cannot_invite_yourself(alice):
    assert alice.post("/v1/invitations", json={"recipient_username": "alice"}).status_code == 400
    r = alice.post("/v1/invitations", json={"recipient_email": "ALICE@example.com"})
    assert r.status_code == 400


def test_second_pending_invitation_conflicts(alice):
    _send_to_bob(alice)

    r = alice.post("/v1/invitations", json={"recipient_email": "bob@example.com"})

    assert r.status_code == 409


def test_already_linked_contact_conflicts(alice, make_contact):
    make_contact("uid-alice", name="Bob", linked_user_id="uid-bob")

    r = alice.post("/v1/invitations", json={"recipient_username": "bob"})

    assert r.status_code == 409


def test_code_collision_is_retried(alice, seed_invitation, monkeypatch):
    seed_invitation(recipient_user_id="uid-carol", recipient_email="carol@example.com")
    codes = iter(["SEEDED01", "FRESH002"])
    monkeypatch.setattr(invitation_main.lifecycle, "generate_invite_code", lambda: next(codes))

    body = _send_to_bob(alice)

    assert body["invite_code"] == "FRESH002"


# ----------------------------
# Listing
# ----------------------------
def test_received_matches_user_id_or_email(alice, bob, seed_invitation):
    _send_to_bob(alice)
    seed_invitation(
        invitation_id="inv_by_email",
        invite_code="EMAIL001",
        sender_user_id="uid-carol",
        recipient_user_id=None,
        recipient_email="BOB@example.com",
    )
    seed_invitation(
        invitation_id="inv_old",
        invite_code="OLD00001",
        sender_user_id="uid-carol",
        expires_at=utcnow() - timedelta(minutes=1),
    )

    received = bob.get("/v1/invitations/received").json()

    ids = {i["invitation_id"] for i in received}
    assert "inv_by_email" in ids
    assert "inv_old" not in ids
    assert len(received) == 2


def test_sent_reports_effective_status(alice, seed_invitation, db_session):
    seed_invitation(expires_at=utcnow() - timedelta(hours=1))

    sent = alice.get("/v1/invitations/sent").json()

    assert [i["status"] for i in sent] == ["expired"]
    db_session.expire_all()
    assert db_session.get(Invitation, "inv_seeded").status == "expired"


# ----------------------------
# Accepting
# ----------------------------
def test_accept_creates_mutual_contacts(alice, bob, db_session):
    sent = _send_to_bob(alice, relationship="Parent")

    r = bob.post("/v1/invitations/accept", json={"invite_code": sent["invite_code"].lower()})

    assert r.status_code == 200, r.text
    assert r.json()["invitation"]["status"] == "accepted"
    assert r.json()["invitation"]["responded_at"] is not None

    contacts = db_session.scalars(select(EmergencyContact)).all()
    by_owner = {c.user_id: c for c in contacts}
    assert set(by_owner) == {"uid-alice", "uid-bob"}

    bobs_contact = by_owner["uid-bob"]
    assert bobs_contact.linked_user_id == "uid-alice"
    assert bobs_contact.relation == "Parent"
    assert bobs_contact.phone == "+15551110000"
    assert bobs_contact.added_by == "invitation"

    alices_contact = by_owner["uid-alice"]
    assert alices_contact.linked_user_id == "uid-bob"
    assert alices_contact.relation == "Child"
    assert alices_contact.phone == "+94771234567"
    assert alices_contact.invitation_id == sent["invitation_id"]


def test_accept_twice_creates_contacts_once(alice, bob, db_session):
    sent = _send_to_bob(alice)
    assert bob.post("/v1/invitations/accept", json={"invite_code": sent["invite_code"]}).status_code == 200

    r = bob.post("/v1/invitations/accept", json={"invite_code": sent["invite_code"]})

    assert r.status_code == 404
    assert len(db_session.scalars(select(EmergencyContact)).all()) == 2


def test_crossed_invitations_link_users_once(alice, bob, db_session):
    to_bob = _send_to_bob(alice)
    r = bob.post("/v1/invitations", json={"recipient_username": "alice"})
    assert r.status_code == 201
    to_alice = r.json()

    assert bob.post("/v1/invitations/accept", json={"invite_code": to_bob["invite_code"]}).status_code == 200

    r = alice.post("/v1/invitations/accept", json={"invite_code": to_alice["invite_code"]})

    assert r.status_code == 404
    assert db_session.get(Invitation, to_alice["invitation_id"]).status == "cancelled"
    alices = db_session.scalars(
        select(EmergencyContact).where(
            EmergencyContact.user_id == "uid-alice",
            EmergencyContact.linked_user_id == "uid-bob",
        )
    ).all()
    assert len(alices) == 1


def test_accept_when_already_linked_conflicts(bob, seed_invitation, make_contact, db_session):
    seed_invitation()
    make_contact("uid-bob", name="Alice", linked_user_id="uid-alice")

    r = bob.post("/v1/invitations/accept", json={"invite_code": "SEEDED01"})

    assert r.status_code == 409
    assert db_session.get(Invitation, "inv_seeded").status == "pending"
    assert len(db_session.scalars(select(EmergencyContact)).all()) == 1


def test_linked_pair_is_unique(make_contact):
    make_contact("uid-alice", name="Bob", linked_user_id="uid-bob")

    with pytest.raises(IntegrityError):
        make_contact("uid-alice", name="Bob again", linked_user_id="uid-bob")


def test_accept_unknown_code_is_404(bob):
    r = bob.post("/v1/invitations/accept", json={"invite_code": "NOPE0000"})

    assert r.status_code == 404
    assert r.json()["detail"] == "Invalid or expired invitation code"


def test_accept_by_wrong_user_is_403(alice, carol):
    sent = _send_to_bob(alice)

    r = carol.post("/v1/invitations/accept", json={"invite_code": sent["invite_code"]})

    assert r.status_code == 403


def test_accept_expired_is_410_and_persists_expiry(bob, seed_invitation, db_session):
    seed_invitation(expires_at=utcnow() - timedelta(minutes=5))

    r = bob.post("/v1/invitations/accept", json={"invite_code": "SEEDED01"})

    assert r.status_code == 410
    db_session.expire_all()
    assert db_session.get(Invitation, "inv_seeded").status == "expired"


def test_accept_when_sender_is_gone_is_410(bob, seed_invitation):
    seed_invitation(sender_user_id="uid-deleted")

    r = bob.post("/v1/invitations/accept", json={"invite_code": "SEEDED01"})

    assert r.status_code == 410


def test_accept_by_email_sets_recipient_user(alice, bob, db_session):
    sent = alice.post("/v1/invitations", json={"recipient_email": "bob@example.com"}).json()

    bob.post("/v1/invitations/accept", json={"invite_code": sent["invite_code"]})

    db_session.expire_all()
    assert db_session.get(Invitation, sent["invitation_id"]).recipient_user_id == "uid-bob"


@pytest.mark.asyncio
async def test_compare_and_set_lets_only_one_writer_win(
    people, seed_invitation, async_session_factory
):
    seed_invitation()
    now = utcnow()

    async with async_session_factory() as first:
        await invitation_main._compare_and_set(
            first, "inv_seeded", "pending", status="accepted", responded_at=now
        )
        await first.commit()

    async with async_session_factory() as second:
        with pytest.raises(ConflictError):
            await invitation_main._compare_and_set(
                second, "inv_seeded", "pending", status="accepted", responded_at=now
            )


# ----------------------------
# Other transitions
# ----------------------------
def test_recipient_declines(alice, bob):
    sent = _send_to_bob(alice)

    r = bob.post(f"/v1/invitations/{sent['invitation_id']}/decline")

    assert r.status_code == 200
    assert r.json()["status"] == "declined"


def test_sender_cannot_decline(alice):
    sent = _send_to_bob(alice)

    assert alice.post(f"/v1/invitations/{sent['invitation_id']}/decline").status_code == 403


def test_recipient_ignores(alice, bob):
    sent = _send_to_bob(alice)

    r = bob.post(f"/v1/invitations/{sent['invitation_id']}/ignore")

    assert r.json()["status"] == "ignored"


def test_only_sender_cancels(alice, bob):
    sent = _send_to_bob(alice)

    assert bob.post(f"/v1/invitations/{sent['invitation_id']}/cancel").status_code == 403
    r = alice.post(f"/v1/invitations/{sent['invitation_id']}/cancel")
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"


def test_decline_after_accept_conflicts(alice, bob):
    sent = _send_to_bob(alice)
    bob.post("/v1/invitations/accept", json={"invite_code": sent["invite_code"]})

    r = bob.post(f"/v1/invitations/{sent['invitation_id']}/decline")

    assert r.status_code == 409


def test_resend_after_decline_issues_new_code(alice, bob):
    sent = _send_to_bob(alice)
    bob.post(f"/v1/invitations/{sent['invitation_id']}/decline")

    r = alice.post(f"/v1/invitations/{sent['invitation_id']}/resend")

    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "pending"
    assert body["responded_at"] is None
    assert body["invite_code"] != sent["invite_code"]


def test_resend_conflicts_with_newer_pending_invitation(alice, bob, db_session):
    declined = _send_to_bob(alice)
    bob.post(f"/v1/invitations/{declined['invitation_id']}/decline")
    _send_to_bob(alice)

    r = alice.post(f"/v1/invitations/{declined['invitation_id']}/resend")

    assert r.status_code == 409
    pending = db_session.scalars(
        select(Invitation).where(Invitation.status == "pending")
    ).all()
    assert len(pending) == 1
    assert db_session.get(Invitation, declined["invitation_id"]).status == "declined"


def test_resend_to_linked_contact_conflicts(alice, seed_invitation, make_contact):
    seed_invitation(status="declined")
    make_contact("uid-alice", name="Bob", linked_user_id="uid-bob")

    assert alice.post("/v1/invitations/inv_seeded/resend").status_code == 409


def test_resend_expired_invitation(alice, seed_invitation):
    seed_invitation(expires_at=utcnow() - timedelta(days=1))

    r = alice.post("/v1/invitations/inv_seeded/resend")

    assert r.status_code == 200
    assert r.json()["status"] == "pending"


def test_resend_accepted_or_cancelled_conflicts(alice, seed_invitation):
    seed_invitation(status="accepted")
    seed_invitation(invitation_id="inv_cancelled", invite_code="CANCEL01", status="cancelled")

    assert alice.post("/v1/invitations/inv_seeded/resend").status_code == 409
    assert alice.post("/v1/invitations/inv_cancelled/resend").status_code == 409


def test_only_sender_resends(bob, seed_invitation):
    seed_invitation(status="declined")

    assert bob.post("/v1/invitations/inv_seeded/resend").status_code == 403


def test_expire_sweep(alice, seed_invitation):
    seed_invitation(expires_at=utcnow() - timedelta(days=1))
    seed_invitation(invitation_id="inv_fresh", invite_code="FRESH001")

    r = alice.post("/v1/invitations/expire")

    assert r.json() == {"expired": 1}
    assert alice.post("/v1/invitations/expire").json() == {"expired": 0}


def test_get_invitation_visibility(alice, bob, carol, seed_invitation):
    seed_invitation()

    assert alice.get("/v1/invitations/inv_seeded").status_code == 200
    assert bob.get("/v1/invitations/inv_seeded").status_code == 200
    assert carol.get("/v1/invitations/inv_seeded").status_code == 403
    assert alice.get("/v1/invitations/inv_missing").status_code == 404


def test_transitions_are_audited(alice, bob, db_session):
    sent = _send_to_bob(alice)
    bob.post(f"/v1/invitations/{sent['invitation_id']}/decline")

    rows = db_session.scalars(
        select(Audit).where(Audit.event_id == sent["invitation_id"])
    ).all()

    assert {r.event_type for r in rows} == {"invitation"}
    assert len(rows) == 2
