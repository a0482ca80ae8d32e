# pytest services/user_management/tests/test_profiles_and_contacts.py -q

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from models.user_models import EmergencyContact, User
from services.user_management.main import app, get_db


@pytest.fixture
def alice(as_user, make_user):
    make_user("uid-alice", username="alice", display_name="Alice")
    return as_user(app, "uid-alice", email="alice@example.com")


# ----------------------------
# Profiles
# ----------------------------
def test_put_me_creates_profile_with_normalised_fields(as_user, db_session):
    client = as_user(app, "uid-new", email="New@Example.com")

    r = client.put(
        "/v1/users/me",
        json={"username": "  New_User ", "display_name": "Newbie", "phone": "(555) 123-4567"},
    )

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["email"] == "new@example.com"
    assert body["username"] == "new_user"
    assert body["phone"] == "+15551234567"

    stored = db_session.get(User, "uid-new")
    assert stored is not None
    assert stored.username == "new_user"


def test_put_me_rejects_invalid_username(as_user):
    client = as_user(app, "uid-new")

    r = client.put("/v1/users/me", json={"username": "no spaces!"})

    assert r.status_code == 400


def test_put_me_rejects_short_phone(as_user):
    client = as_user(app, "uid-new")

    r = client.put("/v1/users/me", json={"phone": "12345"})

    assert r.status_code == 400
    assert "10 digits" in r.json()["detail"]


def test_put_me_username_conflict_returns_409(as_user, make_user):
    make_user("uid-bob", username="bob")
    client = as_user(app, "uid-alice")

    r = client.put("/v1/users/me", json={"username": "BOB"})

    assert r.status_code == 409


def test_put_me_updates_existing_profile(alice, db_session):
    r = alice.put("/v1/users/me", json={"display_name": "Alice Cooper"})

    assert r.status_code == 200
    assert r.json()["display_name"] == "Alice Cooper"
    assert r.json()["username"] == "alice"


def test_get_me_missing_profile_returns_404(as_user):
    client = as_user(app, "uid-ghost")

    assert client.get("/v1/users/me").status_code == 404


def test_get_user_by_id(alice, make_user):
    make_user("uid-bob", username="bob", display_name="Bob")

    r = alice.get("/v1/users/uid-bob")

    assert r.status_code == 200
    assert r.json()["username"] == "bob"
    assert "email" not in r.json()
    missing = alice.get("/v1/users/uid-nobody")
    assert missing.status_code == 404
    assert missing.json() == {"detail": "User uid-nobody not found"}


def test_search_is_prefix_only_and_excludes_caller(alice, make_user):
    make_user("uid-al1", username="alfred")
    make_user("uid-al2", username="alan")
    make_user("uid-x", username="xavier_al")

    r = alice.get("/v1/users/search", params={"q": "AL"})

    assert r.status_code == 200
    names = [u["username"] for u in r.json()]
    assert names == ["alan", "alfred"]


def test_search_limits_to_ten_results(alice, make_user):
    for i in range(12):
        make_user(f"uid-s{i}", username=f"sam{i:02d}")

    r = alice.get("/v1/users/search", params={"q": "sam"})

    assert len(r.json()) == 10


def test_search_empty_query_returns_empty_list(alice):
    assert alice.get("/v1/users/search", params={"q": "  "}).json() == []


def test_search_treats_underscore_literally(alice, make_user):
    make_user("uid-u1", username="a_b")
    make_user("uid-u2", username="axb")

    r = alice.get("/v1/users/search", params={"q": "a_"})

    assert [u["username"] for u in r.json()] == ["a_b"]


# ----------------------------
# Emergency contacts
# ----------------------------
def test_add_contact_canonicalises_phone(alice):
    r = alice.post(
        "/v1/users/me/contacts",
        json={"name": "Mum", "phone": "077 123 4567", "relationship": "Parent"},
    )

    assert r.status_code == 201, r.text
    body = r.json()
    assert body["phone"] == "+94771234567"
    assert body["relationship"] == "Parent"
    assert body["added_by"] == "manual"


def test_add_contact_defaults_relation(alice):
    r = alice.post("/v1/users/me/contacts", json={"name": "Sam", "phone": "5551234567"})

    assert r.json()["relationship"] == "Contact"


def test_add_contact_rejects_short_phone(alice):
    r = alice.post("/v1/users/me/contacts", json={"name": "Sam", "phone": "555-12"})

    assert r.status_code == 400


def test_only_one_primary_contact(alice, db_session):
    first = alice.post(
        "/v1/users/me/contacts",
        json={"name": "A", "phone": "5551112222", "is_primary": True},
    ).json()
    second = alice.post(
        "/v1/users/me/contacts",
        json={"name": "B", "phone": "5553334444", "is_primary": True},
    ).json()

    contacts = alice.get("/v1/users/me/contacts").json()
    primaries = [c["contact_id"] for c in contacts if c["is_primary"]]
    assert primaries == [second["contact_id"]]

    r = alice.post(f"/v1/users/me/contacts/{first['contact_id']}/primary")
    assert r.status_code == 200
    rows = db_session.scalars(
        select(EmergencyContact).where(EmergencyContact.is_primary.is_(True))
    ).all()
    assert [c.contact_id for c in rows] == [first["contact_id"]]


def test_list_contacts_primary_first_then_name(alice):
    alice.post("/v1/users/me/contacts", json={"name": "Zed", "phone": "5551112222"})
    alice.post("/v1/users/me/contacts", json={"name": "Amy", "phone": "5553334444"})
    alice.post(
        "/v1/users/me/contacts",
        json={"name": "Max", "phone": "5556667777", "is_primary": True},
    )

    names = [c["name"] for c in alice.get("/v1/users/me/contacts").json()]

    assert names == ["Max", "Amy", "Zed"]


def test_import_counts_successes_and_errors(alice):
    r = alice.post(
        "/v1/users/me/contacts/import",
        json={
            "contacts": [
                {"name": "Ann", "phone": "(555) 111-2222"},
                {"name": "No Number", "phone": "   "},
                {"name": "Letters", "phone": "call me"},
                {"name": "Ben", "phone": "+44 20 7946 0958"},
            ]
        },
    )

    assert r.status_code == 200
    body = r.json()
    assert body["success_count"] == 2
    assert body["error_count"] == 2
    assert {c["relationship"] for c in body["contacts"]} == {"Imported Contact"}
    assert all(c["is_primary"] is False for c in body["contacts"])
    assert all(c["added_by"] == "import" for c in body["contacts"])


def test_update_and_delete_contact(alice):
    created = alice.post(
        "/v1/users/me/contacts", json={"name": "Sam", "phone": "5551234567"}
    ).json()
    cid = created["contact_id"]

    r = alice.patch(f"/v1/users/me/contacts/{cid}", json={"name": "Samuel", "phone": "0771234567"})
    assert r.status_code == 200
    assert r.json()["name"] == "Samuel"
    assert r.json()["phone"] == "+94771234567"

    r = alice.delete(f"/v1/users/me/contacts/{cid}")
    assert r.status_code == 200
    assert alice.get("/v1/users/me/contacts").json() == []


def test_foreign_contact_is_not_found(alice, as_user, make_user, make_contact):
    make_user("uid-bob")
    bobs = make_contact("uid-bob", name="Bob's mum", phone="+15551234567")

    assert alice.patch(f"/v1/users/me/contacts/{bobs.contact_id}", json={"name": "x"}).status_code == 404
    assert alice.delete(f"/v1/users/me/contacts/{bobs.contact_id}").status_code == 404
    assert alice.post(f"/v1/users/me/contacts/{bobs.contact_id}/primary").status_code == 404


# ----------------------------
# Commit failures
# ----------------------------
class FakeResult:
    def scalar_one_or_none(self):
        return None

    def first(self):
        return None


class FakeDB:
    def __init__(self, *, commit_raises=None):
        self.added = []
        self.rolled_back = False
        self.commit_raises = commit_raises

    async def execute(self, stmt):
        return FakeResult()

    def add(self, obj):
        self.added.append(obj)

    async def commit(self):
        if self.commit_raises:
            raise self.commit_raises

    async def rollback(self):
        self.rolled_back = True


def test_integrity_error_on_commit_returns_409(as_user):
    client = as_user(app, "uid-race")
    fake_db = FakeDB(commit_raises=IntegrityError("INSERT", {}, Exception("unique")))

    async def override_get_db():
        yield fake_db

    app.dependency_overrides[get_db] = override_get_db

    r = client.put("/v1/users/me", json={"username": "racer"})

    assert r.status_code == 409
    assert fake_db.rolled_back is True
