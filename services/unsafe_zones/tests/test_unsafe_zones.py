# pytest services/unsafe_zones/tests/test_unsafe_zones.py -q

import pytest
from sqlalchemy import select

from models.audit import Audit
from models.unsafe_zone import UnsafeZone
from services.unsafe_zones.main import app, bounding_box

COLOMBO = (6.9271, 79.8612)


@pytest.fixture
def alice(as_user):
    return as_user(app, "uid-alice")


@pytest.fixture
def bob(as_user):
    return as_user(app, "uid-bob")


def _report(client, lat=COLOMBO[0], lon=COLOMBO[1], reason="Broken street lights"):
    r = client.post("/v1/unsafe-zones", json={"lat": lat, "lon": lon, "reason": reason})
    assert r.status_code == 201, r.text
    return r.json()


def test_bounding_box_uses_same_scale_on_both_axes():
    min_lat, max_lat, min_lon, max_lon = bounding_box(10.0, 20.0, 5)

    assert min_lat == pytest.approx(9.955)
    assert max_lat == pytest.approx(10.045)
    assert min_lon == pytest.approx(19.955)
    assert max_lon == pytest.approx(20.045)


def test_report_zone(alice, db_session):
    zone = _report(alice, reason="  Poorly lit underpass  ")

    assert zone["user_id"] == "uid-alice"
    assert zone["reason"] == "Poorly lit underpass"
    assert zone["verified"] is False
    assert zone["verification_count"] == 0

    audits = db_session.scalars(select(Audit).where(Audit.event_type == "unsafe_zone")).all()
    assert [a.event_id for a in audits] == [zone["zone_id"]]


def test_blank_reason_rejected(alice):
    r = alice.post("/v1/unsafe-zones", json={"lat": 1.0, "lon": 1.0, "reason": "   "})

    assert r.status_code == 422


def test_out_of_range_coordinates_rejected(alice):
    r = alice.post("/v1/unsafe-zones", json={"lat": 91.0, "lon": 1.0, "reason": "x"})

    assert r.status_code == 422


def test_nearby_filters_by_bounding_box(alice, bob):
    near = _report(alice, lat=COLOMBO[0] + 0.01, lon=COLOMBO[1] - 0.01)
    _report(alice, lat=COLOMBO[0] + 0.2, lon=COLOMBO[1])
    _report(alice, lat=COLOMBO[0], lon=COLOMBO[1] + 0.2)

    r = bob.get("/v1/unsafe-zones/nearby", params={"lat": COLOMBO[0], "lon": COLOMBO[1]})

    assert r.status_code == 200
    assert [z["zone_id"] for z in r.json()] == [near["zone_id"]]


def test_nearby_radius_widens_search(alice):
    _report(alice, lat=COLOMBO[0] + 0.2, lon=COLOMBO[1])

    narrow = alice.get(
        "/v1/unsafe-zones/nearby", params={"lat": COLOMBO[0], "lon": COLOMBO[1]}
    ).json()
    wide = alice.get(
        "/v1/unsafe-zones/nearby",
        params={"lat": COLOMBO[0], "lon": COLOMBO[1], "radius_km": 30},
    ).json()

    assert narrow == []
    assert len(wide) == 1


def test_zone_verified_at_third_confirmation(alice, bob, db_session):
    zone = _report(alice)
    url = f"/v1/unsafe-zones/{zone['zone_id']}/verify"

    counts = []
    for _ in range(3):
        r = bob.post(url)
        assert r.status_code == 200
        counts.append((r.json()["verification_count"], r.json()["verified"]))

    assert counts == [(1, False), (2, False), (3, True)]
    row = db_session.get(UnsafeZone, zone["zone_id"])
    assert row.verified is True


def test_verify_unknown_zone_is_404(bob):
    r = bob.post("/v1/unsafe-zones/zone_missing/verify")

    assert r.status_code == 404
    assert r.json() == {"detail": "Unsafe zone not found"}


def test_report_metric(alice):
    registry = app.state.metrics.registry
    before = registry.get_sample_value("unsafe_zone_reports_total", {"action": "report"}) or 0.0

    _report(alice)

    assert registry.get_sample_value("unsafe_zone_reports_total", {"action": "report"}) == before + 1
