from __future__ import annotations

import json
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.models import MealAnalysis, RefreshToken, Usage  # noqa: E402
from utils.errors import AIAnalysisError  # noqa: E402


def _upload(harness, body: dict, content_type: str = "image/jpeg") -> str:
    resp = harness.client.post(
        "/api/upload-url",
        json={"file_name": "lunch.jpg", "file_size": 512_000, "content_type": content_type},
        headers=harness.auth(body),
    )
    assert resp.status_code == 200, resp.text
    payload = resp.json()
    assert payload["expires_in"] == 600
    assert "op=put" in payload["upload_url"]
    return payload["blob_name"]


def test_second_user_analyzing_same_blob_gets_cached_copy(harness):
    alice = harness.signup_and_signin("alice@example.com")
    bob = harness.signup_and_signin("bob@example.com")

    blob_name = _upload(harness, alice)
    assert blob_name.startswith(f"meals/{alice['user']['id']}/")

    first = harness.client.post("/api/meals/analyze", json={"blob_name": blob_name}, headers=harness.auth(alice))
    assert first.status_code == 200, first.text
    first_body = first.json()
    assert first_body["cached"] is False
    assert len(harness.analyzer.calls) == 1
    assert "op=get" in harness.analyzer.calls[0]
    assert "op=" not in first_body["blob_url"]

    second = harness.client.post("/api/meals/analyze", json={"blob_name": blob_name}, headers=harness.auth(bob))
    assert second.status_code == 200, second.text
    second_body = second.json()
    assert second_body["cached"] is True
    assert len(harness.analyzer.calls) == 1

    assert second_body["id"] != first_body["id"]
    assert second_body["share_id"] != first_body["share_id"]
    assert second_body["total_protein"] == first_body["total_protein"] == 48
    assert [f["name"] for f in second_body["foods"]] == [f["name"] for f in first_body["foods"]]

    db = harness.session_factory()
    try:
        rows = db.query(MealAnalysis).order_by(MealAnalysis.created_at).all()
        assert [r.user_id for r in rows] == [alice["user"]["id"], bob["user"]["id"]]
        assert rows[0].blob_hash == rows[1].blob_hash
        assert rows[0].ai_response_raw == rows[1].ai_response_raw
        assert db.query(Usage).count() == 2
    finally:
        db.close()

    bob_history = harness.client.get("/api/meals", headers=harness.auth(bob)).json()
    assert [m["id"] for m in bob_history["meals"]] == [second_body["id"]]


def test_analysis_failure_propagates_and_records_nothing(harness):
    carol = harness.signup_and_signin("carol@example.com")
    blob_name = _upload(harness, carol)
    harness.analyzer.error = AIAnalysisError("upstream unavailable")

    resp = harness.client.post("/api/meals/analyze", json={"blob_name": blob_name}, headers=harness.auth(carol))
    assert resp.status_code == 502
    assert resp.json()["error"] == "ai_analysis_failed"

    db = harness.session_factory()
    try:
        assert db.query(MealAnalysis).count() == 0
        assert db.query(Usage).count() == 0
    finally:
        db.close()


def test_signin_refresh_rotation_end_to_end(harness):
    dave = harness.signup_and_signin("dave@example.com")
    assert dave["expires_in"] == 900
    assert harness.client.get("/api/auth/me", headers=harness.auth(dave)).json()["email"] == "dave@example.com"

    rotated = harness.client.post("/api/auth/refresh", json={"refresh_token": dave["refresh_token"]})
    assert rotated.status_code == 200, rotated.text
    new_pair = rotated.json()
    assert new_pair["refresh_token"] != dave["refresh_token"]

    me = harness.client.get("/api/auth/me", headers=harness.auth(new_pair))
    assert me.status_code == 200

    replay = harness.client.post("/api/auth/refresh", json={"refresh_token": dave["refresh_token"]})
    assert replay.status_code == 401
    assert replay.json()["error"] == "INVALID"

    wrong_type = harness.client.post("/api/auth/refresh", json={"refresh_token": new_pair["access_token"]})
    assert wrong_type.status_code == 401
    assert wrong_type.json()["error"] == "WRONG_TYPE"

    again = harness.client.post("/api/auth/refresh", json={"refresh_token": new_pair["refresh_token"]})
    assert again.status_code == 200

    db = harness.session_factory()
    try:
        rows = db.query(RefreshToken).all()
        assert len(rows) == 3
        assert sum(1 for r in rows if r.revoked_at is None) == 1
    finally:
        db.close()


def test_logout_revokes_refresh_token(harness):
    erin = harness.signup_and_signin("erin@example.com")
    out = harness.client.post("/api/auth/logout", json={"refresh_token": erin["refresh_token"]})
    assert out.status_code == 200
    again = harness.client.post("/api/auth/refresh", json={"refresh_token": erin["refresh_token"]})
    assert again.status_code == 401


def test_meal_owner_checks_corrections_privacy_and_delete(harness):
    frank = harness.signup_and_signin("frank@example.com")
    grace = harness.signup_and_signin("grace@example.com")
    blob_name = _upload(harness, frank)
    meal = harness.client.post("/api/meals/analyze", json={"blob_name": blob_name}, headers=harness.auth(frank)).json()
    meal_id = meal["id"]

    assert harness.client.get(f"/api/meals/{meal_id}", headers=harness.auth(grace)).status_code == 403
    assert harness.client.get("/api/meals/does-not-exist", headers=harness.auth(frank)).status_code == 404

    corrected = harness.client.patch(
        f"/api/meals/{meal_id}",
        json={
            "foods": [
                {"name": "Salmon", "portion": "250g", "protein": 50, "fat": 15},
                {"name": "Greens", "protein": 2.5, "carbs": 6},
            ],
            "notes": "Bigger fillet",
        },
        headers=harness.auth(frank),
    )
    assert corrected.status_code == 200, corrected.text
    body = corrected.json()
    assert body["total_protein"] == 52.5
    assert body["total_carbs"] == 6
    assert body["total_fat"] == 15
    assert body["notes"] == "Bigger fillet"
    assert body["user_corrections"]["foods"][0]["name"] == "Salmon"

    db = harness.session_factory()
    try:
        stored = db.query(MealAnalysis).filter(MealAnalysis.id == meal_id).one()
        assert json.loads(stored.ai_response_raw)["totalProtein"] == 48
    finally:
        db.close()

    share_id = body["share_id"]
    public = harness.client.get(f"/api/meals/{share_id}/public")
    assert public.status_code == 200
    assert public.headers["etag"] == f'"{share_id}"'
    assert "immutable" in public.headers["cache-control"]
    assert public.json()["meal"]["foods"][0]["calories"] == 50 * 4 + 15 * 9

    private = harness.client.patch(
        f"/api/meals/{meal_id}/privacy", json={"is_public": False}, headers=harness.auth(frank)
    )
    assert private.status_code == 200
    assert private.json()["share_url"].endswith(f"/meal/{share_id}")
    assert harness.client.get(f"/api/meals/{share_id}/public").status_code == 404
    assert harness.client.get("/api/meals/bad!/public").status_code == 400

    assert harness.client.delete(f"/api/meals/{meal_id}", headers=harness.auth(grace)).status_code == 403
    harness.storage.fail_deletes = True
    deleted = harness.client.delete(f"/api/meals/{meal_id}", headers=harness.auth(frank))
    assert deleted.status_code == 204
    assert harness.client.get(f"/api/meals/{meal_id}", headers=harness.auth(frank)).status_code == 404


def test_cached_copy_ignores_first_owners_corrections(harness):
    alice = harness.signup_and_signin("alice.edit@example.com")
    bob = harness.signup_and_signin("bob.edit@example.com")
    blob_name = _upload(harness, alice)
    original = harness.client.post("/api/meals/analyze", json={"blob_name": blob_name}, headers=harness.auth(alice))
    meal_id = original.json()["id"]

    edited = harness.client.patch(
        f"/api/meals/{meal_id}",
        json={"foods": [{"name": "Cake", "portion": "1 slice", "protein": 1}], "notes": "alice private diary"},
        headers=harness.auth(alice),
    )
    assert edited.status_code == 200
    assert edited.json()["notes"] == "alice private diary"

    copy = harness.client.post("/api/meals/analyze", json={"blob_name": blob_name}, headers=harness.auth(bob))
    assert copy.status_code == 200, copy.text
    body = copy.json()
    assert body["cached"] is True
    assert body["notes"] == "Balanced plate"
    assert body["total_protein"] == 48
    assert body["user_corrections"] is None
    assert [f["name"] for f in body["foods"]] == ["Grilled Salmon Fillet", "Quinoa"]
    assert len(harness.analyzer.calls) == 1


def test_deleting_one_copy_keeps_photo_for_the_other(harness):
    alice = harness.signup_and_signin("alice.del@example.com")
    bob = harness.signup_and_signin("bob.del@example.com")
    blob_name = _upload(harness, alice)
    alice_meal = harness.client.post(
        "/api/meals/analyze", json={"blob_name": blob_name}, headers=harness.auth(alice)
    ).json()
    bob_meal = harness.client.post("/api/meals/analyze", json={"blob_name": blob_name}, headers=harness.auth(bob)).json()
    assert bob_meal["cached"] is True

    assert harness.client.delete(f"/api/meals/{bob_meal['id']}", headers=harness.auth(bob)).status_code == 204
    assert harness.storage.deleted == []
    still_there = harness.client.get(f"/api/meals/{alice_meal['id']}", headers=harness.auth(alice))
    assert still_there.status_code == 200
    assert still_there.json()["blob_url"] == alice_meal["blob_url"]

    assert harness.client.delete(f"/api/meals/{alice_meal['id']}", headers=harness.auth(alice)).status_code == 204
    assert harness.storage.deleted == [blob_name]
