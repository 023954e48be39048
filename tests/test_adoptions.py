import threading
from concurrent.futures import ThreadPoolExecutor

import mongomock
from bson import ObjectId

import adoptions
import schools


def _adopt(client, headers, school_id, adoption_type=None):
    body = {"schoolId": school_id}
    if adoption_type:
        body["adoptionType"] = adoption_type
    return client.post("/adoptions", json=body, headers=headers)


def test_first_adoption_succeeds(client, make_user, make_school, db):
    user, headers = make_user()
    school = make_school()
    sid = str(school["_id"])
    schools.add_adopter(sid, str(ObjectId()), "prayer")

    resp = _adopt(client, headers, sid, "both")

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    data = body["data"]
    assert data["schoolStats"] == {"totalAdopters": 2, "adoptionCount": 2}
    assert data["adoption"]["schoolId"] == sid
    assert data["adoption"]["userId"] == str(user["_id"])
    assert data["adoption"]["adoptionType"] == "both"
    assert data["adoption"]["school"]["name"] == school["name"]

    doc = db["school"].find_one({"_id": school["_id"]})
    assert doc["stats"]["totalPrayerAdoptions"] == 2
    assert doc["stats"]["totalRevivalAdoptions"] == 1
    assert db["adoption"].count_documents({"schoolId": sid}) == 1


def test_adoption_defaults_to_prayer_and_starts_streak(client, make_user, make_school, db):
    user, headers = make_user()
    sid = str(make_school()["_id"])

    resp = _adopt(client, headers, sid)

    assert resp.status_code == 201
    assert resp.json()["data"]["adoption"]["adoptionType"] == "prayer"
    assert db["user"].find_one({"_id": user["_id"]})["streakCount"] == 1


def test_repeat_adoption_conflicts(client, make_user, make_school, db):
    _, headers = make_user()
    sid = str(make_school()["_id"])

    first = _adopt(client, headers, sid)
    second = _adopt(client, headers, sid)

    assert first.status_code == 201
    assert second.status_code == 409
    assert second.json() == {
        "success": False,
        "error": {"code": "ALREADY_ADOPTED", "message": "You have already adopted this school."},
    }
    doc = db["school"].find_one({"_id": ObjectId(sid)})
    assert doc["adoptionCount"] == first.json()["data"]["schoolStats"]["adoptionCount"] == 1
    assert db["adoption"].count_documents({"schoolId": sid}) == 1


def test_lost_race_on_ledger_is_already_adopted(client, make_user, make_school, db):
    # A concurrent request already wrote the ledger row but has not reached the school yet
    user, headers = make_user()
    sid = str(make_school()["_id"])
    db["adoption"].insert_one({"userId": str(user["_id"]), "schoolId": sid, "adoptionType": "prayer"})

    resp = _adopt(client, headers, sid)

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "ALREADY_ADOPTED"
    assert db["adoption"].count_documents({"schoolId": sid}) == 1
    assert db["school"].find_one({"_id": ObjectId(sid)})["adoptionCount"] == 0


def test_concurrent_identical_adoptions(client, make_user, make_school, db, monkeypatch):
    _, headers = make_user()
    sid = str(make_school()["_id"])
    # MongoDB applies each write atomically, unique index check included; mongomock does not
    lock = threading.RLock()

    def atomic(method):
        def wrapper(self, *args, **kwargs):
            with lock:
                return method(self, *args, **kwargs)
        return wrapper

    for name in ("insert_one", "update_one", "find_one_and_update"):
        monkeypatch.setattr(mongomock.collection.Collection, name, atomic(getattr(mongomock.collection.Collection, name)))

    with ThreadPoolExecutor(max_workers=5) as pool:
        statuses = list(pool.map(lambda _: _adopt(client, headers, sid).status_code, range(5)))

    assert sorted(statuses) == [201, 409, 409, 409, 409]
    assert db["adoption"].count_documents({"schoolId": sid}) == 1
    doc = db["school"].find_one({"_id": ObjectId(sid)})
    assert len(doc["adopters"]) == 1
    assert doc["adoptionCount"] == 1


def test_streak_failure_does_not_fail_adoption(client, make_user, make_school, db, monkeypatch):
    _, headers = make_user()
    sid = str(make_school()["_id"])

    def broken_streak(user, now=None):
        raise ValueError("bad lastPrayerDate")

    monkeypatch.setattr(adoptions, "update_streak", broken_streak)

    resp = _adopt(client, headers, sid)

    assert resp.status_code == 201
    assert resp.json()["data"]["schoolStats"] == {"totalAdopters": 1, "adoptionCount": 1}
    assert db["adoption"].count_documents({"schoolId": sid}) == 1


def test_full_school_reports_partial_failure(client, make_user, make_school, db):
    user, headers = make_user()
    sid = str(make_school()["_id"])
    full = [{"userId": str(ObjectId()), "adoptionType": "prayer"} for _ in range(schools.MAX_ADOPTERS)]
    db["school"].update_one({"_id": ObjectId(sid)}, {"$set": {"adopters": full, "adoptionCount": len(full)}})

    resp = _adopt(client, headers, sid)

    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["code"] == "PARTIAL_FAILURE"
    assert error["details"]["committed"] == "ledger"
    # the ledger row stays for an admin to reconcile
    assert db["adoption"].count_documents({"userId": str(user["_id"]), "schoolId": sid}) == 1
    assert db["school"].find_one({"_id": ObjectId(sid)})["adoptionCount"] == 500


def test_invalid_input(client, make_user, make_school):
    _, headers = make_user()
    sid = str(make_school()["_id"])

    bad_id = _adopt(client, headers, "not-an-id")
    assert bad_id.status_code == 400
    assert bad_id.json()["error"]["code"] == "INVALID_SCHOOL_ID"

    missing_id = client.post("/adoptions", json={}, headers=headers)
    assert missing_id.status_code == 400
    assert missing_id.json()["error"]["code"] == "INVALID_SCHOOL_ID"

    bad_type = _adopt(client, headers, sid, "fasting")
    assert bad_type.status_code == 400
    assert bad_type.json()["error"]["code"] == "INVALID_ADOPTION_TYPE"


def test_unknown_or_archived_school(client, make_user, make_school):
    _, headers = make_user()
    archived = make_school(status="archived")

    for sid in (str(ObjectId()), str(archived["_id"])):
        resp = _adopt(client, headers, sid)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "SCHOOL_NOT_FOUND"


def test_adoption_requires_auth(client, make_school):
    sid = str(make_school()["_id"])
    resp = client.post("/adoptions", json={"schoolId": sid})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_TOKEN_MISSING"

    resp = client.post("/adoptions", json={"schoolId": sid}, headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_TOKEN_INVALID"


def test_adoption_rate_limit(client, make_user, make_school):
    _, headers = make_user()
    school_ids = [str(make_school()["_id"]) for _ in range(11)]

    statuses = [_adopt(client, headers, sid).status_code for sid in school_ids]

    assert statuses[:10] == [201] * 10
    assert statuses[10] == 429
    last = _adopt(client, headers, school_ids[0])
    assert last.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert last.json()["error"]["retryAfter"] > 0
    assert int(last.headers["Retry-After"]) > 0


def test_list_my_adoptions_newest_first(client, make_user, make_school):
    _, headers = make_user()
    first = make_school(name="First University")
    second = make_school(name="Second University")
    _adopt(client, headers, str(first["_id"]))
    _adopt(client, headers, str(second["_id"]), "revival")

    resp = client.get("/adoptions", headers=headers)

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["count"] == 2
    assert [a["school"]["name"] for a in data["adoptions"]] == ["Second University", "First University"]


def test_list_adoptions_requires_auth(client):
    assert client.get("/adoptions").status_code == 401


def test_school_adopters_endpoint(client, make_user, make_school, db):
    sid = str(make_school(name="Busy University", address="1 Quad, Bath, BA1 1AA")["_id"])
    for _ in range(3):
        _, headers = make_user()
        assert _adopt(client, headers, sid).status_code == 201
    db["school"].update_one({"_id": ObjectId(sid)}, {"$set": {"adoptionCount": 42}})

    resp = client.get(f"/schools/{sid}/adopters")

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["school"] == {"id": sid, "name": "Busy University", "address": "1 Quad, Bath, BA1 1AA"}
    assert data["totalAdopters"] == 3
    assert len(data["adopters"]) == 3
    assert data["adoptionCount"] == 42


def test_school_adopters_not_found(client):
    resp = client.get(f"/schools/{ObjectId()}/adopters")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "SCHOOL_NOT_FOUND"


def test_admin_purge_and_reconcile(client, make_user, make_school, db):
    user, headers = make_user()
    _, admin_headers = make_user(role="admin")
    sid = str(make_school()["_id"])
    _adopt(client, headers, sid)

    assert client.delete(f"/schools/{sid}/adopters/{user['_id']}", headers=headers).status_code == 403

    purged = client.delete(f"/schools/{sid}/adopters/{user['_id']}", headers=admin_headers)
    assert purged.json()["data"] == {"removed": True}
    again = client.delete(f"/schools/{sid}/adopters/{user['_id']}", headers=admin_headers)
    assert again.json()["data"] == {"removed": False}
    assert db["school"].find_one({"_id": ObjectId(sid)})["adoptionCount"] == 0

    resp = client.post(f"/schools/{sid}/reconcile", headers=admin_headers)

    assert resp.status_code == 200
    assert resp.json()["data"]["adoptionCount"] == 1
    assert resp.json()["data"]["totalAdopters"] == 1


def test_public_activity(client, make_user, make_school):
    _, headers = make_user(name="Ada Lovelace")
    sid = str(make_school(name="Analytical University", address="1 Engine Way, Cambridge, CB1")["_id"])
    _adopt(client, headers, sid, "revival")

    activity = client.get("/public/activity").json()["data"]["activity"]

    assert activity[0]["userName"] == "Ada Lovelace"
    assert activity[0]["schoolName"] == "Analytical University"
    assert activity[0]["city"] == "Cambridge"
    assert activity[0]["type"] == "revival"
