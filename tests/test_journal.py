from bson import ObjectId

import journal


def _write(client, headers, text, school_id=None):
    body = {"entryText": text}
    if school_id:
        body["schoolId"] = school_id
    return client.post("/journal", json=body, headers=headers)


def test_create_and_list_entries(client, make_user, make_school, db):
    user, headers = make_user()
    school = make_school(name="Glasgow University")
    sid = str(school["_id"])

    created = _write(client, headers, "<p>Walked the campus</p> and prayed", sid)
    assert created.status_code == 201
    entry = created.json()["data"]["entry"]
    assert entry["entryText"] == "Walked the campus and prayed"
    assert entry["school"]["name"] == "Glasgow University"

    _write(client, headers, "General entry")

    everything = client.get("/journal", headers=headers).json()["data"]
    assert everything["count"] == 2
    assert [e["entryText"] for e in everything["entries"]] == ["General entry", "Walked the campus and prayed"]
    assert everything["entries"][0]["school"] is None

    for_school = client.get("/journal", params={"schoolId": sid}, headers=headers).json()["data"]
    assert for_school["count"] == 1

    # journaling counts as praying today
    assert db["user"].find_one({"_id": user["_id"]})["streakCount"] == 1


def test_entries_are_private(client, make_user):
    _, alice = make_user()
    _, bob = make_user()
    _write(client, alice, "Alice's entry")

    assert client.get("/journal", headers=bob).json()["data"]["count"] == 0


def test_create_validation(client, make_user):
    _, headers = make_user()

    empty = _write(client, headers, "<br>")
    assert empty.status_code == 400
    assert empty.json()["error"]["code"] == "MISSING_ENTRY_TEXT"

    too_long = _write(client, headers, "a" * 5001)
    assert too_long.status_code == 400
    assert too_long.json()["error"]["code"] == "ENTRY_TOO_LONG"

    bad_school = _write(client, headers, "text", "zzz")
    assert bad_school.status_code == 400
    assert bad_school.json()["error"]["code"] == "INVALID_SCHOOL_ID"


def test_delete_only_own_entries(client, make_user):
    _, owner = make_user()
    _, other = make_user()
    entry_id = _write(client, owner, "Mine").json()["data"]["entry"]["id"]

    stolen = client.delete(f"/journal/{entry_id}", headers=other)
    assert stolen.status_code == 404
    assert stolen.json()["error"]["code"] == "ENTRY_NOT_FOUND"

    assert client.delete(f"/journal/{entry_id}", headers=owner).status_code == 200
    assert client.get("/journal", headers=owner).json()["data"]["count"] == 0

    again = client.delete(f"/journal/{entry_id}", headers=owner)
    assert again.status_code == 404

    bad = client.delete("/journal/nope", headers=owner)
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "INVALID_ID"


def test_dashboard(client, make_user, make_school):
    _, headers = make_user(name="John Wesley")
    first = make_school(name="Lincoln College", address="Turl Street, Oxford, OX1 3DR")
    second = make_school()
    client.post("/adoptions", json={"schoolId": str(first["_id"])}, headers=headers)
    client.post("/adoptions", json={"schoolId": str(second["_id"]), "adoptionType": "revival"}, headers=headers)
    _write(client, headers, "Holy club meeting", str(first["_id"]))

    resp = client.get("/dashboard", headers=headers)

    assert resp.status_code == 200
    dash = resp.json()["data"]["dashboard"]
    assert dash["user"]["name"] == "John Wesley"
    assert "password_hash" not in dash["user"]
    assert dash["stats"]["schoolsCount"] == 2
    assert dash["stats"]["journalCount"] == 1
    assert dash["stats"]["streakCount"] == 1
    assert dash["stats"]["daysActive"] == 0
    names = {a["name"] for a in dash["adoptions"]}
    assert names == {"Lincoln College", second["name"]}
    assert dash["recentJournals"][0]["entryText"] == "Holy club meeting"


def test_dashboard_requires_auth(client):
    resp = client.get("/dashboard")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_TOKEN_MISSING"


def test_impact_report_counts_this_month(client, make_user, make_school):
    _, headers = make_user()
    sid = str(make_school()["_id"])
    client.post("/adoptions", json={"schoolId": sid}, headers=headers)
    _write(client, headers, "Prayed on the steps", sid)
    request_id = client.post(
        "/prayer-requests", json={"schoolId": sid, "content": "Pray for the CU mission week"}, headers=headers,
    ).json()["data"]["request"]["id"]
    client.patch("/prayer-requests/answer", json={"requestId": request_id, "answerNote": "Forty came to faith"}, headers=headers)

    resp = client.get(f"/schools/{sid}/impact")

    assert resp.status_code == 200
    report = resp.json()["data"]["report"]
    assert report["newAdoptions"] == 1
    assert report["newJournals"] == 1
    assert report["answeredPrayers"] == 1
    assert report["highlights"] == ["Forty came to faith"]
    assert client.get(f"/schools/{ObjectId()}/impact").status_code == 404


def test_streak_failure_does_not_fail_journaling(client, make_user, monkeypatch):
    _, headers = make_user()

    def broken_streak(user, now=None):
        raise TypeError("streakCount is not a number")

    monkeypatch.setattr(journal, "update_streak", broken_streak)

    resp = _write(client, headers, "Still written")

    assert resp.status_code == 201
    assert client.get("/journal", headers=headers).json()["data"]["count"] == 1
