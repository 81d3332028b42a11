TIP = {
    "category": "Study Skills",
    "level": "Easy",
    "title": "Spaced repetition",
    "description": "Review formulas every few days instead of cramming.",
    "subject": "Physics",
}


def _create(client, teacher, **overrides):
    return client.post("/api/v1/tips", json={**TIP, **overrides}, headers=teacher["headers"])


def test_create_and_list_tips(client, teacher, student):
    r = _create(client, teacher)
    assert r.status_code == 201, r.text
    tip = r.json()["data"]
    assert tip["createdBy"] == {"id": teacher["id"], "name": "Tigist Alemu", "subject": "Physics"}
    assert tip["likes"] == 0 and tip["dislikes"] == 0

    listed = client.get("/api/v1/tips", params={"subject": "physics"}, headers=student["headers"]).json()["data"]
    assert any(t["id"] == tip["id"] for t in listed)
    assert all(t["subject"] == "Physics" for t in listed)

    activity = client.get("/api/v1/teachers/me/activity", headers=teacher["headers"]).json()["data"]
    assert activity[0]["activityType"] == "tip_added"


def test_tip_validation(client, teacher, student):
    assert _create(client, teacher, category="Gossip").status_code == 400
    assert _create(client, teacher, level="Impossible").status_code == 400
    assert _create(client, teacher, title="Hey").status_code == 400
    assert _create(client, teacher, description="Too short").status_code == 400
    assert _create(client, teacher, subject="Chemistry").status_code == 403
    assert _create(client, student).status_code == 403


def test_like_and_dislike_rules(client, teacher, make_student):
    tip = _create(client, teacher).json()["data"]
    fan = make_student()
    critic = make_student()
    url = f"/api/v1/tips/{tip['id']}"

    r = client.put(url, json={"action": "like"}, headers=fan["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["likes"] == 1
    assert r.json()["data"]["myReaction"] == "like"

    r = client.put(url, json={"action": "like"}, headers=fan["headers"])
    assert r.status_code == 400
    assert r.json()["message"] == "You have already liked this tip"
    r = client.put(url, json={"action": "dislike"}, headers=fan["headers"])
    assert r.status_code == 400
    assert r.json()["message"] == "You cannot dislike a tip you have liked"

    r = client.put(url, json={"action": "dislike"}, headers=critic["headers"])
    assert r.json()["data"]["dislikes"] == 1
    r = client.put(url, json={"action": "like"}, headers=critic["headers"])
    assert r.json()["message"] == "You cannot like a tip you have disliked"

    assert client.put(url, json={"action": "love"}, headers=fan["headers"]).status_code == 400
    assert client.put(url, json={"action": "like"}, headers=teacher["headers"]).status_code == 403
    assert client.put("/api/v1/tips/999999", json={"action": "like"}, headers=fan["headers"]).status_code == 404

    listed = client.get("/api/v1/tips", headers=critic["headers"]).json()["data"]
    mine = next(t for t in listed if t["id"] == tip["id"])
    assert (mine["likes"], mine["dislikes"], mine["myReaction"]) == (1, 1, "dislike")


def test_owner_update_and_delete(client, teacher, make_teacher, student):
    tip = _create(client, teacher).json()["data"]
    url = f"/api/v1/tips/{tip['id']}"
    other = make_teacher(subject="Physics")

    updated = {**TIP, "title": "Active recall", "level": "Medium"}
    assert client.put(url, json=updated, headers=other["headers"]).status_code == 403
    assert client.put(url, json=updated, headers=student["headers"]).status_code == 403
    assert client.put(url, json={"title": "Only a title"}, headers=teacher["headers"]).status_code == 400
    assert client.put(url, json={**updated, "subject": "Biology"}, headers=teacher["headers"]).status_code == 403

    r = client.put(url, json=updated, headers=teacher["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["title"] == "Active recall"
    assert r.json()["data"]["level"] == "Medium"

    r = client.delete(url, headers=other["headers"])
    assert r.status_code == 404
    assert r.json()["message"] == "Study tip not found or unauthorized"
    assert client.delete(url, headers=teacher["headers"]).status_code == 200
    assert client.delete(url, headers=teacher["headers"]).status_code == 404

    kinds = [a["activityType"] for a in client.get("/api/v1/teachers/me/activity", headers=teacher["headers"]).json()["data"]]
    assert kinds[:3] == ["tip_deleted", "tip_updated", "tip_added"]
