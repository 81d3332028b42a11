import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import make_png_bytes


def _room(client, teacher, **body):
    body.setdefault("name", "Study room")
    r = client.post("/api/v1/chat/rooms", json=body, headers=teacher["headers"])
    assert r.status_code == 201, r.text
    return r.json()["data"]


def test_room_visibility_follows_stream(client, teacher, make_student):
    physics = _room(client, teacher, name="Physics Q&A", subject="Physics")
    history = _room(client, teacher, name="History club", subject="History")
    general = _room(client, teacher, name="Lobby")
    natural = make_student(stream="Natural")

    ids = {r["id"] for r in client.get("/api/v1/chat/rooms", headers=natural["headers"]).json()["data"]}
    assert physics["id"] in ids and general["id"] in ids
    assert history["id"] not in ids
    teacher_ids = {r["id"] for r in client.get("/api/v1/chat/rooms", headers=teacher["headers"]).json()["data"]}
    assert {physics["id"], history["id"], general["id"]} <= teacher_ids

    assert client.get(f"/api/v1/chat/rooms/{history['id']}", headers=natural["headers"]).status_code == 403
    assert client.get("/api/v1/chat/rooms/999999", headers=natural["headers"]).status_code == 404
    assert client.post("/api/v1/chat/rooms", json={"name": "x"}, headers=natural["headers"]).status_code == 403


def test_join_leave_and_room_details(client, teacher, student):
    room = _room(client, teacher, subject="Physics")
    assert room["participantCount"] == 1 and room["isJoined"] is True

    r = client.post(f"/api/v1/chat/rooms/{room['id']}/join", headers=student["headers"])
    assert r.status_code == 200
    assert r.json()["alreadyJoined"] is False
    assert r.json()["data"]["participantCount"] == 2
    r = client.post(f"/api/v1/chat/rooms/{room['id']}/join", headers=student["headers"])
    assert r.json()["alreadyJoined"] is True

    details = client.get(f"/api/v1/chat/rooms/{room['id']}", headers=student["headers"]).json()["data"]
    assert [p["role"] for p in details["participants"]] == ["teacher", "student"]
    assert details["participants"][1]["name"] == "Abebe Kebede"
    assert details["moderators"] == [teacher["id"]]

    latest = client.get("/api/v1/user-activity/latest", headers=student["headers"]).json()["data"]
    assert latest[0]["activityType"] == "chatroom_joined"
    assert latest[0]["resourceId"] == str(room["id"])

    assert client.post(f"/api/v1/chat/rooms/{room['id']}/leave", headers=student["headers"]).status_code == 200
    assert client.post(f"/api/v1/chat/rooms/{room['id']}/leave", headers=student["headers"]).status_code == 404


def test_sending_requires_membership_and_content(client, teacher, student):
    room = _room(client, teacher, subject="Physics")
    r = client.post("/api/v1/chat/messages", json={"roomId": room["id"], "content": "hello"}, headers=student["headers"])
    assert r.status_code == 403
    assert r.json()["message"] == "You must join the chat room before sending messages"
    assert client.post("/api/v1/chat/messages", json={"roomId": 999999, "content": "hi"},
                       headers=student["headers"]).status_code == 404

    client.post(f"/api/v1/chat/rooms/{room['id']}/join", headers=student["headers"])
    assert client.post("/api/v1/chat/messages", json={"roomId": room["id"], "content": "   "},
                       headers=student["headers"]).status_code == 400
    for text in ("first", "second"):
        r = client.post("/api/v1/chat/messages", json={"roomId": room["id"], "content": text}, headers=student["headers"])
        assert r.status_code == 201
    msg = r.json()["data"]
    assert msg["sender"] == {"userId": student["id"], "role": "student", "name": "Abebe Kebede"}

    messages = client.get(f"/api/v1/chat/rooms/{room['id']}/messages", headers=teacher["headers"]).json()["data"]
    assert [m["content"] for m in messages] == ["first", "second"]


def test_image_messages(client, teacher, student):
    room = _room(client, teacher, subject="Physics")
    files = {"image": ("pic.png", make_png_bytes(), "image/png")}
    r = client.post("/api/v1/chat/messages/image", data={"roomId": str(room["id"])}, files=files,
                    headers=student["headers"])
    assert r.status_code == 403

    client.post(f"/api/v1/chat/rooms/{room['id']}/join", headers=student["headers"])
    r = client.post("/api/v1/chat/messages/image", data={"roomId": str(room["id"]), "content": "look"}, files=files,
                    headers=student["headers"])
    assert r.status_code == 201
    data = r.json()["data"]
    assert data["imageUrl"].startswith("/uploads/chat-images/")
    assert data["content"] == "look"

    bad = {"image": ("pic.png", b"nope", "image/png")}
    r = client.post("/api/v1/chat/messages/image", data={"roomId": str(room["id"])}, files=bad, headers=student["headers"])
    assert r.status_code == 415


def test_moderation(client, teacher, make_teacher, student):
    room = _room(client, teacher, subject="Physics")
    client.post(f"/api/v1/chat/rooms/{room['id']}/join", headers=student["headers"])
    msg = client.post("/api/v1/chat/messages", json={"roomId": room["id"], "content": "spam"},
                      headers=student["headers"]).json()["data"]

    outsider = make_teacher(subject="Physics")
    assert client.post(f"/api/v1/chat/messages/{msg['id']}/moderate", headers=student["headers"]).status_code == 403
    assert client.post(f"/api/v1/chat/messages/{msg['id']}/moderate", headers=outsider["headers"]).status_code == 403
    assert client.post("/api/v1/chat/messages/999999/moderate", headers=teacher["headers"]).status_code == 404

    r = client.post(f"/api/v1/chat/rooms/{room['id']}/moderators", json={"teacherId": outsider["id"]},
                    headers=outsider["headers"])
    assert r.status_code == 403
    r = client.post(f"/api/v1/chat/rooms/{room['id']}/moderators", json={"teacherId": outsider["id"]},
                    headers=teacher["headers"])
    assert r.json()["data"] == [teacher["id"], outsider["id"]]

    r = client.post(f"/api/v1/chat/messages/{msg['id']}/moderate", headers=outsider["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["moderatedBy"] == outsider["id"]
    messages = client.get(f"/api/v1/chat/rooms/{room['id']}/messages", headers=student["headers"]).json()["data"]
    assert messages == []


def test_socket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws?token=garbage"):
            pass
    assert exc.value.code == 1008


def test_socket_presence_and_broadcast(client, teacher, student):
    room = _room(client, teacher, subject="Physics")
    client.post(f"/api/v1/chat/rooms/{room['id']}/join", headers=student["headers"])

    with client.websocket_connect(f"/ws?token={student['token']}") as ws:
        ws.send_json({"event": "join_room", "data": {"roomId": room["id"]}})
        assert ws.receive_json() == {"event": "active_users_count", "data": 1}

        with client.websocket_connect(f"/ws?token={teacher['token']}") as tws:
            tws.send_json({"event": "join_room", "data": room["id"]})
            assert tws.receive_json() == {"event": "active_users_count", "data": 2}
            assert ws.receive_json() == {"event": "active_users_count", "data": 2}

            r = client.post("/api/v1/chat/messages", json={"roomId": room["id"], "content": "live"},
                            headers=student["headers"])
            assert r.status_code == 201
            for sock in (ws, tws):
                frame = sock.receive_json()
                assert frame["event"] == "receive_message"
                assert frame["data"]["content"] == "live"

            r = client.post(f"/api/v1/chat/messages/{r.json()['data']['id']}/moderate", headers=teacher["headers"])
            assert r.status_code == 200
            frame = ws.receive_json()
            assert frame == {"event": "message_moderated",
                             "data": {"messageId": r.json()["data"]["messageId"], "moderatedBy": teacher["id"]}}
            assert tws.receive_json()["event"] == "message_moderated"

        assert ws.receive_json() == {"event": "active_users_count", "data": 1}

        ws.send_json({"event": "get_active_users", "data": {"roomId": room["id"]}})
        assert ws.receive_json() == {"event": "active_users_count", "data": 1}

        ws.send_json({"event": "join_room", "data": {"roomId": 999999}})
        frame = ws.receive_json()
        assert frame["event"] == "error"

        ws.send_json({"event": "leave_room", "data": {"roomId": room["id"]}})
        ws.send_json({"event": "get_active_users", "data": room["id"]})
        assert ws.receive_json() == {"event": "active_users_count", "data": 0}


def test_socket_join_respects_stream_visibility(client, make_teacher, make_student):
    history_teacher = make_teacher(subject="History")
    room = _room(client, history_teacher, name="History only", subject="History")
    client.post(f"/api/v1/chat/rooms/{room['id']}/join", headers=history_teacher["headers"])
    natural = make_student(stream="Natural")
    assert client.get(f"/api/v1/chat/rooms/{room['id']}/messages", headers=natural["headers"]).status_code == 403

    with client.websocket_connect(f"/ws?token={natural['token']}") as ws:
        ws.send_json({"event": "join_room", "data": {"roomId": room["id"]}})
        assert ws.receive_json() == {
            "event": "error",
            "data": {"message": "This chat room is not available for your stream", "roomId": room["id"]},
        }
        r = client.post("/api/v1/chat/messages", json={"roomId": room["id"], "content": "private"},
                        headers=history_teacher["headers"])
        assert r.status_code == 201
        ws.send_json({"event": "get_active_users", "data": room["id"]})
        assert ws.receive_json() == {"event": "active_users_count", "data": 0}
