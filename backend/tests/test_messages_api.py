"""Tests for the HTTP fallback endpoints, push-token registration and health."""
import asyncio

import pytest


def send_community(client, content, user_id="alice", **extra):
    return client.post(
        "/communities/c1/messages",
        json={"userId": user_id, "content": content, **extra},
    )


def send_direct(client, content, user_id="alice", peer_id="bob", **extra):
    return client.post(
        f"/direct/{user_id}/{peer_id}/messages",
        json={"content": content, **extra},
    )


class TestCommunityMessages:
    """Tests for /communities/{community_id}/messages."""

    def test_send_and_read_history(self, api_client):
        response = send_community(api_client, "hello climbers")

        assert response.status_code == 201
        body = response.json()
        assert body["duplicate"] is False
        assert body["message"]["conversationId"] == "community:c1"
        assert body["message"]["senderId"] == "alice"
        assert body["message"]["status"] == "sent"
        assert body["message"]["totalRecipients"] == 2

        history = api_client.get("/communities/c1/messages", params={"userId": "bob"})
        assert history.status_code == 200
        page = history.json()
        assert page["hasMore"] is False
        assert [m["content"] for m in page["messages"]] == ["hello climbers"]

    def test_history_pagination(self, api_client):
        sent = [send_community(api_client, f"m{i}").json()["message"] for i in range(5)]

        first = api_client.get(
            "/communities/c1/messages", params={"userId": "alice", "limit": 2}
        ).json()
        assert [m["content"] for m in first["messages"]] == ["m3", "m4"]
        assert first["hasMore"] is True

        older = api_client.get(
            "/communities/c1/messages",
            params={"userId": "alice", "limit": 2, "before": first["messages"][0]["ts"]},
        ).json()
        assert [m["content"] for m in older["messages"]] == ["m1", "m2"]
        assert older["hasMore"] is True
        assert sent[0]["id"] not in {m["id"] for m in first["messages"] + older["messages"]}

    def test_history_pages_by_message_id(self, api_client):
        sent = [send_community(api_client, f"m{i}").json()["message"]["id"] for i in range(5)]

        seen = []
        params = {"userId": "alice", "limit": 2}
        while True:
            page = api_client.get("/communities/c1/messages", params=params).json()
            seen = [m["id"] for m in page["messages"]] + seen
            if not page["hasMore"]:
                break
            params["beforeId"] = page["messages"][0]["id"]

        assert seen == sent

    def test_history_unknown_cursor(self, api_client):
        response = api_client.get(
            "/communities/c1/messages", params={"userId": "alice", "beforeId": "missing"}
        )

        assert response.status_code == 404

    def test_history_requires_user(self, api_client):
        response = api_client.get("/communities/c1/messages")

        assert response.status_code == 422

    def test_non_member_is_forbidden(self, api_client):
        response = send_community(api_client, "let me in", user_id="dave")

        assert response.status_code == 403
        assert response.json() == {"error": "Forbidden", "code": "forbidden"}

        history = api_client.get("/communities/c1/messages", params={"userId": "dave"})
        assert history.status_code == 403

    def test_unknown_community(self, api_client):
        response = api_client.post(
            "/communities/nope/messages", json={"userId": "alice", "content": "hi"}
        )

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_missing_user_id(self, api_client):
        response = api_client.post("/communities/c1/messages", json={"content": "hi"})

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_empty_message_is_rejected(self, api_client):
        response = send_community(api_client, "   ")

        assert response.status_code == 400
        assert api_client.app.state.hub.store.count() == 0

    def test_invalid_json_body(self, api_client):
        response = api_client.post(
            "/communities/c1/messages",
            content=b"{broken",
            headers={"content-type": "application/json"},
        )

        assert response.status_code == 400

    def test_retry_with_same_client_id_is_not_duplicated(self, api_client):
        first = send_community(api_client, "once", clientMessageId="tmp-1")
        retry = send_community(api_client, "once", clientMessageId="tmp-1")

        assert first.status_code == 201
        assert retry.status_code == 200
        assert retry.json()["duplicate"] is True
        assert retry.json()["message"]["id"] == first.json()["message"]["id"]
        assert api_client.app.state.hub.store.count("community:c1") == 1

    def test_mark_read(self, api_client):
        first = send_community(api_client, "one").json()["message"]
        send_community(api_client, "two")

        response = api_client.patch(
            "/communities/c1/messages/read",
            json={"userId": "bob", "messageIds": [first["id"]]},
        )
        assert response.status_code == 200
        assert response.json() == {"read": [first["id"]], "count": 1}

        rest = api_client.patch("/communities/c1/messages/read", json={"userId": "bob"})
        assert rest.json()["count"] == 1

        again = api_client.patch("/communities/c1/messages/read", json={"userId": "bob"})
        assert again.json() == {"read": [], "count": 0}

    def test_sender_deletes_for_everyone(self, api_client):
        message = send_community(api_client, "oops").json()["message"]

        response = api_client.request(
            "DELETE",
            "/communities/c1/messages",
            json={"userId": "alice", "messageIds": [message["id"]]},
        )

        assert response.status_code == 200
        assert response.json() == {"deleted": [message["id"]], "scope": "everyone"}
        history = api_client.get("/communities/c1/messages", params={"userId": "bob"})
        assert history.json()["messages"] == []

    def test_member_cannot_delete_others_message(self, api_client):
        message = send_community(api_client, "mine", user_id="bob").json()["message"]

        response = api_client.request(
            "DELETE",
            "/communities/c1/messages",
            json={"userId": "carol", "messageIds": [message["id"]]},
        )

        assert response.status_code == 403

    def test_owner_deletes_any_message(self, api_client):
        message = send_community(api_client, "spam", user_id="carol").json()["message"]

        response = api_client.request(
            "DELETE",
            "/communities/c1/messages",
            json={"userId": "alice", "messageIds": [message["id"]]},
        )

        assert response.status_code == 200
        assert response.json()["deleted"] == [message["id"]]

    def test_delete_for_me(self, api_client):
        message = send_community(api_client, "noise").json()["message"]

        response = api_client.request(
            "DELETE",
            "/communities/c1/messages",
            json={"userId": "bob", "messageIds": [message["id"]], "scope": "me"},
        )

        assert response.json() == {"deleted": [message["id"]], "scope": "me"}
        bob = api_client.get("/communities/c1/messages", params={"userId": "bob"}).json()
        carol = api_client.get("/communities/c1/messages", params={"userId": "carol"}).json()
        assert bob["messages"] == []
        assert len(carol["messages"]) == 1

    def test_delete_unknown_message(self, api_client):
        response = api_client.request(
            "DELETE",
            "/communities/c1/messages",
            json={"userId": "alice", "messageIds": ["missing"]},
        )

        assert response.status_code == 404

    def test_delete_requires_ids(self, api_client):
        response = api_client.request(
            "DELETE",
            "/communities/c1/messages",
            json={"userId": "alice", "messageIds": []},
        )

        assert response.status_code == 400


class TestMultipartUpload:
    """Sending attachments through multipart bodies."""

    def test_image_upload(self, api_client):
        response = api_client.post(
            "/communities/c1/messages",
            data={"userId": "alice"},
            files={"image": ("cat photo.png", b"\x89PNG fake image", "image/png")},
        )

        assert response.status_code == 201
        message = response.json()["message"]
        assert message["type"] == "image"
        assert message["content"] == "Photo"
        assert message["media"]["type"] == "image"
        assert message["media"]["fileSize"] == len(b"\x89PNG fake image")
        assert message["media"]["url"].startswith("http://testserver/uploads/cat_photo-")
        assert message["media"]["url"].endswith(".png")

        stored_name = message["media"]["url"].rsplit("/", 1)[1]
        stored = api_client.app.state.hub.media.upload_dir / stored_name
        assert stored.read_bytes() == b"\x89PNG fake image"

    def test_video_upload_with_caption(self, api_client):
        response = api_client.post(
            "/direct/alice/bob/messages",
            data={"content": "look"},
            files={"video": ("clip.mp4", b"fake video", "video/mp4")},
        )

        assert response.status_code == 201
        message = response.json()["message"]
        assert message["type"] == "video"
        assert message["content"] == "look"

    def test_oversized_upload(self, api_client):
        response = api_client.post(
            "/communities/c1/messages",
            data={"userId": "alice"},
            files={"image": ("big.png", b"x" * 2048, "image/png")},
        )

        assert response.status_code == 413
        assert response.json()["code"] == "media_too_large"
        assert api_client.app.state.hub.store.count() == 0

    def test_disallowed_type(self, api_client):
        response = api_client.post(
            "/communities/c1/messages",
            data={"userId": "alice"},
            files={"file": ("notes.pdf", b"%PDF-1.4", "application/pdf")},
        )

        assert response.status_code == 400

    @pytest.mark.parametrize("fields", [
        {"userId": "alice", "content": "x" * 6000},
        {"userId": "alice", "type": "sticker"},
    ])
    def test_rejected_send_leaves_no_upload(self, api_client, fields):
        response = api_client.post(
            "/communities/c1/messages",
            data=fields,
            files={"image": ("a.png", b"abc", "image/png")},
        )

        assert response.status_code == 400
        upload_dir = api_client.app.state.hub.media.upload_dir
        assert not upload_dir.exists() or list(upload_dir.iterdir()) == []
        assert api_client.app.state.hub.store.count() == 0

    def test_store_failure_leaves_no_upload(self, api_client, monkeypatch):
        hub = api_client.app.state.hub

        def broken_append(message):
            raise RuntimeError("disk full")

        monkeypatch.setattr(hub.store, "append", broken_append)
        response = api_client.post(
            "/communities/c1/messages",
            data={"userId": "alice"},
            files={"image": ("a.png", b"abc", "image/png")},
        )

        assert response.status_code == 503
        assert list(hub.media.upload_dir.iterdir()) == []

    def test_retried_upload_keeps_single_file(self, api_client):
        def upload():
            return api_client.post(
                "/communities/c1/messages",
                data={"userId": "alice", "clientMessageId": "tmp-1"},
                files={"image": ("a.png", b"abc", "image/png")},
            )

        first = upload()
        retry = upload()

        assert retry.status_code == 200
        assert retry.json()["message"]["media"]["url"] == first.json()["message"]["media"]["url"]
        assert len(list(api_client.app.state.hub.media.upload_dir.iterdir())) == 1

    def test_non_member_upload_is_not_stored(self, api_client):
        response = api_client.post(
            "/communities/c1/messages",
            data={"userId": "dave"},
            files={"image": ("cat.png", b"fake", "image/png")},
        )

        assert response.status_code == 403
        upload_dir = api_client.app.state.hub.media.upload_dir
        assert not upload_dir.exists() or list(upload_dir.iterdir()) == []


class TestDirectMessages:
    """Tests for /direct/{user_id}/{peer_id}/messages."""

    def test_send_and_read_history(self, api_client):
        response = send_direct(api_client, "hi bob")

        assert response.status_code == 201
        message = response.json()["message"]
        assert message["conversationId"] == "dm:alice:bob"
        assert message["recipientId"] == "bob"
        assert message["isRead"] is False

        history = api_client.get("/direct/bob/alice/messages").json()
        assert [m["id"] for m in history["messages"]] == [message["id"]]

    def test_body_user_must_match_path(self, api_client):
        response = api_client.post(
            "/direct/alice/bob/messages", json={"userId": "carol", "content": "hi"}
        )

        assert response.status_code == 403

    def test_unknown_peer(self, api_client):
        response = send_direct(api_client, "hello?", peer_id="ghost")

        assert response.status_code == 404

    def test_thread_with_oneself(self, api_client):
        response = send_direct(api_client, "note to self", peer_id="alice")

        assert response.status_code == 400

    def test_mark_read_updates_status(self, api_client):
        message = send_direct(api_client, "hi bob").json()["message"]

        response = api_client.patch("/direct/bob/alice/messages/read", json={})
        assert response.json() == {"read": [message["id"]], "count": 1}

        history = api_client.get("/direct/alice/bob/messages").json()
        seen = history["messages"][0]
        assert seen["isRead"] is True
        assert seen["status"] == "read"
        assert seen["readBy"] == ["bob"]

    def test_only_sender_deletes_for_everyone(self, api_client):
        message = send_direct(api_client, "secret").json()["message"]

        forbidden = api_client.request(
            "DELETE", "/direct/bob/alice/messages", json={"messageIds": [message["id"]]}
        )
        assert forbidden.status_code == 403

        allowed = api_client.request(
            "DELETE", "/direct/alice/bob/messages", json={"messageIds": [message["id"]]}
        )
        assert allowed.status_code == 200
        assert api_client.get("/direct/bob/alice/messages").json()["messages"] == []

    def test_conversation_list(self, api_client):
        send_direct(api_client, "to bob")
        send_direct(api_client, "to carol", peer_id="carol")
        send_direct(api_client, "bob replies", user_id="bob", peer_id="alice")

        response = api_client.get("/direct/alice/conversations")

        assert response.status_code == 200
        conversations = response.json()["conversations"]
        assert [c["peerId"] for c in conversations] == ["bob", "carol"]
        assert conversations[0]["lastMessage"]["content"] == "bob replies"
        assert conversations[0]["unreadCount"] == 1
        assert conversations[1]["unreadCount"] == 0

    def test_conversation_list_unknown_user(self, api_client):
        response = api_client.get("/direct/ghost/conversations")

        assert response.status_code == 404


class TestPushTokens:
    """Tests for POST /notifications/register-token."""

    def test_register(self, api_client):
        response = api_client.post(
            "/notifications/register-token",
            json={"userId": "bob", "pushToken": "tok-1", "platform": "ios"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "message": "Push token registered successfully",
            "data": {"userId": "bob", "hasPushToken": True},
        }
        target = api_client.app.state.hub.directory.get_push_target("bob")
        assert target.pushToken == "tok-1"

    def test_register_runs_off_the_event_loop(self, api_client, monkeypatch):
        directory = api_client.app.state.hub.directory
        original = directory.set_push_token
        loops = []

        def recording_set_push_token(*args):
            try:
                loops.append(asyncio.get_running_loop())
            except RuntimeError:
                loops.append(None)
            return original(*args)

        monkeypatch.setattr(directory, "set_push_token", recording_set_push_token)
        response = api_client.post(
            "/notifications/register-token",
            json={"userId": "bob", "pushToken": "tok-1"},
        )

        assert response.status_code == 200
        assert loops == [None]

    @pytest.mark.parametrize("body", [{"userId": "bob"}, {"pushToken": "tok-1"}, {}])
    def test_missing_fields(self, api_client, body):
        response = api_client.post("/notifications/register-token", json=body)

        assert response.status_code == 400
        assert response.json()["error"] == "User ID and push token are required"

    def test_unknown_user(self, api_client):
        response = api_client.post(
            "/notifications/register-token",
            json={"userId": "ghost", "pushToken": "tok-1"},
        )

        assert response.status_code == 404

    def test_offline_recipient_is_queued_after_registration(self, api_client):
        api_client.post(
            "/notifications/register-token",
            json={"userId": "bob", "pushToken": "tok-1", "platform": "android"},
        )

        send_direct(api_client, "are you there?")

        pending = api_client.app.state.hub.outbox.pending()
        assert len(pending) == 1
        assert pending[0].userId == "bob"
        assert pending[0].body == "are you there?"


class TestMisc:

    def test_health(self, api_client):
        response = api_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_presence_offline(self, api_client):
        response = api_client.get("/presence/alice")

        assert response.json() == {"userId": "alice", "online": False, "connections": 0}

    def test_presence_online(self, api_client):
        with api_client.websocket_connect("/ws?userId=alice") as ws:
            ws.receive_json()
            response = api_client.get("/presence/alice")

        assert response.json()["online"] is True
        assert response.json()["connections"] == 1
