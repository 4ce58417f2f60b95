from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import PNG_DATA_URI, RecordingConnection
from core.db import get_db
from core.rate_limit import RateLimitResult
from models import Chat, Message, MessageSeen
from routers.dependencies import get_blob_store, get_current_user, get_presence
from routers.messaging import chats, messages
from routers.messaging import service as messaging_service


def _make_client(test_db, user, presence, blob_store):
    app = FastAPI()
    app.include_router(chats.router)
    app.include_router(messages.router)

    def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_presence] = lambda: presence
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    return TestClient(app)


def _act_as(client, user):
    client.app.dependency_overrides[get_current_user] = lambda: user


def _send(client, **body):
    return client.post("/chats/messages", json=body)


def test_first_message_creates_private_chat_and_reuses_it(test_db, users, presence, blob_store):
    alice, bob = users[0], users[1]
    client = _make_client(test_db, alice, presence, blob_store)

    first = _send(client, receiverID=bob.user_id, text="hi bob")
    assert first.status_code == 200
    chat_id = first.json()["chat"]["chatID"]

    _act_as(client, bob)
    second = _send(client, receiverID=alice.user_id, text="hey alice")
    assert second.status_code == 200
    assert second.json()["chat"]["chatID"] == chat_id

    assert test_db.query(Chat).count() == 1
    payload = first.json()["message"]
    assert payload["sender"]["userID"] == alice.user_id
    assert payload["text"] == "hi bob"
    assert [receipt["user"] for receipt in payload["seenBy"]] == [alice.user_id]
    assert first.json()["updatedAt"] == first.json()["chat"]["updatedAt"]


def test_send_validation_errors(test_db, users, presence, blob_store):
    alice = users[0]
    client = _make_client(test_db, alice, presence, blob_store)

    empty = _send(client, receiverID=2, text="   ")
    assert empty.status_code == 400
    assert empty.json()["detail"] == "Cannot send empty message"

    no_target = _send(client, text="hello")
    assert no_target.status_code == 400
    assert no_target.json()["detail"] == "chatID or receiverID must be provided"

    to_self = _send(client, receiverID=alice.user_id, text="me")
    assert to_self.status_code == 400

    unknown = _send(client, receiverID=999, text="anyone?")
    assert unknown.status_code == 404

    too_long = _send(client, receiverID=2, text="x" * 2001)
    assert too_long.status_code == 422

    assert test_db.query(Message).count() == 0
    assert test_db.query(Chat).count() == 0


def test_markup_is_stripped_from_message_text(test_db, users, presence, blob_store):
    client = _make_client(test_db, users[0], presence, blob_store)

    sent = _send(client, receiverID=2, text="<b>hello</b> there")
    assert sent.status_code == 200
    assert sent.json()["message"]["text"] == "hello there"

    ampersand = _send(client, receiverID=2, text="salt & pepper")
    assert ampersand.json()["message"]["text"] == "salt & pepper"

    only_tags = _send(client, receiverID=2, text="<b></b>")
    assert only_tags.status_code == 400
    assert only_tags.json()["detail"] == "Cannot send empty message"


def test_chat_access_rules(test_db, users, presence, blob_store):
    alice, bob, carol = users[0], users[1], users[2]
    client = _make_client(test_db, alice, presence, blob_store)
    chat_id = _send(client, receiverID=bob.user_id, text="private").json()["chat"]["chatID"]

    _act_as(client, carol)
    assert _send(client, chatID=chat_id, text="let me in").status_code == 403
    assert client.get(f"/chats/{chat_id}/messages").status_code == 403
    assert _send(client, chatID=424242, text="where").status_code == 404


def test_image_upload_happens_before_persisting(test_db, users, presence, blob_store):
    alice, bob = users[0], users[1]
    client = _make_client(test_db, alice, presence, blob_store)

    response = _send(client, receiverID=bob.user_id, image=PNG_DATA_URI)

    assert response.status_code == 200
    assert response.json()["message"]["image"] == "https://media.test/messages/1.png"
    assert response.json()["message"]["text"] == ""
    assert blob_store.uploads == ["messages"]


def test_image_upload_finishes_before_any_id_is_allocated(test_db, users, presence, blob_store, monkeypatch):
    steps = []
    original_upload = messaging_service.upload_message_image
    original_allocate = messaging_service.allocate_id

    async def recording_upload(*args, **kwargs):
        steps.append("upload")
        return await original_upload(*args, **kwargs)

    def recording_allocate(db, entity):
        steps.append(f"allocate:{entity}")
        return original_allocate(db, entity)

    monkeypatch.setattr(messaging_service, "upload_message_image", recording_upload)
    monkeypatch.setattr(messaging_service, "allocate_id", recording_allocate)
    client = _make_client(test_db, users[0], presence, blob_store)

    response = _send(client, receiverID=users[1].user_id, text="look", image=PNG_DATA_URI)

    assert response.status_code == 200
    assert steps == ["upload", "allocate:chats", "allocate:messages"]


def test_failed_upload_leaves_no_message_or_chat(test_db, users, presence, blob_store):
    alice, bob = users[0], users[1]
    blob_store.fail = True
    bob_conn = RecordingConnection("bob")
    presence.register(bob.user_id, bob_conn)
    client = _make_client(test_db, alice, presence, blob_store)

    response = _send(client, receiverID=bob.user_id, text="look", image=PNG_DATA_URI)

    assert response.status_code == 502
    assert test_db.query(Message).count() == 0
    assert test_db.query(Chat).count() == 0
    assert bob_conn.frames == []


def test_invalid_image_payload_is_rejected(test_db, users, presence, blob_store):
    client = _make_client(test_db, users[0], presence, blob_store)

    response = _send(client, receiverID=2, image="data:image/png;base64,@@not-base64@@")

    assert response.status_code == 400
    assert test_db.query(Message).count() == 0


def test_reply_must_target_existing_message_in_same_chat(test_db, users, presence, blob_store):
    alice, bob, carol = users[0], users[1], users[2]
    client = _make_client(test_db, alice, presence, blob_store)
    with_bob = _send(client, receiverID=bob.user_id, text="first").json()
    with_carol = _send(client, receiverID=carol.user_id, text="other").json()
    bob_chat = with_bob["chat"]["chatID"]

    missing = _send(client, chatID=bob_chat, text="re", replyTo=9999)
    assert missing.status_code == 400
    assert missing.json()["detail"] == "Cannot reply to non existing message"

    cross = _send(client, chatID=bob_chat, text="re", replyTo=with_carol["message"]["messageID"])
    assert cross.status_code == 400
    assert cross.json()["detail"] == "Cannot reply to a message from a different chat"

    _act_as(client, bob)
    ok = _send(client, chatID=bob_chat, text="re: first", replyTo=with_bob["message"]["messageID"])
    assert ok.status_code == 200
    reply_to = ok.json()["message"]["replyTo"]
    assert reply_to["messageID"] == with_bob["message"]["messageID"]
    assert reply_to["text"] == "first"
    assert reply_to["sender"]["userID"] == alice.user_id


def test_new_message_is_delivered_to_online_recipient_only(test_db, users, presence, blob_store):
    alice, bob = users[0], users[1]
    alice_conn, bob_conn = RecordingConnection("alice"), RecordingConnection("bob")
    presence.register(alice.user_id, alice_conn)
    presence.register(bob.user_id, bob_conn)
    client = _make_client(test_db, alice, presence, blob_store)

    response = _send(client, receiverID=bob.user_id, text="ping")

    assert alice_conn.frames == []
    assert len(bob_conn.frames) == 1
    frame = bob_conn.frames[0]
    assert frame["event"] == "newMessage"
    assert frame["data"] == response.json()


def test_mark_seen_is_idempotent_and_broadcast_once(test_db, users, presence, blob_store):
    alice, bob = users[0], users[1]
    alice_conn = RecordingConnection("alice")
    presence.register(alice.user_id, alice_conn)
    client = _make_client(test_db, alice, presence, blob_store)
    chat_id = _send(client, receiverID=bob.user_id, text="one").json()["chat"]["chatID"]
    _send(client, chatID=chat_id, text="two")

    _act_as(client, bob)
    first = client.put(f"/chats/{chat_id}/seen")
    second = client.put(f"/chats/{chat_id}/seen")

    assert first.status_code == 200
    assert first.json()["markedCount"] == 2
    assert first.json()["user"] == bob.user_id
    assert second.json()["markedCount"] == 0
    assert len(alice_conn.events("seenMessages")) == 1
    assert test_db.query(MessageSeen).filter(MessageSeen.user_id == bob.user_id).count() == 2

    listed = client.get(f"/chats/{chat_id}/messages").json()["messages"]
    assert all(sorted(r["user"] for r in m["seenBy"]) == [1, 2] for m in listed)


def test_edit_only_before_seen(test_db, users, presence, blob_store):
    alice, bob = users[0], users[1]
    bob_conn = RecordingConnection("bob")
    presence.register(bob.user_id, bob_conn)
    client = _make_client(test_db, alice, presence, blob_store)
    sent = _send(client, receiverID=bob.user_id, text="typo").json()
    chat_id, message_id = sent["chat"]["chatID"], sent["message"]["messageID"]

    edited = client.put(f"/chats/messages/{message_id}", json={"newText": "fixed"})
    assert edited.status_code == 200
    assert edited.json()["text"] == "fixed"
    assert edited.json()["isEdited"] is True
    assert bob_conn.events("editMessage")[0]["data"] == {
        "chatID": chat_id,
        "messageID": message_id,
        "text": "fixed",
    }

    _act_as(client, bob)
    assert client.put(f"/chats/messages/{message_id}", json={"newText": "mine"}).status_code == 403
    client.put(f"/chats/{chat_id}/seen")

    _act_as(client, alice)
    late = client.put(f"/chats/messages/{message_id}", json={"newText": "again"})
    assert late.status_code == 409
    assert test_db.query(Message).filter(Message.message_id == message_id).one().text == "fixed"


def test_delete_is_soft_and_terminal(test_db, users, presence, blob_store):
    alice, bob = users[0], users[1]
    bob_conn = RecordingConnection("bob")
    presence.register(bob.user_id, bob_conn)
    client = _make_client(test_db, alice, presence, blob_store)
    sent = _send(client, receiverID=bob.user_id, text="oops", image=PNG_DATA_URI).json()
    chat_id, message_id = sent["chat"]["chatID"], sent["message"]["messageID"]

    _act_as(client, bob)
    assert client.delete(f"/chats/messages/{message_id}").status_code == 403

    _act_as(client, alice)
    deleted = client.delete(f"/chats/messages/{message_id}")
    assert deleted.status_code == 200
    assert deleted.json() == {"chatID": chat_id, "messageID": message_id}
    assert bob_conn.events("deleteMessage")[0]["data"] == {"chatID": chat_id, "messageID": message_id}

    again = client.delete(f"/chats/messages/{message_id}")
    assert again.status_code == 400
    assert client.put(f"/chats/messages/{message_id}", json={"newText": "back"}).status_code == 400

    listed = client.get(f"/chats/{chat_id}/messages").json()["messages"]
    assert listed[0]["messageID"] == message_id
    assert listed[0]["isDeleted"] is True
    assert listed[0]["text"] == ""
    assert listed[0]["image"] == ""


def test_messages_are_listed_newest_first_with_pagination(test_db, users, presence, blob_store):
    client = _make_client(test_db, users[0], presence, blob_store)
    chat_id = _send(client, receiverID=2, text="m1").json()["chat"]["chatID"]
    for index in range(2, 6):
        _send(client, chatID=chat_id, text=f"m{index}")

    page = client.get(f"/chats/{chat_id}/messages", params={"page": 1, "limit": 2}).json()

    assert page["totalResults"] == 5
    assert page["totalPages"] == 3
    assert [m["text"] for m in page["messages"]] == ["m5", "m4"]
    ids = [m["messageID"] for m in page["messages"]]
    assert ids == sorted(ids, reverse=True)


def test_chat_list_orders_by_latest_activity(test_db, users, presence, blob_store):
    client = _make_client(test_db, users[0], presence, blob_store)
    with_bob = _send(client, receiverID=2, text="bob").json()["chat"]["chatID"]
    with_carol = _send(client, receiverID=3, text="carol").json()["chat"]["chatID"]
    _send(client, chatID=with_bob, text="bob again")

    listed = client.get("/chats").json()

    assert [c["chatID"] for c in listed["chats"]] == [with_bob, with_carol]
    assert listed["chats"][0]["lastMessage"]["text"] == "bob again"
    assert sorted(p["userID"] for p in listed["chats"][0]["participants"]) == [1, 2]


def test_private_chat_lookup_does_not_create(test_db, users, presence, blob_store):
    client = _make_client(test_db, users[0], presence, blob_store)

    assert client.get("/chats/private/2").json() == {"chatID": None}
    chat_id = _send(client, receiverID=2, text="now").json()["chat"]["chatID"]
    assert client.get("/chats/private/2").json() == {"chatID": chat_id}
    assert test_db.query(Chat).count() == 1


def test_send_rate_limit_returns_429(test_db, users, presence, blob_store, monkeypatch):
    class Exhausted:
        def allow(self, *, key, limit, window_seconds):
            return RateLimitResult(False, 12)

    monkeypatch.setattr(messaging_service, "default_rate_limiter", Exhausted())
    client = _make_client(test_db, users[0], presence, blob_store)

    response = _send(client, receiverID=2, text="spam")

    assert response.status_code == 429
    assert response.headers["X-Retry-After"] == "12"
    assert test_db.query(Message).count() == 0
