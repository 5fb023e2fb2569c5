"""
HTTP tests for the FastAPI application.
"""

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError, ServerSelectionTimeoutError

import audit
import main
import messaging
from schemas import Role

PASSWORD = "secret-pass"


def send(client, sender, recipient_id, listing_id, body="Is this dog still available?"):
    return client.post(
        "/messages",
        json={"recipient_id": recipient_id, "listing_id": listing_id, "body": body},
        headers=sender["headers"],
    )


class TestHealth:
    def test_root(self, client):
        assert client.get("/").json() == {"message": "Kennel Messenger API running"}

    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["ok"] is True

    def test_lifespan_configures_logging(self, monkeypatch):
        calls = []
        monkeypatch.setattr(main.logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
        monkeypatch.setattr(main, "connect", lambda: mongomock.MongoClient()["kennel_messenger_lifespan"])
        assert calls == []
        with TestClient(main.app) as client:
            assert client.get("/healthz").status_code == 200
        assert len(calls) == 1
        assert calls[0]["level"] == main.LOG_LEVEL


class TestSessionVerifier:
    @pytest.mark.parametrize("path", [
        "/messages/conversations",
        "/messages/unread/count",
        "/block",
        "/me",
    ])
    def test_missing_token(self, client, path):
        resp = client.get(path)
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Not authenticated"

    def test_unknown_token(self, client):
        resp = client.get("/messages/unread/count", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_unauthenticated_send_does_nothing(self, client, db, breeder, dog):
        resp = client.post("/messages", json={"recipient_id": breeder["id"], "listing_id": dog, "body": "hi"})
        assert resp.status_code == 401
        assert db["message"].count_documents({}) == 0

    def test_me(self, client, customer):
        resp = client.get("/me", headers=customer["headers"])
        assert resp.status_code == 200
        assert resp.json()["username"] == "alice"
        assert resp.json()["role"] == "customer"


class TestAuth:
    def test_signup_then_me(self, client, db):
        resp = client.post("/auth/signup", json={
            "email": "Dana@Example.com",
            "username": "Dana",
            "password": "pw-12345",
            "role": "breeder",
            "kennel_name": "Dana's Dogs",
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["role"] == "breeder"
        assert data["user"]["email"] == "dana@example.com"
        assert data["user"]["kennel_name"] == "Dana's Dogs"
        me = client.get("/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert me.json()["username"] == "dana"
        assert db["auditlog"].find_one({"action": audit.SIGNUP}) is not None

    def test_signup_duplicate(self, client, customer):
        resp = client.post("/auth/signup", json={"email": "alice@example.com", "username": "other", "password": "pw"})
        assert resp.status_code == 400

    def test_signup_as_admin_rejected(self, client):
        resp = client.post("/auth/signup", json={"email": "eve@example.com", "username": "eve", "password": "pw", "role": "admin"})
        assert resp.status_code == 400

    def test_bootstrap_admin(self, client, monkeypatch):
        monkeypatch.setattr(main, "ADMIN_EMAIL", "root@example.com")
        resp = client.post("/auth/signup", json={"email": "root@example.com", "username": "root", "password": "pw"})
        assert resp.json()["role"] == "admin"

    def test_login_with_username_or_email(self, client, customer):
        for identifier in ("alice", "ALICE@example.com"):
            resp = client.post("/auth/login", json={"identifier": identifier, "password": PASSWORD})
            assert resp.status_code == 200
            assert resp.json()["token"]

    def test_login_bad_password(self, client, db, customer):
        resp = client.post("/auth/login", json={"identifier": "alice", "password": "wrong"})
        assert resp.status_code == 401
        assert db["auditlog"].find_one({"action": audit.LOGIN_FAILED}) is not None

    def test_logout_invalidates_token(self, client, customer):
        assert client.post("/auth/logout", headers=customer["headers"]).status_code == 200
        assert client.get("/me", headers=customer["headers"]).status_code == 401


class TestMessagingEndpoints:
    def test_scenario(self, client, customer, breeder, dog):
        resp = send(client, customer, breeder["id"], dog)
        assert resp.status_code == 200
        msg = resp.json()
        assert msg["from_user_id"] == customer["id"]
        assert msg["to_user_id"] == breeder["id"]
        assert msg["read"] is False
        assert client.get("/messages/unread/count", headers=breeder["headers"]).json() == {"count": 1}

        resp = client.post(f"/messages/{msg['id']}/reply", json={"body": "Yes!"}, headers=breeder["headers"])
        assert resp.status_code == 200
        answer = resp.json()
        assert answer["conversation_id"] == msg["conversation_id"]
        assert answer["to_user_id"] == customer["id"]

        thread = client.get(f"/messages/conversation/{msg['conversation_id']}", headers=customer["headers"])
        assert thread.headers["cache-control"] == "no-store"
        assert [m["body"] for m in thread.json()] == ["Is this dog still available?", "Yes!"]
        assert client.get("/messages/unread/count", headers=customer["headers"]).json() == {"count": 1}

    def test_conversation_previews(self, client, customer, breeder, dog):
        send(client, customer, breeder["id"], dog, "Hello there")
        resp = client.get("/messages/conversations", headers=breeder["headers"])
        assert resp.status_code == 200
        [preview] = resp.json()
        assert preview["other"]["id"] == customer["id"]
        assert preview["listing"]["name"] == "Biscuit"
        assert preview["last_message"]["snippet"] == "Hello there"
        assert preview["unread"] == 1

    def test_mark_read(self, client, customer, breeder, dog):
        msg = send(client, customer, breeder["id"], dog).json()
        path = f"/messages/conversation/{msg['conversation_id']}/read"
        assert client.post(path, headers=breeder["headers"]).json() == {"updated": True}
        assert client.post(path, headers=breeder["headers"]).json() == {"updated": False}
        assert client.get("/messages/unread/count", headers=breeder["headers"]).json() == {"count": 0}

    def test_empty_body(self, client, customer, breeder, dog):
        resp = send(client, customer, breeder["id"], dog, "")
        assert resp.status_code == 400

    def test_missing_recipient(self, client, customer, dog):
        resp = client.post("/messages", json={"listing_id": dog, "body": "hi"}, headers=customer["headers"])
        assert resp.status_code == 400

    def test_reply_without_json_is_400(self, client, customer, breeder, dog):
        msg = send(client, customer, breeder["id"], dog).json()
        resp = client.post(f"/messages/{msg['id']}/reply", headers=breeder["headers"])
        assert resp.status_code == 400
        assert isinstance(resp.json()["detail"], str)

    def test_malformed_payload_is_400(self, client, customer):
        resp = client.post("/messages", json={"body": ["not", "text"]}, headers=customer["headers"])
        assert resp.status_code == 400
        assert "body" in resp.json()["detail"]

    def test_unknown_listing(self, client, customer, breeder):
        resp = send(client, customer, breeder["id"], str(ObjectId()))
        assert resp.status_code == 404

    def test_malformed_conversation_id(self, client, customer):
        resp = client.get("/messages/conversation/not-an-id", headers=customer["headers"])
        assert resp.status_code == 404

    def test_outsider_gets_forbidden(self, client, make_user, customer, breeder, dog):
        outsider = make_user("mallory")
        msg = send(client, customer, breeder["id"], dog).json()
        cid = msg["conversation_id"]
        assert client.get(f"/messages/conversation/{cid}", headers=outsider["headers"]).status_code == 403
        assert client.post(f"/messages/conversation/{cid}/read", headers=outsider["headers"]).status_code == 403
        assert client.delete(f"/messages/conversation/{cid}", headers=outsider["headers"]).status_code == 403
        assert client.post(f"/messages/{msg['id']}/reply", json={"body": "hi"}, headers=outsider["headers"]).status_code == 403

    def test_outsider_empty_reply_is_forbidden(self, client, make_user, customer, breeder, dog):
        outsider = make_user("mallory")
        msg = send(client, customer, breeder["id"], dog).json()
        resp = client.post(f"/messages/{msg['id']}/reply", json={"body": ""}, headers=outsider["headers"])
        assert resp.status_code == 403

    def test_delete_conversation(self, client, db, customer, breeder, dog):
        msg = send(client, customer, breeder["id"], dog).json()
        cid = msg["conversation_id"]
        resp = client.delete(f"/messages/conversation/{cid}", headers=breeder["headers"])
        assert resp.json() == {"message": "Conversation deleted"}
        assert client.get(f"/messages/conversation/{cid}", headers=customer["headers"]).status_code == 404
        assert db["message"].count_documents({}) == 0
        assert client.get("/messages/conversations", headers=customer["headers"]).json() == []

    def test_send_is_audited(self, client, db, customer, breeder, dog):
        send(client, customer, breeder["id"], dog)
        entry = db["auditlog"].find_one({"action": audit.MESSAGE_SENT})
        assert entry["user_id"] == customer["id"]

    def test_audit_failure_does_not_fail_send(self, client, db, customer, breeder, dog, monkeypatch):
        def broken(*args, **kwargs):
            raise ServerSelectionTimeoutError("audit store down")

        monkeypatch.setattr(audit, "create_document", broken)
        resp = send(client, customer, breeder["id"], dog)
        assert resp.status_code == 200
        assert db["message"].count_documents({}) == 1

    def test_storage_error_is_500(self, client, customer, monkeypatch):
        def broken(*args, **kwargs):
            raise PyMongoError("connection reset")

        monkeypatch.setattr(messaging, "unread_count", broken)
        resp = client.get("/messages/unread/count", headers=customer["headers"])
        assert resp.status_code == 500
        assert resp.json() == {"detail": "Internal server error"}


class TestBlockEndpoints:
    def test_blocked_sender_forbidden(self, client, customer, breeder, dog):
        assert client.post(f"/block/{customer['id']}", headers=breeder["headers"]).status_code == 200
        resp = send(client, customer, breeder["id"], dog)
        assert resp.status_code == 403
        assert resp.json()["detail"] == "You are blocked from messaging this user"

    def test_block_is_idempotent(self, client, db, customer, breeder):
        for _ in range(2):
            resp = client.post(f"/block/{customer['id']}", headers=breeder["headers"])
            assert resp.json() == {"message": "User blocked"}
        assert db["block"].count_documents({}) == 1
        assert db["auditlog"].count_documents({"action": audit.USER_BLOCKED}) == 1
        assert client.get("/block", headers=breeder["headers"]).json() == {"blocked": [customer["id"]]}

    def test_unblock_restores_messaging(self, client, customer, breeder, dog):
        client.post(f"/block/{customer['id']}", headers=breeder["headers"])
        for _ in range(2):
            assert client.delete(f"/block/{customer['id']}", headers=breeder["headers"]).status_code == 200
        assert send(client, customer, breeder["id"], dog).status_code == 200

    def test_thread_readable_after_block(self, client, customer, breeder, dog):
        msg = send(client, customer, breeder["id"], dog).json()
        client.post(f"/block/{customer['id']}", headers=breeder["headers"])
        for user in (customer, breeder):
            resp = client.get(f"/messages/conversation/{msg['conversation_id']}", headers=user["headers"])
            assert resp.status_code == 200
            assert len(resp.json()) == 1

    def test_block_unknown_user(self, client, customer):
        assert client.post(f"/block/{ObjectId()}", headers=customer["headers"]).status_code == 404


class TestDogEndpoints:
    def test_breeder_creates_dog(self, client, breeder):
        resp = client.post("/dogs", json={"name": "Sir Barks-a-Lot!", "breed": "Corgi", "status": "published"},
                           headers=breeder["headers"])
        assert resp.status_code == 200
        dog = resp.json()
        assert dog["breeder_id"] == breeder["id"]
        assert dog["slug"].startswith("sir-barks-a-lot-")
        assert client.get(f"/dogs/{dog['slug']}").json()["id"] == dog["id"]

    def test_customer_cannot_create_dog(self, client, customer):
        resp = client.post("/dogs", json={"name": "Rex", "breed": "Boxer"}, headers=customer["headers"])
        assert resp.status_code == 403

    def test_search_is_regex_filtered(self, client, make_dog, breeder):
        make_dog(breeder["id"], name="Luna", breed="Husky")
        make_dog(breeder["id"], name="Max", breed="Labrador")
        make_dog(breeder["id"], name="Hidden", breed="Husky", status="draft")
        names = [d["name"] for d in client.get("/dogs", params={"q": "husk"}).json()]
        assert names == ["Luna"]
        assert client.get("/dogs", params={"q": "(.*"}).json() == []

    def test_private_dog_visible_to_owner_only(self, client, make_dog, breeder, customer):
        dog_id = make_dog(breeder["id"], name="Secret", visibility="private")
        assert client.get(f"/dogs/{dog_id}").status_code == 404
        assert client.get(f"/dogs/{dog_id}", headers=customer["headers"]).status_code == 404
        assert client.get(f"/dogs/{dog_id}", headers=breeder["headers"]).status_code == 200

    def test_delete_dog(self, client, make_user, breeder, dog):
        other = make_user("otherbreeder", Role.BREEDER)
        assert client.delete(f"/dogs/{dog}", headers=other["headers"]).status_code == 403
        assert client.delete(f"/dogs/{dog}", headers=breeder["headers"]).status_code == 200
        assert client.get(f"/dogs/{dog}").status_code == 404


class TestAdminEndpoints:
    def test_requires_admin(self, client, breeder):
        assert client.get("/admin/users", headers=breeder["headers"]).status_code == 403

    def test_lock_and_unlock(self, client, db, make_user, customer):
        admin = make_user("admin", Role.ADMIN)
        assert client.post(f"/admin/lock/{customer['id']}", headers=admin["headers"]).status_code == 200
        assert client.get("/me", headers=customer["headers"]).status_code == 401
        resp = client.post("/auth/login", json={"identifier": "alice", "password": PASSWORD})
        assert resp.status_code == 403

        listed = {u["username"]: u for u in client.get("/admin/users", headers=admin["headers"]).json()}
        assert listed["alice"]["is_locked"] is True

        assert client.post(f"/admin/unlock/{customer['id']}", headers=admin["headers"]).status_code == 200
        resp = client.post("/auth/login", json={"identifier": "alice", "password": PASSWORD})
        assert resp.status_code == 200
        assert db["auditlog"].count_documents({"action": {"$in": [audit.USER_LOCKED, audit.USER_UNLOCKED]}}) == 2

    def test_admin_cannot_lock_self(self, client, make_user):
        admin = make_user("admin", Role.ADMIN)
        assert client.post(f"/admin/lock/{admin['id']}", headers=admin["headers"]).status_code == 400
