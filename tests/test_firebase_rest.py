import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from outfit_studio.accounts import (
    AuthError,
    AuthErrorCode,
    FirebaseIdentityClient,
    FirestoreProfileStore,
    ProfileStoreError,
    StoreUnavailableError,
    from_firestore_value,
    to_firestore_value,
)


def run(coro):
    return asyncio.run(coro)


def identity_with(handler):
    return FirebaseIdentityClient(api_key="web-key", transport=httpx.MockTransport(handler))


def store_with(handler):
    return FirestoreProfileStore(project_id="demo", transport=httpx.MockTransport(handler))


# --- Identity ---

def test_sign_in_with_password():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={
            "localId": "uid-1", "email": "ada@example.com", "displayName": "", "idToken": "tok",
        })

    user = run(identity_with(handler).sign_in_with_password("ada@example.com", "secret1"))

    assert user.uid == "uid-1"
    assert user.display_name is None
    assert user.id_token == "tok"
    assert seen[0].url.path == "/v1/accounts:signInWithPassword"
    assert seen[0].url.params["key"] == "web-key"
    assert json.loads(seen[0].content)["email"] == "ada@example.com"


@pytest.mark.parametrize("message, code", [
    ("EMAIL_EXISTS", AuthErrorCode.EMAIL_ALREADY_IN_USE),
    ("INVALID_LOGIN_CREDENTIALS", AuthErrorCode.INVALID_CREDENTIAL),
    ("WEAK_PASSWORD : Password should be at least 6 characters", AuthErrorCode.WEAK_PASSWORD),
    ("CONFIGURATION_NOT_FOUND", AuthErrorCode.CONFIGURATION_NOT_FOUND),
    ("TOO_MANY_ATTEMPTS_TRY_LATER", AuthErrorCode.UNKNOWN),
])
def test_identity_errors_are_mapped(message, code):
    def handler(request):
        return httpx.Response(400, json={"error": {"code": 400, "message": message}})

    with pytest.raises(AuthError) as excinfo:
        run(identity_with(handler).sign_up("ada@example.com", "x"))
    assert excinfo.value.code == code
    assert excinfo.value.message == message


def test_identity_network_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AuthError) as excinfo:
        run(identity_with(handler).send_password_reset("ada@example.com"))
    assert excinfo.value.code == AuthErrorCode.NETWORK_REQUEST_FAILED


def test_identity_without_api_key():
    client = FirebaseIdentityClient(api_key=None)

    with pytest.raises(AuthError) as excinfo:
        run(client.sign_up("ada@example.com", "secret1"))
    assert excinfo.value.code == AuthErrorCode.CONFIGURATION_NOT_FOUND


def test_federated_sign_in_posts_provider_token():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"localId": "g-1", "email": "abc@gmail.com", "idToken": "tok"})

    user = run(identity_with(handler).sign_in_with_idp("google-id-token"))

    assert user.uid == "g-1"
    assert bodies[0]["postBody"] == "id_token=google-id-token&providerId=google.com"


# --- Firestore ---

def test_get_decodes_fields():
    def handler(request):
        assert request.headers["Authorization"] == "Bearer tok"
        return httpx.Response(200, json={"fields": {
            "email": {"stringValue": "ada@example.com"},
            "credits": {"integerValue": "42"},
        }})

    doc = run(store_with(handler).get("uid-1", token="tok"))

    assert doc == {"email": "ada@example.com", "credits": 42}


def test_get_missing_document():
    doc = run(store_with(lambda request: httpx.Response(404, json={"error": {"message": "not found"}})).get("x"))
    assert doc is None


def test_unreachable_store():
    def handler(request):
        raise httpx.ConnectError("offline", request=request)

    with pytest.raises(StoreUnavailableError):
        run(store_with(handler).get("uid-1"))


def test_service_unavailable():
    with pytest.raises(StoreUnavailableError):
        run(store_with(lambda request: httpx.Response(503)).get("uid-1"))


def test_permission_denied_is_a_store_error():
    def handler(request):
        return httpx.Response(403, json={"error": {"message": "Missing or insufficient permissions."}})

    with pytest.raises(ProfileStoreError) as excinfo:
        run(store_with(handler).get("uid-1"))
    assert not isinstance(excinfo.value, StoreUnavailableError)


def test_store_without_project():
    with pytest.raises(ProfileStoreError):
        run(FirestoreProfileStore(project_id=None).get("uid-1"))


def test_merge_create_sends_update_mask():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={})

    run(store_with(handler).create("uid-1", {"email": "ada@example.com", "credits": 10}, merge=True))

    request = seen[0]
    assert request.method == "PATCH"
    assert request.url.path.endswith("/documents/users/uid-1")
    assert request.url.params.get_list("updateMask.fieldPaths") == ["email", "credits"]
    assert json.loads(request.content)["fields"]["credits"] == {"integerValue": "10"}


def test_increment_commits_field_transform():
    bodies = []

    def handler(request):
        assert request.url.path == "/v1/projects/demo/databases/(default)/documents:commit"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={})

    run(store_with(handler).increment("uid-1", "credits", -1))

    write = bodies[0]["writes"][0]
    assert write["currentDocument"] == {"exists": True}
    assert write["transform"]["document"] == "projects/demo/databases/(default)/documents/users/uid-1"
    assert write["transform"]["fieldTransforms"] == [{"fieldPath": "credits", "increment": {"integerValue": "-1"}}]


def test_value_encoding():
    assert to_firestore_value(True) == {"booleanValue": True}
    assert to_firestore_value(3) == {"integerValue": "3"}
    assert to_firestore_value("x") == {"stringValue": "x"}
    assert to_firestore_value(None) == {"nullValue": None}
    stamp = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert to_firestore_value(stamp) == {"timestampValue": "2024-05-01T12:00:00Z"}
    assert from_firestore_value({"integerValue": "7"}) == 7
    assert from_firestore_value({"nullValue": None}) is None
