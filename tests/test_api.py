import json
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import HTTPException

from files_control.api.public import parse_access_keys, parse_optional_timestamp


def _upload(client, data=b"file body", keys=("owner-key",), **fields):
    form = {"accessKeys": json.dumps(list(keys)), **fields}
    return client.post(
        "/files/upload",
        files={"file": ("report.txt", data, "text/plain")},
        data=form,
    )


def _grant(client, auth_headers, storage_id, **payload):
    response = client.post(
        "/files/grants",
        json={"storage_id": storage_id, **payload},
        headers=auth_headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_health_and_metrics(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"]

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text


def test_management_routes_require_token(client):
    response = client.get("/files/files")
    assert response.status_code == 401
    body = response.json()
    assert body["message"] == "Unauthorized"
    assert body["request_id"]


def test_users_me(client, api_user, auth_headers):
    user, _ = api_user
    response = client.get("/users/me", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["email"] == user.email


def test_upload_then_download_once(client, auth_headers):
    upload = _upload(client)
    assert upload.status_code == 200, upload.text
    storage_id = upload.json()["storage_id"]
    assert upload.json()["metadata"]["size"] == len(b"file body")

    grant = _grant(client, auth_headers, storage_id)
    assert grant["max_uses"] == 1
    url = urlparse(grant["download_url"])
    assert url.path == "/files/download"
    assert parse_qs(url.query)["token"] == [grant["id"]]

    params = {"token": grant["id"], "accessKey": "owner-key", "filename": "my report.txt"}
    first = client.get("/files/download", params=params)
    assert first.status_code == 200
    assert first.content == b"file body"
    assert first.headers["cache-control"] == "no-store"
    assert 'filename="my_report.txt"' in first.headers["content-disposition"]
    assert first.headers["content-type"].startswith("text/plain")

    second = client.get("/files/download", params=params)
    assert second.status_code == 410
    assert second.json()["code"] == "exhausted"


def test_download_denials(client, auth_headers, stored_file):
    grant = _grant(client, auth_headers, stored_file.storage_id, max_uses=None)

    denied = client.get(
        "/files/download", params={"token": grant["id"], "accessKey": "stranger"}
    )
    assert denied.status_code == 403
    assert denied.json()["code"] == "access_denied"

    unknown = client.get("/files/download", params={"token": "not-a-grant"})
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "not_found"


def test_download_of_missing_blob_keeps_the_use(client, auth_headers, local_store):
    storage_id = _upload(client).json()["storage_id"]
    grant = _grant(client, auth_headers, storage_id, max_uses=1)
    local_store.delete(storage_id)

    response = client.get(
        "/files/download", params={"token": grant["id"], "accessKey": "owner-key"}
    )

    assert response.status_code == 404
    assert response.json()["code"] == "file_missing"
    stored = client.get(f"/files/grants/{grant['id']}", headers=auth_headers)
    assert stored.status_code == 200
    assert stored.json()["use_count"] == 0


def test_password_header(client, auth_headers, local_store):
    storage_id = _upload(client).json()["storage_id"]
    grant = _grant(client, auth_headers, storage_id, password="s3cret", max_uses=None)
    assert grant["has_password"] is True
    params = {"token": grant["id"], "accessKey": "owner-key"}

    assert client.get("/files/download", params=params).status_code == 401
    wrong = client.get(
        "/files/download", params=params, headers={"X-Download-Password": "nope"}
    )
    assert wrong.status_code == 403
    ok = client.get(
        "/files/download", params=params, headers={"X-Download-Password": "s3cret"}
    )
    assert ok.status_code == 200


def test_grant_null_max_uses_is_unlimited(client, auth_headers, stored_file):
    grant = _grant(client, auth_headers, stored_file.storage_id, max_uses=None)
    assert grant["max_uses"] is None

    for expected in (1, 2, 3):
        response = client.post(f"/files/grants/{grant['id']}/redeem", headers=auth_headers)
        assert response.json() == {"allowed": True, "reason": None, "use_count": expected}


def test_grant_errors_use_error_payload(client, auth_headers, stored_file):
    missing = client.post(
        "/files/grants", json={"storage_id": "nope"}, headers=auth_headers
    )
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"

    invalid = client.post(
        "/files/grants",
        json={"storage_id": stored_file.storage_id, "max_uses": 0},
        headers=auth_headers,
    )
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "invalid_argument"

    duplicate = client.post(
        f"/files/files/{stored_file.storage_id}/access-keys",
        json={"access_key": "owner-key"},
        headers=auth_headers,
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "duplicate_key"

    malformed = client.post("/files/grants", json={}, headers=auth_headers)
    assert malformed.status_code == 422
    assert malformed.json()["code"] == "validation_error"


def test_upload_rejects_bad_access_keys(client):
    response = _upload(client, keys=())
    assert response.status_code == 400
    response = client.post(
        "/files/upload",
        files={"file": ("a.txt", b"x", "text/plain")},
        data={"accessKeys": "not json"},
    )
    assert response.status_code == 400
    assert "accessKeys" in response.json()["message"]


def test_ticket_flow_over_http(client, auth_headers, local_store):
    ticket = client.post("/files/upload-tickets", headers=auth_headers)
    assert ticket.status_code == 201
    body = ticket.json()

    stored = client.put(
        f"/files/upload-tickets/{body['upload_token']}/content",
        content=b"ticket bytes",
        headers={"Content-Type": "application/octet-stream"},
    )
    assert stored.status_code == 200
    metadata = stored.json()

    final = client.post(
        f"/files/upload-tickets/{body['upload_token']}/finalize",
        json={
            "storage_id": body["storage_id"],
            "access_keys": ["k"],
            "metadata": metadata,
        },
        headers=auth_headers,
    )
    assert final.status_code == 201
    assert local_store.get(final.json()["storage_id"]) == b"ticket bytes"

    again = client.get(f"/files/upload-tickets/{body['upload_token']}", headers=auth_headers)
    assert again.status_code == 404


def test_access_key_management(client, auth_headers, stored_file):
    path = f"/files/files/{stored_file.storage_id}/access-keys"

    added = client.post(path, json={"access_key": "second"}, headers=auth_headers)
    assert added.status_code == 201
    keys = client.get(path, headers=auth_headers).json()
    assert sorted(item["access_key"] for item in keys) == ["owner-key", "second"]

    removed = client.delete(path, params={"access_key": "second"}, headers=auth_headers)
    assert removed.status_code == 204
    last = client.delete(path, params={"access_key": "owner-key"}, headers=auth_headers)
    assert last.status_code == 400

    listed = client.get(
        "/files/files", params={"access_key": "owner-key"}, headers=auth_headers
    )
    assert [item["storage_id"] for item in listed.json()["items"]] == [
        stored_file.storage_id
    ]


def test_delete_file_releases_blob(client, auth_headers, local_store):
    storage_id = _upload(client).json()["storage_id"]

    response = client.delete(f"/files/files/{storage_id}", headers=auth_headers)

    assert response.status_code == 204
    assert not local_store.exists(storage_id)
    assert client.get(f"/files/files/{storage_id}", headers=auth_headers).status_code == 404


def test_cleanup_endpoint(client, auth_headers):
    response = client.post("/files/cleanup", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["has_more"] is False


def test_parse_access_keys():
    assert parse_access_keys('["a", "b"]') == ["a", "b"]
    with pytest.raises(HTTPException):
        parse_access_keys('[1, 2]')


def test_parse_optional_timestamp():
    assert parse_optional_timestamp(None) is None
    assert parse_optional_timestamp("null") is None
    assert parse_optional_timestamp("1893456000000").year == 2030
    assert parse_optional_timestamp("2030-01-01T00:00:00+00:00").year == 2030
    with pytest.raises(HTTPException) as excinfo:
        parse_optional_timestamp("tomorrow")
    assert "ISO-8601" in excinfo.value.detail
