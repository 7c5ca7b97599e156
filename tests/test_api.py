import base64
import json

from fastapi.testclient import TestClient

from linkgate.config import get_settings
from linkgate.main import create_app

REPORT_HASH = base64.b64encode(b"docs/report.txt").decode()
REPORT_BYTES = b"quarterly numbers"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_client(tmp_path, monkeypatch, *, clock=None, auth_enabled=False, authenticator=None):
    files_root = tmp_path / "files"
    (files_root / "docs").mkdir(parents=True)
    (files_root / "docs" / "report.txt").write_bytes(REPORT_BYTES)

    monkeypatch.setenv("LG_SESSION_SECRET_KEY", "test-secret")
    monkeypatch.setenv("LG_LINKS_DIR", str(tmp_path / "links"))
    monkeypatch.setenv("LG_FILES_ROOT", str(files_root))
    monkeypatch.setenv("LG_ALLOWED_EXPIRATION_MINUTES", "[30, 60, 120]")
    monkeypatch.setenv("LG_ALLOWED_WAIT_SECONDS", "[0, 10, 30]")
    monkeypatch.setenv("LG_SWEEP_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("LG_AUTH_ENABLED", "true" if auth_enabled else "false")
    get_settings.cache_clear()

    app = create_app(clock=clock or FakeClock(), authenticator=authenticator)
    return TestClient(app)


def create_link(client, **overrides):
    payload = {
        "owner_id": "u-1",
        "owner_name": "alice",
        "file_hash": REPORT_HASH,
        "file_name": "report.txt",
        "file_size": len(REPORT_BYTES),
        "expiration_minutes": 30,
        "wait_seconds": 0,
    }
    payload.update(overrides)
    return client.post("/v1/links", json=payload)


def test_health_and_config(tmp_path, monkeypatch):
    client = build_client(tmp_path, monkeypatch)
    with client:
        assert client.get("/health").json()["status"] == "ok"

        config = client.get("/v1/config")
        assert config.status_code == 200
        body = config.json()
        assert body["expiration_minutes"] == [30, 60, 120]
        assert body["wait_seconds"] == [0, 10, 30]
        assert body["default_auto_delete"] is True
        assert body["registered_links_enabled"] is False


def test_create_and_list_links(tmp_path, monkeypatch):
    client = build_client(tmp_path, monkeypatch)
    with client:
        created = create_link(client)
        assert created.status_code == 201
        payload = created.json()
        assert len(payload["token"]) == 64
        assert payload["download_url"].endswith(f"/download?t={payload['token']}")
        assert payload["expires_at"] == 1_700_000_000 + 30 * 60

        stored = json.loads((tmp_path / "links" / f"{payload['token']}.json").read_text())
        assert stored["user_id"] == "u-1"
        assert stored["root_path"] == str(tmp_path / "files")

        listing = client.get("/v1/users/u-1/links")
        assert listing.status_code == 200
        links = listing.json()["links"]
        assert len(links) == 1
        assert links[0]["token"] == payload["token"]
        assert links[0]["is_expired"] is False
        assert "root_path" not in links[0]

        assert client.get("/v1/users/u-2/links").json()["links"] == []


def test_wait_then_download_unlimited(tmp_path, monkeypatch):
    clock = FakeClock()
    client = build_client(tmp_path, monkeypatch, clock=clock)
    with client:
        token = create_link(client, wait_seconds=10, max_downloads=0).json()["token"]

        view = client.get("/download", params={"t": token})
        assert view.status_code == 200
        assert 'data-wait="10"' in view.text
        assert "report.txt" in view.text
        assert "no-store" in view.headers["cache-control"]

        early = client.get("/download", params={"t": token, "action": "download"})
        assert early.status_code == 425
        assert early.json()["error"]["code"] == "wait_not_elapsed"

        clock.advance(10)
        download = client.get("/download", params={"t": token, "action": "download"})
        assert download.status_code == 200
        assert download.content == REPORT_BYTES
        assert download.headers["content-type"] == "application/octet-stream"
        assert download.headers["content-disposition"].startswith('attachment; filename="report.txt"')
        assert "no-store" in download.headers["cache-control"]

        link = client.get("/v1/users/u-1/links").json()["links"][0]
        assert link["download_count"] == 1
        assert link["last_download_at"] == 1_700_000_010

        again = client.get("/download", params={"t": token, "action": "download"})
        assert again.status_code == 200
        assert client.get("/v1/users/u-1/links").json()["links"][0]["download_count"] == 2


def test_download_without_view_is_rejected(tmp_path, monkeypatch):
    client = build_client(tmp_path, monkeypatch)
    with client:
        token = create_link(client).json()["token"]
        response = client.get("/download", params={"t": token, "action": "download"})
        assert response.status_code == 425


def test_registered_link_without_auth_backend(tmp_path, monkeypatch):
    client = build_client(tmp_path, monkeypatch, authenticator=lambda request: True)
    with client:
        token = create_link(client, link_type="registered").json()["token"]

        view = client.get("/download", params={"t": token})
        assert view.status_code == 401
        body = view.json()["error"]
        assert body["code"] == "auth_required"
        assert body["login_url"] == "/login"

        download = client.get("/download", params={"t": token, "action": "download"})
        assert download.status_code == 401


def test_registered_link_with_auth_backend(tmp_path, monkeypatch):
    def authenticator(request):
        return request.headers.get("x-user") == "alice"

    client = build_client(tmp_path, monkeypatch, auth_enabled=True, authenticator=authenticator)
    with client:
        token = create_link(client, link_type="registered").json()["token"]

        assert client.get("/download", params={"t": token}).status_code == 401

        view = client.get("/download", params={"t": token}, headers={"x-user": "alice"})
        assert view.status_code == 200
        assert "Registered Users Only" in view.text

        anonymous = client.get("/download", params={"t": token, "action": "download"})
        assert anonymous.status_code == 401

        download = client.get("/download", params={"t": token, "action": "download"}, headers={"x-user": "alice"})
        assert download.status_code == 200
        assert download.content == REPORT_BYTES


def test_expiration_outside_allow_list_uses_first_option(tmp_path, monkeypatch):
    client = build_client(tmp_path, monkeypatch)
    with client:
        created = create_link(client, expiration_minutes=45)
        assert created.status_code == 201
        assert created.json()["expires_at"] == 1_700_000_000 + 30 * 60


def test_download_limit(tmp_path, monkeypatch):
    client = build_client(tmp_path, monkeypatch)
    with client:
        token = create_link(client, max_downloads=2).json()["token"]
        client.get("/download", params={"t": token})

        for _ in range(2):
            assert client.get("/download", params={"t": token, "action": "download"}).status_code == 200

        third = client.get("/download", params={"t": token, "action": "download"})
        assert third.status_code == 403
        assert third.json()["error"]["code"] == "limit_reached"


def test_expired_link_kept_for_audit(tmp_path, monkeypatch):
    clock = FakeClock()
    client = build_client(tmp_path, monkeypatch, clock=clock)
    with client:
        token = create_link(client, cancel_json_file=False).json()["token"]
        client.get("/download", params={"t": token})
        clock.advance(31 * 60)

        links = client.get("/v1/users/u-1/links").json()["links"]
        assert [(link["token"], link["is_expired"]) for link in links] == [(token, True)]

        expired = client.get("/download", params={"t": token, "action": "download"})
        assert expired.status_code == 410
        assert expired.json()["error"]["code"] == "expired"

        deleted = client.delete(f"/v1/users/u-1/links/{token}")
        assert deleted.status_code == 200
        assert deleted.json() == {"success": True}

        again = client.delete(f"/v1/users/u-1/links/{token}")
        assert again.status_code == 404
        assert again.json()["error"]["code"] == "not_found"


def test_expired_link_auto_deleted_from_listing(tmp_path, monkeypatch):
    clock = FakeClock()
    client = build_client(tmp_path, monkeypatch, clock=clock)
    with client:
        token = create_link(client).json()["token"]
        clock.advance(30 * 60)

        assert client.get("/v1/users/u-1/links").json()["links"] == []
        assert not (tmp_path / "links" / f"{token}.json").exists()


def test_delete_requires_ownership(tmp_path, monkeypatch):
    client = build_client(tmp_path, monkeypatch)
    with client:
        token = create_link(client).json()["token"]

        denied = client.delete(f"/v1/users/u-2/links/{token}")
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "permission_denied"
        assert len(client.get("/v1/users/u-1/links").json()["links"]) == 1


def test_missing_file_on_server(tmp_path, monkeypatch):
    client = build_client(tmp_path, monkeypatch)
    with client:
        token = create_link(client).json()["token"]
        client.get("/download", params={"t": token})
        (tmp_path / "files" / "docs" / "report.txt").unlink()

        response = client.get("/download", params={"t": token, "action": "download"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "file_missing"


def test_bad_redemption_requests(tmp_path, monkeypatch):
    client = build_client(tmp_path, monkeypatch)
    with client:
        unknown = client.get("/download", params={"t": "f" * 64})
        assert unknown.status_code == 404
        assert unknown.json()["error"]["code"] == "not_found"

        empty = client.get("/download")
        assert empty.status_code == 400
        assert empty.json()["error"]["code"] == "invalid_input"
        assert "no-store" in empty.headers["cache-control"]

        token = create_link(client).json()["token"]
        bogus = client.get("/download", params={"t": token, "action": "preview"})
        assert bogus.status_code == 400
        assert bogus.json()["error"]["code"] == "invalid_input"
        assert "no-store" in bogus.headers["cache-control"]


def test_invalid_link_type_is_rejected(tmp_path, monkeypatch):
    client = build_client(tmp_path, monkeypatch)
    with client:
        response = create_link(client, link_type="staff")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_input"


def test_missing_required_parameter_returns_bad_request(tmp_path, monkeypatch):
    client = build_client(tmp_path, monkeypatch)
    with client:
        missing = client.post("/v1/links", json={"owner_id": "u-1", "file_name": "report.txt"})
        assert missing.status_code == 400
        body = missing.json()
        assert body["error"]["code"] == "bad_request"
        assert "missing parameters" in body["error"]["message"]
        assert "file_hash" in body["error"]["message"]


def test_session_cookie_stays_small_after_many_views(tmp_path, monkeypatch):
    client = build_client(tmp_path, monkeypatch)
    with client:
        tokens = [create_link(client).json()["token"] for _ in range(40)]

        for token in tokens:
            view = client.get("/download", params={"t": token})
            assert view.status_code == 200
            assert len(view.headers["set-cookie"]) < 4096

        download = client.get("/download", params={"t": tokens[-1], "action": "download"})
        assert download.status_code == 200
        assert download.content == REPORT_BYTES

        forgotten = client.get("/download", params={"t": tokens[0], "action": "download"})
        assert forgotten.status_code == 425
