"""
Tests for the Google Drive client.

Requests are answered by httpx.MockTransport handlers, so these tests cover
query construction, pagination, error mapping and token handling without
network access.
"""

import json

import google.auth.transport
import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from app.core.drive.drive_client import (
    FOLDER_MIME_TYPE,
    GoogleDriveClient,
    RemoteFile,
    TokenManager,
    load_service_account_credentials,
    preview_url,
)
from app.core.errors import NotFoundError, RemoteUnavailableError

API = "https://drive.test/drive/v3"
UPLOAD = "https://drive.test/upload/drive/v3"
TOKEN_URI = "https://oauth.test/token"


def _client(handler, **kwargs):
    kwargs.setdefault("api_key", "test-key")
    return GoogleDriveClient(
        api_base_url=API,
        upload_base_url=UPLOAD,
        timeout=5,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.fixture(scope="module")
def service_account_info():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return {
        "type": "service_account",
        "client_email": "svc@hoclieu.iam.gserviceaccount.com",
        "private_key": pem,
        "private_key_id": "kid-1",
        "token_uri": TOKEN_URI,
    }


class _TokenResponse(google.auth.transport.Response):
    def __init__(self, status, payload):
        self._status = status
        self._data = json.dumps(payload).encode("utf-8")

    @property
    def status(self):
        return self._status

    @property
    def headers(self):
        return {"content-type": "application/json"}

    @property
    def data(self):
        return self._data


class _TokenEndpoint(google.auth.transport.Request):
    """Answers google-auth token requests without network access."""

    def __init__(self, status=200, payload=None):
        self.status = status
        self.payload = payload if payload is not None else {"access_token": "tok-1", "expires_in": 3600}
        self.calls = []

    def __call__(self, url, method="GET", body=None, headers=None, timeout=None, **kwargs):
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        self.calls.append((url, body))
        return _TokenResponse(self.status, self.payload)


class TestListing:
    @pytest.mark.asyncio
    async def test_list_children_follows_page_tokens(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request.url.params)
            if "pageToken" not in request.url.params:
                return httpx.Response(200, json={
                    "files": [{"id": "a", "name": "Lớp 6", "mimeType": FOLDER_MIME_TYPE}],
                    "nextPageToken": "p2",
                })
            return httpx.Response(200, json={"files": [{"id": "b", "name": "de.pdf", "size": "12"}]})

        files = await _client(handler).list_children("root")

        assert [f.id for f in files] == ["a", "b"]
        assert files[0].is_folder
        assert files[1].size == 12
        assert seen[0]["q"] == "'root' in parents and trashed = false"
        assert seen[0]["key"] == "test-key"
        assert seen[1]["pageToken"] == "p2"

    @pytest.mark.asyncio
    async def test_list_folders_escapes_parent(self):
        captured = {}

        def handler(request):
            captured["q"] = request.url.params["q"]
            return httpx.Response(200, json={"files": []})

        await _client(handler).list_folders("it's")

        assert captured["q"].startswith("'it\\'s' in parents")
        assert f"mimeType = '{FOLDER_MIME_TYPE}'" in captured["q"]

    @pytest.mark.asyncio
    async def test_list_files_excludes_folders(self):
        captured = {}

        def handler(request):
            captured["q"] = request.url.params["q"]
            return httpx.Response(200, json={"files": []})

        await _client(handler).list_files("fld")

        assert f"mimeType != '{FOLDER_MIME_TYPE}'" in captured["q"]


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_missing_file_is_not_found(self):
        client = _client(lambda request: httpx.Response(404, json={"error": "nope"}))
        with pytest.raises(NotFoundError):
            await client.get_metadata("missing")

    @pytest.mark.asyncio
    async def test_server_error_is_remote_unavailable(self):
        client = _client(lambda request: httpx.Response(503, text="backend error"))
        with pytest.raises(RemoteUnavailableError):
            await client.list_folders("root")

    @pytest.mark.asyncio
    async def test_transport_error_is_remote_unavailable(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(RemoteUnavailableError):
            await _client(handler).list_folders("root")

    @pytest.mark.asyncio
    async def test_no_credentials(self):
        client = _client(lambda request: httpx.Response(200, json={}), api_key=None)
        assert not client.can_write
        with pytest.raises(RemoteUnavailableError):
            await client.list_folders("root")

    @pytest.mark.asyncio
    async def test_delete_of_missing_file_succeeds(self):
        client = _client(lambda request: httpx.Response(404))
        await client.delete_file("gone")


class TestWrites:
    @pytest.mark.asyncio
    async def test_create_folder(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "new", "name": "Toán", "mimeType": FOLDER_MIME_TYPE})

        folder = await _client(handler).create_folder("grade", "Toán")

        assert folder.id == "new"
        assert captured["body"] == {"name": "Toán", "mimeType": FOLDER_MIME_TYPE, "parents": ["grade"]}

    @pytest.mark.asyncio
    async def test_upload_sends_multipart_related(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["content_type"] = request.headers["content-type"]
            captured["body"] = request.content
            return httpx.Response(200, json={"id": "f1", "name": "bai tap.pdf", "size": "5"})

        uploaded = await _client(handler).upload_file("fld", "bai tap.pdf", "application/pdf", b"%PDF-")

        assert uploaded.id == "f1"
        assert captured["url"].startswith(f"{UPLOAD}/files")
        assert "uploadType=multipart" in captured["url"]
        assert captured["content_type"].startswith("multipart/related; boundary=")
        assert b'"parents": ["fld"]' in captured["body"]
        assert b"Content-Type: application/pdf" in captured["body"]
        assert b"%PDF-" in captured["body"]


class TestDownload:
    @pytest.mark.asyncio
    async def test_streams_content(self):
        def handler(request):
            assert request.url.params["alt"] == "media"
            return httpx.Response(200, content=b"0123456789")

        chunks = [c async for c in _client(handler).download_stream("f1", chunk_size=4)]

        assert b"".join(chunks) == b"0123456789"

    @pytest.mark.asyncio
    async def test_missing_file_raises_on_iteration(self):
        stream = _client(lambda request: httpx.Response(404)).download_stream("gone")
        with pytest.raises(NotFoundError):
            async for _ in stream:
                pass


class TestTokenManager:
    @pytest.mark.asyncio
    async def test_service_account_requests_use_bearer_token(self, service_account_info):
        endpoint = _TokenEndpoint()
        credentials = load_service_account_credentials(inline_key=json.dumps(service_account_info))
        auth_headers = []

        def handler(request):
            auth_headers.append(request.headers.get("authorization"))
            return httpx.Response(200, json={"files": []})

        client = _client(handler, api_key=None, token_manager=TokenManager(credentials, request=endpoint))
        await client.list_folders("root")
        await client.list_folders("root")

        assert client.can_write
        assert len(endpoint.calls) == 1
        url, body = endpoint.calls[0]
        assert url == TOKEN_URI
        assert "jwt-bearer" in body
        assert auth_headers == ["Bearer tok-1", "Bearer tok-1"]

    @pytest.mark.asyncio
    async def test_rejected_refresh_is_remote_unavailable(self, service_account_info):
        endpoint = _TokenEndpoint(status=400, payload={"error": "invalid_grant"})
        credentials = load_service_account_credentials(inline_key=json.dumps(service_account_info))

        with pytest.raises(RemoteUnavailableError):
            await TokenManager(credentials, request=endpoint).get_valid_token()

    def test_credentials_from_file(self, tmp_path, service_account_info):
        key_file = tmp_path / "key.json"
        key_file.write_text(json.dumps(service_account_info), encoding="utf-8")

        credentials = load_service_account_credentials(str(key_file))

        assert credentials.service_account_email == service_account_info["client_email"]

    def test_invalid_key_json(self):
        with pytest.raises(RemoteUnavailableError):
            load_service_account_credentials(inline_key="{not json")
        with pytest.raises(RemoteUnavailableError):
            load_service_account_credentials(inline_key=json.dumps({"client_email": "x"}))

    def test_missing_key_file(self, tmp_path):
        with pytest.raises(RemoteUnavailableError):
            load_service_account_credentials(str(tmp_path / "missing.json"))
        assert load_service_account_credentials(None, None) is None


def test_preview_url_falls_back_to_file_id():
    assert preview_url(RemoteFile(id="f1", name="x", web_link="https://l")) == "https://l"
    assert preview_url(RemoteFile(id="f1", name="x")) == "https://drive.google.com/file/d/f1/view"
