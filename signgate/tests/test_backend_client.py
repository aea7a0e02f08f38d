import json

import httpx
import pytest
from tenacity import wait_none

from signgate.app.core.config import Settings
from signgate.app.core.errors import (
    BackendError,
    BackendNotConfigured,
    BackendUnavailable,
)
from signgate.app.services.backend_client import SigningBackendClient
from signgate.tests.fixtures.pdf_factory import pdf_upload

pytestmark = pytest.mark.anyio

BASE_URL = "http://backend.test"
API_KEY = "test-api-key"


def make_settings(**overrides) -> Settings:
    values = {
        "backend_base_url": BASE_URL,
        "backend_api_key": API_KEY,
        "backend_retry_attempts": 3,
    }
    values.update(overrides)
    return Settings(**values)


def make_client(handler, settings: Settings = None) -> SigningBackendClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SigningBackendClient(
        http_client,
        settings or make_settings(),
        retry_wait=wait_none(),
    )


# ----------------------------------------------------------------------
# Happy paths
# ----------------------------------------------------------------------

async def test_create_session_posts_multipart_with_api_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["api_key"] = request.headers.get("X-API-Key")
        seen["content_type"] = request.headers.get("Content-Type")
        seen["body"] = request.read()
        return httpx.Response(
            200,
            json={"sessionId": "s1", "documentHash": "0x" + "ab" * 32},
        )

    client = make_client(handler)

    created = await client.create_session(
        document=pdf_upload(),
        signer_address="0x" + "dd" * 20,
        user_id="alice",
        message="Document signing request",
        timestamp="2024-01-01T00:00:00.000Z",
    )

    assert created.session_id == "s1"
    assert created.document_hash == "0x" + "ab" * 32
    assert seen["method"] == "POST"
    assert seen["path"] == "/api/web3-signing/sessions"
    assert seen["api_key"] == API_KEY
    assert seen["content_type"].startswith("multipart/form-data")
    assert b'name="signerAddress"' in seen["body"]
    assert b'name="userID"' in seen["body"]
    assert b'name="document"; filename="contract.pdf"' in seen["body"]


async def test_sign_document_uses_link_from_reply():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        body = json.loads(request.content)
        assert body["sessionId"] == "s1"
        assert body["eip712Signature"]["message"] == {"sessionId": "s1"}
        assert body["walletAddress"] == "0xabc"
        return httpx.Response(
            200, json={"verificationLink": "https://verify.test/s1"}
        )

    client = make_client(handler)

    result = await client.sign_document(
        session_id="s1",
        signature="0x" + "1b" * 65,
        message={"sessionId": "s1"},
        wallet_address="0xabc",
    )

    assert calls == [("POST", "/api/web3-signing/sign")]
    assert result.verification_link == "https://verify.test/s1"
    assert result.document_url == (
        f"{BASE_URL}/api/web3-signing/sessions/s1/document"
    )


async def test_sign_document_resolves_link_when_reply_has_none():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.method == "POST":
            return httpx.Response(200, json={"success": True})
        return httpx.Response(200, json={"link": "https://verify.test/s1"})

    client = make_client(handler)

    result = await client.sign_document(
        session_id="s1", signature="0x" + "1b" * 65
    )

    assert result.verification_link == "https://verify.test/s1"
    assert calls == [
        ("POST", "/api/web3-signing/sign"),
        ("GET", "/api/web3-signing/sessions/s1/verification-link"),
    ]


async def test_sign_document_survives_failed_link_lookup():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        if request.method == "POST":
            return httpx.Response(200, json={"success": True})
        return httpx.Response(400, json={"error": "link not ready"})

    client = make_client(handler)

    result = await client.sign_document(
        session_id="s1", signature="0x" + "1b" * 65
    )

    assert result.verification_link is None
    assert result.document_url == (
        f"{BASE_URL}/api/web3-signing/sessions/s1/document"
    )
    assert calls == [
        ("POST", "/api/web3-signing/sign"),
        ("GET", "/api/web3-signing/sessions/s1/verification-link"),
    ]


async def test_eip712_domain_without_types_gets_default_struct():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "name": "Document Signing",
                "version": "1",
                "chainId": 1,
                "verifyingContract": "0x" + "cc" * 20,
            },
        )

    envelope = await make_client(handler).get_eip712_domain()

    assert envelope.domain.chain_id == 1
    assert "DocumentSignature" in envelope.types


async def test_signed_document_is_returned_as_bytes():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Accept"] == "application/pdf"
        return httpx.Response(200, content=b"%PDF-1.7 signed")

    pdf = await make_client(handler).get_signed_document("s1")
    assert pdf == b"%PDF-1.7 signed"


# ----------------------------------------------------------------------
# Failure mapping
# ----------------------------------------------------------------------

async def test_non_success_becomes_backend_error_with_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="upstream exploded")

    with pytest.raises(BackendError) as excinfo:
        await make_client(handler).get_verification_link("s1")

    assert excinfo.value.status_code == 502
    assert excinfo.value.body == "upstream exploded"
    assert excinfo.value.operation == "get_verification_link"


async def test_non_json_reply_becomes_backend_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(BackendError):
        await make_client(handler).get_eip712_domain()


async def test_empty_verification_link_is_an_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"verificationLink": ""})

    with pytest.raises(BackendError):
        await make_client(handler).get_verification_link("s1")


async def test_get_is_retried_on_network_failure():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.path)
        if len(attempts) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"url": "https://verify.test/s1"})

    link = await make_client(handler).get_verification_link("s1")

    assert link == "https://verify.test/s1"
    assert len(attempts) == 3


async def test_get_gives_up_after_configured_attempts():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.path)
        raise httpx.ConnectTimeout("timed out", request=request)

    client = make_client(handler, make_settings(backend_retry_attempts=2))

    with pytest.raises(BackendUnavailable):
        await client.get_verification_link("s1")

    assert len(attempts) == 2


async def test_post_is_never_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.path)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BackendUnavailable):
        await make_client(handler).sign_document(
            session_id="s1", signature="0x" + "1b" * 65
        )

    assert len(attempts) == 1


async def test_backend_error_is_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.path)
        return httpx.Response(500, text="boom")

    with pytest.raises(BackendError):
        await make_client(handler).get_signed_document("s1")

    assert len(attempts) == 1


async def test_verify_signature_is_false_when_link_missing():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "not found"})

    assert await make_client(handler).verify_signature("s1") is False


async def test_unconfigured_backend_fails_before_network():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    settings = Settings(backend_base_url=None, backend_api_key=None)

    with pytest.raises(BackendNotConfigured):
        await make_client(handler, settings).get_eip712_domain()


async def test_session_ids_are_path_quoted():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.raw_path)
        return httpx.Response(200, json={"verificationLink": "https://v"})

    await make_client(handler).get_verification_link("a/b")

    assert seen == [b"/api/web3-signing/sessions/a%2Fb/verification-link"]
