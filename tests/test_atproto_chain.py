"""
Unit tests for the XRPC middleware chain in social.graze.xrpc.atproto.chain

Tests cover request/response transformation, credential attachment, DPoP nonce
rotation, the single-retry bound, cancellation and metrics recording.
"""

import asyncio
import dataclasses
import json
from typing import Any, Dict
from unittest.mock import AsyncMock, Mock

import pytest
from aiohttp import ClientResponse, hdrs
from jwcrypto import jwk, jwt
from multidict import CIMultiDict, CIMultiDictProxy

from social.graze.xrpc.app.metrics import MetricsClient
from social.graze.xrpc.atproto.chain import (
    AuthorizationMiddleware,
    ChainMiddlewareContext,
    ChainRequest,
    ChainResponse,
    DebugMiddleware,
    StatsdMiddleware,
)
from social.graze.xrpc.errors import AuthenticationRequiredError, RequestCancelledError
from social.graze.xrpc.model.credentials import ProofBoundCredential
from social.graze.xrpc.session.store import CredentialStore

URL = "https://pds.example.com/xrpc/com.atproto.repo.createRecord"


def create_headers_proxy(headers_list):
    """Create CIMultiDictProxy from list of tuples."""
    return CIMultiDictProxy(CIMultiDict(headers_list))


def create_mock_response(
    status: int = 200,
    headers: Dict[str, str] | None = None,
    content_type: str = "application/json",
    raw: bytes = b"",
) -> ClientResponse:
    """Create a mock aiohttp ClientResponse."""
    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status
    headers_dict = dict(headers or {})
    headers_dict.setdefault(hdrs.CONTENT_TYPE, content_type)
    mock_response.headers = CIMultiDictProxy(CIMultiDict(headers_dict))
    mock_response.read = AsyncMock(return_value=raw)
    return mock_response


def chain_response(status: int = 200, headers=None, body: Any = None) -> ChainResponse:
    return ChainResponse(
        status=status, headers=create_headers_proxy(list((headers or {}).items())), body=body
    )


def proof_claims(request: ChainRequest) -> Dict[str, Any]:
    """Verify the DPoP proof on ``request`` against its credential and return the claims."""
    key = jwk.JWK(**request.credential.dpop_key.export_public(as_dict=True))
    token = jwt.JWT(jwt=request.headers["DPoP"], key=key)
    return json.loads(token.claims)


class TestChainRequest:
    """Test ChainRequest dataclass and methods."""

    def test_chain_request_minimal_creation(self):
        request = ChainRequest(method="GET", url="https://example.com")

        assert request.headers is None
        assert request.kwargs is None
        assert request.credential is None
        assert request.attempt == 1

    def test_from_chain_request_copy(self, basic_credential):
        original = ChainRequest(
            method="POST",
            url=URL,
            headers={"Content-Type": "application/json"},
            kwargs={"data": b"{}"},
            credential=basic_credential,
        )

        copy = ChainRequest.from_chain_request(original)
        copy.headers["Authorization"] = "changed"

        assert copy is not original
        assert copy.attempt == 2
        assert copy.kwargs == original.kwargs
        assert copy.credential is basic_credential
        assert "Authorization" not in original.headers


class TestChainResponse:
    """Test ChainResponse dataclass and methods."""

    @pytest.mark.asyncio
    async def test_from_aiohttp_response_json(self):
        mock_response = create_mock_response(raw=b'{"key": "value"}')

        response = await ChainResponse.from_aiohttp_response(mock_response)

        assert response.status == 200
        assert response.body == {"key": "value"}
        mock_response.read.assert_called_once()

    @pytest.mark.asyncio
    async def test_from_aiohttp_response_invalid_json(self):
        mock_response = create_mock_response(status=502, raw=b"<html>bad gateway")

        response = await ChainResponse.from_aiohttp_response(mock_response)

        assert response.body == "<html>bad gateway"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content_type",
        ["application/did+ld+json", "application/did+json", "application/json; charset=utf-8"],
    )
    async def test_from_aiohttp_response_structured_json(self, content_type):
        mock_response = create_mock_response(
            content_type=content_type, raw=b'{"id": "did:plc:ec72yg6n2sydzjvtovvdlxrk"}'
        )

        response = await ChainResponse.from_aiohttp_response(mock_response)

        assert response.body == {"id": "did:plc:ec72yg6n2sydzjvtovvdlxrk"}

    @pytest.mark.asyncio
    async def test_from_aiohttp_response_text(self):
        mock_response = create_mock_response(content_type="text/plain", raw=b"hello")
        response = await ChainResponse.from_aiohttp_response(mock_response)
        assert response.body == "hello"

    @pytest.mark.asyncio
    async def test_from_aiohttp_response_binary(self):
        mock_response = create_mock_response(
            content_type="application/octet-stream", raw=b"\x00\x01"
        )
        response = await ChainResponse.from_aiohttp_response(mock_response)
        assert response.body == b"\x00\x01"

    @pytest.mark.asyncio
    async def test_from_aiohttp_response_empty(self):
        mock_response = create_mock_response(status=200, raw=b"")
        response = await ChainResponse.from_aiohttp_response(mock_response)
        assert response.body is None

    def test_ok(self):
        assert chain_response(204).ok
        assert not chain_response(400).ok

    def test_error_code_from_body(self):
        response = chain_response(400, body={"error": "use_dpop_nonce"})
        assert response.error_code == "use_dpop_nonce"

    def test_error_code_from_challenge(self):
        response = chain_response(
            401,
            headers={
                "WWW-Authenticate": 'DPoP error="use_dpop_nonce", error_description="x"'
            },
        )
        assert response.error_code == "use_dpop_nonce"

    def test_error_detail_from_body(self):
        response = chain_response(
            400, body={"error": "InvalidRequest", "message": "bad collection"}
        )
        detail = response.error_detail()
        assert detail.error == "InvalidRequest"
        assert detail.message == "bad collection"

    def test_error_detail_with_unexpected_shape(self):
        response = chain_response(400, body={"error": 7})
        detail = response.error_detail()
        assert detail.error is None
        assert json.loads(detail.message) == {"error": 7}

    def test_error_detail_text_and_empty(self):
        assert chain_response(500, body="oops").error_detail().message == "oops"
        assert chain_response(500).error_detail() is None


class TestAuthorizationMiddleware:
    @pytest.mark.asyncio
    async def test_basic_credential(self, basic_credential):
        store = CredentialStore(basic_credential)
        next_callback = AsyncMock(return_value=(chain_response(200), None))
        middleware = AuthorizationMiddleware(store)

        _, retry_request = await middleware.handle(
            next_callback, ChainRequest(method="GET", url=URL, headers={})
        )

        sent: ChainRequest = next_callback.call_args.args[0]
        assert sent.headers[hdrs.AUTHORIZATION] == "Bearer access-token"
        assert "DPoP" not in sent.headers
        assert retry_request is None

    @pytest.mark.asyncio
    async def test_refresh_token(self, basic_credential):
        store = CredentialStore(basic_credential)
        next_callback = AsyncMock(return_value=(chain_response(200), None))
        middleware = AuthorizationMiddleware(store, use_refresh_token=True)

        await middleware.handle(next_callback, ChainRequest(method="POST", url=URL))

        sent: ChainRequest = next_callback.call_args.args[0]
        assert sent.headers[hdrs.AUTHORIZATION] == "Bearer refresh-token"

    @pytest.mark.asyncio
    async def test_no_credential(self):
        middleware = AuthorizationMiddleware(CredentialStore())
        next_callback = AsyncMock()

        with pytest.raises(AuthenticationRequiredError):
            await middleware.handle(next_callback, ChainRequest(method="GET", url=URL))

        next_callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_proof_bound_credential_without_nonce(self, ec_key):
        store = CredentialStore(
            ProofBoundCredential(
                service="https://pds.example.com", access_token="t", dpop_key=ec_key
            )
        )
        next_callback = AsyncMock(return_value=(chain_response(200), None))

        await AuthorizationMiddleware(store).handle(
            next_callback, ChainRequest(method="GET", url=URL)
        )

        sent: ChainRequest = next_callback.call_args.args[0]
        assert sent.headers[hdrs.AUTHORIZATION] == "DPoP t"
        assert "nonce" not in proof_claims(sent)

    @pytest.mark.asyncio
    async def test_rotation_on_success(self, proof_bound_credential):
        store = CredentialStore(proof_bound_credential)
        observer = Mock()
        store.notifier.subscribe(observer)
        next_callback = AsyncMock(
            return_value=(chain_response(200, headers={"DPoP-Nonce": "newNonce"}), None)
        )

        _, retry_request = await AuthorizationMiddleware(store).handle(
            next_callback, ChainRequest(method="POST", url=URL)
        )

        sent: ChainRequest = next_callback.call_args.args[0]
        assert proof_claims(sent)["nonce"] == "nonce"
        assert store.get().dpop_nonce == "newNonce"
        observer.assert_called_once()
        assert observer.call_args.args[0].dpop_nonce == "newNonce"
        assert retry_request is None

    @pytest.mark.asyncio
    async def test_unchanged_nonce_not_stored(self, proof_bound_credential):
        store = CredentialStore(proof_bound_credential)
        observer = Mock()
        store.notifier.subscribe(observer)
        next_callback = AsyncMock(
            return_value=(chain_response(200, headers={"DPoP-Nonce": "nonce"}), None)
        )

        await AuthorizationMiddleware(store).handle(
            next_callback, ChainRequest(method="POST", url=URL)
        )

        observer.assert_not_called()
        assert store.get() is proof_bound_credential

    @pytest.mark.asyncio
    async def test_stale_nonce_requests_retry(self, proof_bound_credential):
        store = CredentialStore(proof_bound_credential)
        next_callback = AsyncMock(
            return_value=(
                chain_response(
                    400, headers={"DPoP-Nonce": "newNonce"}, body={"error": "use_dpop_nonce"}
                ),
                None,
            )
        )

        _, retry_request = await AuthorizationMiddleware(store).handle(
            next_callback, ChainRequest(method="POST", url=URL)
        )

        assert retry_request is not None
        assert retry_request.attempt == 2
        assert retry_request.credential.dpop_nonce == "newNonce"
        assert store.get().dpop_nonce == "newNonce"

    @pytest.mark.asyncio
    async def test_stale_nonce_challenge_requests_retry(self, proof_bound_credential):
        store = CredentialStore(proof_bound_credential)
        response = chain_response(
            401,
            headers={
                "DPoP-Nonce": "newNonce",
                "WWW-Authenticate": 'DPoP error="use_dpop_nonce"',
            },
        )
        next_callback = AsyncMock(return_value=(response, None))

        _, retry_request = await AuthorizationMiddleware(store).handle(
            next_callback, ChainRequest(method="GET", url=URL)
        )

        assert retry_request is not None

    @pytest.mark.asyncio
    async def test_stale_nonce_without_rotation_is_not_retried(
        self, proof_bound_credential
    ):
        store = CredentialStore(proof_bound_credential)
        next_callback = AsyncMock(
            return_value=(chain_response(400, body={"error": "use_dpop_nonce"}), None)
        )

        _, retry_request = await AuthorizationMiddleware(store).handle(
            next_callback, ChainRequest(method="POST", url=URL)
        )

        assert retry_request is None

    @pytest.mark.asyncio
    async def test_other_error_code_is_not_retried(self, proof_bound_credential):
        store = CredentialStore(proof_bound_credential)
        next_callback = AsyncMock(
            return_value=(
                chain_response(
                    401, headers={"DPoP-Nonce": "newNonce"}, body={"error": "ExpiredToken"}
                ),
                None,
            )
        )

        _, retry_request = await AuthorizationMiddleware(store).handle(
            next_callback, ChainRequest(method="POST", url=URL)
        )

        assert retry_request is None
        assert store.get().dpop_nonce == "newNonce"

    @pytest.mark.asyncio
    async def test_configured_error_codes(self, proof_bound_credential):
        store = CredentialStore(proof_bound_credential)
        next_callback = AsyncMock(
            return_value=(
                chain_response(
                    401, headers={"DPoP-Nonce": "newNonce"}, body={"error": "stale_nonce"}
                ),
                None,
            )
        )
        middleware = AuthorizationMiddleware(store, retry_error_codes=["stale_nonce"])

        _, retry_request = await middleware.handle(
            next_callback, ChainRequest(method="POST", url=URL)
        )

        assert retry_request is not None

    @pytest.mark.asyncio
    async def test_refresh_during_request_is_kept(self, proof_bound_credential):
        store = CredentialStore(proof_bound_credential)
        refreshed = dataclasses.replace(
            proof_bound_credential, access_token="refreshed", refresh_token="refreshed-r"
        )

        async def refresh_then_respond(request):
            store.replace(refreshed)
            response = chain_response(
                400, headers={"DPoP-Nonce": "newNonce"}, body={"error": "use_dpop_nonce"}
            )
            return response, None

        _, retry_request = await AuthorizationMiddleware(store).handle(
            refresh_then_respond, ChainRequest(method="POST", url=URL)
        )

        assert store.get() is refreshed
        assert retry_request.credential.access_token == "access-token"
        assert retry_request.credential.dpop_nonce == "newNonce"

    @pytest.mark.asyncio
    async def test_nonce_applied_to_current_credential(self, proof_bound_credential):
        store = CredentialStore(proof_bound_credential)

        async def rotate_elsewhere_then_respond(request):
            store.replace(proof_bound_credential.with_nonce("otherNonce"))
            return chain_response(200, headers={"DPoP-Nonce": "newNonce"}), None

        await AuthorizationMiddleware(store).handle(
            rotate_elsewhere_then_respond, ChainRequest(method="GET", url=URL)
        )

        assert store.get().dpop_nonce == "newNonce"
        assert store.get().access_token == "access-token"

    @pytest.mark.asyncio
    async def test_retry_uses_request_credential(self, proof_bound_credential):
        store = CredentialStore(proof_bound_credential)
        rotated = proof_bound_credential.with_nonce("newNonce")
        store.replace(proof_bound_credential.with_nonce("concurrent"))
        next_callback = AsyncMock(return_value=(chain_response(200), None))

        await AuthorizationMiddleware(store).handle(
            next_callback,
            ChainRequest(method="POST", url=URL, credential=rotated, attempt=2),
        )

        sent: ChainRequest = next_callback.call_args.args[0]
        assert proof_claims(sent)["nonce"] == "newNonce"


class TestChainMiddlewareContext:
    @pytest.mark.asyncio
    async def test_single_attempt(self):
        callback = AsyncMock(return_value=(chain_response(200), None))
        context = ChainMiddlewareContext(callback, ChainRequest(method="GET", url=URL))

        response = await context

        assert response.status == 200
        assert context.attempts == 1

    @pytest.mark.asyncio
    async def test_at_most_one_retry(self):
        def always_retry(request):
            return chain_response(400), ChainRequest.from_chain_request(request)

        callback = AsyncMock(side_effect=always_retry)
        context = ChainMiddlewareContext(callback, ChainRequest(method="GET", url=URL))

        response = await context

        assert response.status == 400

        assert context.attempts == 2
        assert callback.call_count == 2
        assert callback.call_args.args[0].attempt == 2

    @pytest.mark.asyncio
    async def test_cancelled_before_send(self):
        cancel_event = asyncio.Event()
        cancel_event.set()
        callback = AsyncMock()
        context = ChainMiddlewareContext(
            callback, ChainRequest(method="GET", url=URL), cancel_event
        )

        with pytest.raises(RequestCancelledError):
            await context

        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancelled_in_flight(self):
        cancel_event = asyncio.Event()
        started = asyncio.Event()

        async def slow(request):
            started.set()
            await asyncio.sleep(10)
            return chain_response(200), None

        context = ChainMiddlewareContext(
            slow, ChainRequest(method="GET", url=URL), cancel_event
        )
        async def run():
            return await context

        task = asyncio.ensure_future(run())
        await started.wait()
        cancel_event.set()

        with pytest.raises(RequestCancelledError):
            await asyncio.wait_for(task, timeout=2)


class TestStatsdMiddleware:
    @pytest.mark.asyncio
    async def test_records_request(self):
        metrics_client = Mock(spec=MetricsClient)
        next_callback = AsyncMock(return_value=(chain_response(201), None))

        await StatsdMiddleware(metrics_client).handle(
            next_callback, ChainRequest(method="POST", url=URL)
        )

        metrics_client.timer.assert_called_once()
        assert metrics_client.timer.call_args.args[0] == "xrpc.request.time"
        metrics_client.increment.assert_called_once_with(
            "xrpc.request.count",
            1,
            tag_dict={"method": "post", "attempt": "1", "status": "201"},
        )

    @pytest.mark.asyncio
    async def test_records_exception(self):
        metrics_client = Mock(spec=MetricsClient)
        next_callback = AsyncMock(side_effect=ConnectionResetError())

        with pytest.raises(ConnectionResetError):
            await StatsdMiddleware(metrics_client).handle(
                next_callback, ChainRequest(method="GET", url=URL)
            )

        assert metrics_client.increment.call_args.args[0] == "xrpc.request.exception"
        metrics_client.timer.assert_called_once()

    @pytest.mark.asyncio
    async def test_records_rate_limit_remaining(self):
        metrics_client = Mock(spec=MetricsClient)
        headers = {
            "ratelimit-limit": "3000",
            "ratelimit-remaining": "2999",
            "ratelimit-reset": "1735689600",
        }
        next_callback = AsyncMock(return_value=(chain_response(200, headers), None))

        await StatsdMiddleware(metrics_client).handle(
            next_callback, ChainRequest(method="GET", url=URL)
        )

        metrics_client.gauge.assert_called_once_with(
            "xrpc.ratelimit.remaining",
            2999,
            tag_dict={"method": "get", "attempt": "1"},
        )

    @pytest.mark.asyncio
    async def test_no_rate_limit_gauge_without_headers(self):
        metrics_client = Mock(spec=MetricsClient)
        next_callback = AsyncMock(return_value=(chain_response(200), None))

        await StatsdMiddleware(metrics_client).handle(
            next_callback, ChainRequest(method="GET", url=URL)
        )

        metrics_client.gauge.assert_not_called()


class TestDebugMiddleware:
    @pytest.mark.asyncio
    async def test_authorization_not_logged(self, caplog):
        next_callback = AsyncMock(return_value=(chain_response(200), None))
        request = ChainRequest(
            method="GET", url=URL, headers={hdrs.AUTHORIZATION: "Bearer secret-token"}
        )

        with caplog.at_level("DEBUG", logger="social.graze.xrpc.atproto.chain"):
            await DebugMiddleware().handle(next_callback, request)

        assert "secret-token" not in caplog.text
        assert URL in caplog.text
