"""
Shared test configuration and fixtures.

Provides signing keys, credentials, and a recording XRPC service served by
aiohttp's TestServer so tests can count the requests a call makes.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

import pytest
import pytest_asyncio
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer
from jwcrypto import jwk
from multidict import CIMultiDict, MultiDict

from social.graze.xrpc.app.config import Settings
from social.graze.xrpc.model.credentials import BasicCredential, ProofBoundCredential


@dataclass
class RecordedCall:
    method: str
    path: str
    query: MultiDict
    headers: CIMultiDict
    body: bytes


@dataclass
class QueuedResponse:
    status: int = 200
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    delay: float = 0


class FakeXrpcService:
    """Replays queued responses in order and records every request it receives."""

    def __init__(self) -> None:
        self.calls: List[RecordedCall] = []
        self.base_url = ""
        self._responses: Deque[QueuedResponse] = deque()
        self.app = web.Application()
        self.app.router.add_route("*", "/{tail:.*}", self._handle)

    def enqueue(
        self,
        status: int = 200,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        delay: float = 0,
    ) -> None:
        self._responses.append(QueuedResponse(status, body, headers or {}, delay))

    def paths(self) -> List[str]:
        return [call.path for call in self.calls]

    async def _handle(self, request: web.Request) -> web.Response:
        self.calls.append(
            RecordedCall(
                method=request.method,
                path=request.path,
                query=request.query.copy(),
                headers=request.headers.copy(),
                body=await request.read(),
            )
        )
        if len(self._responses) == 0:
            return web.json_response({"error": "NoResponseQueued"}, status=500)

        response = self._responses.popleft()
        if response.delay > 0:
            await asyncio.sleep(response.delay)
        if response.body is None:
            return web.Response(status=response.status, headers=response.headers)
        return web.json_response(
            response.body, status=response.status, headers=response.headers
        )


@pytest_asyncio.fixture
async def fake_service():
    """Start a FakeXrpcService on a local port for the duration of a test."""
    service = FakeXrpcService()
    server = TestServer(service.app)
    await server.start_server()
    service.base_url = str(server.make_url("")).rstrip("/")
    try:
        yield service
    finally:
        await server.close()


@pytest_asyncio.fixture
async def http_session():
    async with ClientSession() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(default_service="https://bsky.social")


@pytest.fixture
def ec_key() -> jwk.JWK:
    return jwk.JWK.generate(kty="EC", crv="P-256")


@pytest.fixture
def basic_credential() -> BasicCredential:
    return BasicCredential(
        service="https://pds.example.com",
        access_token="access-token",
        refresh_token="refresh-token",
        did="did:plc:ec72yg6n2sydzjvtovvdlxrk",
    )


@pytest.fixture
def proof_bound_credential(ec_key) -> ProofBoundCredential:
    return ProofBoundCredential(
        service="https://pds.example.com",
        access_token="access-token",
        refresh_token="refresh-token",
        did="did:plc:ec72yg6n2sydzjvtovvdlxrk",
        dpop_key=ec_key,
        dpop_nonce="nonce",
    )
