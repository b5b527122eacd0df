"""
Owning session for XRPC calls.

:class:`AtProtoAgent` ties together the credential store, the update notifier and
an :class:`~social.graze.xrpc.client.XrpcClient`. It establishes sessions with an
account password, exchanges refresh tokens, and ends sessions. The wrapper methods
supply a fixed operation and payload and leave everything else to the client.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Optional

from aiohttp import ClientSession, hdrs

from social.graze.xrpc.app.config import Settings
from social.graze.xrpc.app.metrics import MetricsClient, create_metrics_client
from social.graze.xrpc.client import XrpcClient, xrpc_url
from social.graze.xrpc.errors import AuthenticationRequiredError
from social.graze.xrpc.model.credentials import BasicCredential, Credential
from social.graze.xrpc.model.responses import (
    RecordResponse,
    ServerDescription,
    SessionInfo,
    SessionResponse,
    StrongRef,
)
from social.graze.xrpc.model.result import EmptyResponse, XrpcResult
from social.graze.xrpc.resolve.did import resolve_pds
from social.graze.xrpc.session.notifier import (
    CredentialObserver,
    CredentialUpdateNotifier,
)
from social.graze.xrpc.session.store import CredentialStore

logger = logging.getLogger(__name__)


class AtProtoAgent:
    """
    An AT Protocol session.

    The agent can be given an existing ``http_session`` or create its own when used
    as an async context manager::

        async with AtProtoAgent() as agent:
            await agent.login("alice.example.com", "app-password")
            result = await agent.get_session()

    Observers registered with :meth:`subscribe` receive every credential change,
    including DPoP nonce rotations made by the request chain, and ``None`` on logout.
    """

    def __init__(
        self,
        http_session: Optional[ClientSession] = None,
        settings: Optional[Settings] = None,
        credential: Optional[Credential] = None,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.notifier = CredentialUpdateNotifier()
        self.store = CredentialStore(credential, self.notifier)
        self._metrics_client = metrics_client
        self._owns_metrics_client = False
        self._owns_http_session = http_session is None
        self._client: Optional[XrpcClient] = None
        if http_session is not None:
            self._client = self._create_client(http_session)

    def _create_client(self, http_session: ClientSession) -> XrpcClient:
        return XrpcClient(
            http_session,
            store=self.store,
            settings=self.settings,
            metrics_client=self._metrics_client,
        )

    async def __aenter__(self) -> "AtProtoAgent":
        if self._metrics_client is None:
            self._metrics_client = await create_metrics_client(self.settings)
            self._owns_metrics_client = True

        if self._client is None:
            http_session = ClientSession()
        else:
            http_session = self._client.http_session
        self._client = self._create_client(http_session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_http_session and self._client is not None:
            await self._client.http_session.close()
            self._client = None
        if self._owns_metrics_client and self._metrics_client is not None:
            await self._metrics_client.close()
            self._metrics_client = None
            self._owns_metrics_client = False

    @property
    def client(self) -> XrpcClient:
        if self._client is None:
            raise RuntimeError(
                "AtProtoAgent has no HTTP session; pass one or use 'async with'"
            )
        return self._client

    @property
    def credentials(self) -> Optional[Credential]:
        return self.store.get()

    @property
    def authenticated(self) -> bool:
        return self.store.get() is not None

    def subscribe(self, observer: CredentialObserver) -> Callable[[], None]:
        """Register ``observer`` for credential changes. Returns an unsubscribe callable."""
        return self.notifier.subscribe(observer)

    def _require_credential(self, operation: str) -> Credential:
        credential = self.store.get()
        if credential is None:
            raise AuthenticationRequiredError(
                f"{operation} requires an authenticated session"
            )
        return credential

    async def login(
        self,
        identifier: str,
        password: str,
        service: Optional[str] = None,
        auth_factor_token: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> XrpcResult[SessionResponse]:
        """
        Create a session with an account password via com.atproto.server.createSession.

        On success the store holds a new bearer credential for ``service`` and
        observers are notified. A failed login leaves the store untouched.
        """
        service = service or self.settings.default_service
        body: Dict[str, Any] = {"identifier": identifier, "password": password}
        if auth_factor_token is not None:
            body["authFactorToken"] = auth_factor_token

        result = await self.client.send(
            hdrs.METH_POST,
            xrpc_url(service, "com.atproto.server.createSession"),
            body=body,
            result_type=SessionResponse,
            authenticated=False,
            cancel_event=cancel_event,
        )
        if not result.succeeded or result.value is None:
            logger.info("Login failed for %s: %s", identifier, result.error)
            return result

        self.store.replace(
            BasicCredential(
                service=service,
                access_token=result.value.access_jwt,
                refresh_token=result.value.refresh_jwt,
                did=result.value.did,
            )
        )
        return result

    async def refresh_session(
        self, cancel_event: Optional[asyncio.Event] = None
    ) -> XrpcResult[SessionResponse]:
        """
        Exchange the refresh token for new tokens via com.atproto.server.refreshSession.

        The refreshed credential keeps the shape, service and key of the current one.
        """
        self._require_credential("refresh_session")

        result = await self.client.procedure(
            "com.atproto.server.refreshSession",
            result_type=SessionResponse,
            use_refresh_token=True,
            cancel_event=cancel_event,
        )
        if not result.succeeded or result.value is None:
            logger.info("Session refresh failed: %s", result.error)
            return result

        # The stored credential may carry a newer nonce than the one sent.
        current = self._require_credential("refresh_session")
        self.store.replace(
            replace(
                current,
                access_token=result.value.access_jwt,
                refresh_token=result.value.refresh_jwt,
                did=result.value.did,
            )
        )
        return result

    async def logout(
        self, cancel_event: Optional[asyncio.Event] = None
    ) -> Optional[XrpcResult[EmptyResponse]]:
        """
        End the session via com.atproto.server.deleteSession and clear the store.

        The store is cleared whatever the server answers. Returns None when there was
        no session to end or the credential has no refresh token to revoke.
        """
        credential = self.store.get()
        if credential is None:
            return None

        result: Optional[XrpcResult[EmptyResponse]] = None
        if credential.refresh_token is not None:
            result = await self.client.procedure(
                "com.atproto.server.deleteSession",
                result_type=EmptyResponse,
                use_refresh_token=True,
                cancel_event=cancel_event,
            )
            if not result.succeeded:
                logger.warning("Server did not delete session: %s", result.error)

        self.store.clear()
        return result

    async def resolve_pds(
        self, did: str, cancel_event: Optional[asyncio.Event] = None
    ) -> XrpcResult[str]:
        return await resolve_pds(
            self.client, self.settings.plc_hostname, did, cancel_event
        )

    async def describe_server(
        self, service: Optional[str] = None, **kwargs: Any
    ) -> XrpcResult[ServerDescription]:
        return await self.client.query(
            "com.atproto.server.describeServer",
            service=service,
            authenticated=False,
            result_type=ServerDescription,
            **kwargs,
        )

    async def get_session(self, **kwargs: Any) -> XrpcResult[SessionInfo]:
        return await self.client.query(
            "com.atproto.server.getSession", result_type=SessionInfo, **kwargs
        )

    async def create_record(
        self,
        collection: str,
        record: Dict[str, Any],
        rkey: Optional[str] = None,
        validate: Optional[bool] = None,
        **kwargs: Any,
    ) -> XrpcResult[StrongRef]:
        """Create a record in the session's own repository."""
        credential = self._require_credential("create_record")
        if credential.did is None:
            raise AuthenticationRequiredError("create_record requires a session DID")

        body: Dict[str, Any] = {
            "repo": credential.did,
            "collection": collection,
            "record": record,
        }
        if rkey is not None:
            body["rkey"] = rkey
        if validate is not None:
            body["validate"] = validate

        return await self.client.procedure(
            "com.atproto.repo.createRecord", body=body, result_type=StrongRef, **kwargs
        )

    async def get_record(
        self,
        repo: str,
        collection: str,
        rkey: str,
        cid: Optional[str] = None,
        **kwargs: Any,
    ) -> XrpcResult[RecordResponse]:
        kwargs.setdefault("authenticated", self.authenticated)
        return await self.client.query(
            "com.atproto.repo.getRecord",
            params={"repo": repo, "collection": collection, "rkey": rkey, "cid": cid},
            result_type=RecordResponse,
            **kwargs,
        )
