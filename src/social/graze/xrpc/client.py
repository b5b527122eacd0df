"""
Authenticated XRPC request execution.

:class:`XrpcClient` builds a request for a namespaced operation, runs it through the
middleware chain in :mod:`social.graze.xrpc.atproto.chain` and normalizes whatever
comes back into an :class:`~social.graze.xrpc.model.result.XrpcResult`.

Local preconditions (missing session, invalid proxy target, unsignable key) raise
before any network access. Everything that happens after the request leaves the
process is reported through the returned envelope.
"""

import asyncio
import json
import logging
import re
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type

import aiohttp
import sentry_sdk
from aiohttp import ClientSession, hdrs
from pydantic import BaseModel, TypeAdapter, ValidationError

from social.graze.xrpc.app.config import Settings
from social.graze.xrpc.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.xrpc.atproto.chain import (
    AuthorizationMiddleware,
    ChainMiddlewareClient,
    ChainResponse,
    DebugMiddleware,
    RequestMiddlewareBase,
    StatsdMiddleware,
)
from social.graze.xrpc.errors import (
    AuthenticationRequiredError,
    InvalidIdentifierError,
    InvalidServiceProxyError,
    RequestCancelledError,
)
from social.graze.xrpc.model.identity import did_fragment_reference, parse_did
from social.graze.xrpc.model.result import EmptyResponse, ErrorDetail, XrpcResult
from social.graze.xrpc.session.store import CredentialStore

logger = logging.getLogger(__name__)

ATPROTO_PROXY_HEADER = "atproto-proxy"
ATPROTO_ACCEPT_LABELERS_HEADER = "atproto-accept-labelers"

_NSID_PATTERN = re.compile(
    r"^[a-zA-Z]([a-zA-Z0-9-]{0,62})?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,62})?)+"
    r"\.[a-zA-Z][a-zA-Z0-9]{0,62}$"
)


@lru_cache(maxsize=256)
def _type_adapter(result_type: Any) -> TypeAdapter[Any]:
    return TypeAdapter(result_type)


def decode_value(body: Any, result_type: Any) -> Any:
    """Validate a success body into ``result_type``.

    Raises:
        ValidationError: If the body does not match the expected type.
    """
    if result_type is EmptyResponse:
        return EmptyResponse()
    return _type_adapter(result_type).validate_python(body)


def xrpc_url(service: str, nsid: str) -> str:
    """Build ``<service>/xrpc/<nsid>``.

    Raises:
        ValueError: If ``nsid`` is not a namespaced identifier.
    """
    if _NSID_PATTERN.match(nsid) is None:
        raise ValueError(f"'{nsid}' is not a valid NSID")
    return f"{service.rstrip('/')}/xrpc/{nsid}"


def query_params(params: Optional[Mapping[str, Any]]) -> List[Tuple[str, str]]:
    """Flatten query parameters, repeating keys for sequences and dropping None."""
    flattened: List[Tuple[str, str]] = []
    for key, value in (params or {}).items():
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            if item is None:
                continue
            if isinstance(item, bool):
                item = "true" if item else "false"
            flattened.append((key, str(item)))
    return flattened


def encode_body(body: Any) -> bytes:
    if isinstance(body, bytes):
        return body
    if isinstance(body, BaseModel):
        return body.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
    return json.dumps(body).encode("utf-8")


def validate_service_proxy(service_proxy: str) -> str:
    try:
        did_fragment_reference(service_proxy)
    except InvalidIdentifierError as e:
        raise InvalidServiceProxyError(str(e)) from e
    return service_proxy


class XrpcClient:
    """
    Executes XRPC calls against AT Protocol services.

    Authenticated calls read the session credential from ``store`` on every attempt
    and write rotated DPoP nonces back to it. A call is attempted at most twice: the
    second attempt only happens when the first response both rotated the nonce and
    reported it stale.
    """

    def __init__(
        self,
        http_session: ClientSession,
        store: Optional[CredentialStore] = None,
        settings: Optional[Settings] = None,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self._http_session = http_session
        self.store = store or CredentialStore()
        self.settings = settings or Settings()
        self._metrics_client = metrics_client or NoOpMetricsClient()

    @property
    def http_session(self) -> ClientSession:
        return self._http_session

    async def query(
        self,
        nsid: str,
        params: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> XrpcResult[Any]:
        """Call an XRPC query (HTTP GET)."""
        return await self.execute(hdrs.METH_GET, nsid, params=params, **kwargs)

    async def procedure(
        self,
        nsid: str,
        body: Any = None,
        **kwargs: Any,
    ) -> XrpcResult[Any]:
        """Call an XRPC procedure (HTTP POST)."""
        return await self.execute(hdrs.METH_POST, nsid, body=body, **kwargs)

    async def execute(
        self,
        method: str,
        nsid: str,
        service: Optional[str] = None,
        authenticated: bool = True,
        **kwargs: Any,
    ) -> XrpcResult[Any]:
        if service is None:
            credential = self.store.get()
            if authenticated and credential is None:
                raise AuthenticationRequiredError(
                    f"{nsid} requires an authenticated session"
                )
            service = credential.service if credential is not None else None
        if service is None:
            service = self.settings.default_service

        return await self.send(
            method,
            xrpc_url(service, nsid),
            authenticated=authenticated,
            **kwargs,
        )

    async def send(
        self,
        method: str,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        result_type: Any = dict,
        authenticated: bool = True,
        use_refresh_token: bool = False,
        service_proxy: Optional[str] = None,
        accept_labelers: Optional[Iterable[str]] = None,
        content_type: str = "application/json",
        cancel_event: Optional[asyncio.Event] = None,
    ) -> XrpcResult[Any]:
        """
        Send one logical call to ``url`` and return its envelope.

        Args:
            method: HTTP method
            url: Absolute request URL
            params: Query parameters; sequences repeat the key
            body: JSON-serializable body, pydantic model, or raw bytes
            result_type: Type the success body is validated into
            authenticated: Attach the session credential; raises if there is none
            use_refresh_token: Authenticate with the refresh token instead
            service_proxy: ``did#service`` the receiving service should forward to
            accept_labelers: Labeler DIDs whose labels the caller accepts
            content_type: Content type of ``body``
            cancel_event: Setting this event cancels the call

        Raises:
            AuthenticationRequiredError: If ``authenticated`` and no credential is held.
            InvalidServiceProxyError: If ``service_proxy`` is not ``did#fragment``.
            ProofSigningError: If the credential's key cannot sign a DPoP proof.
        """
        if authenticated and self.store.get() is None:
            raise AuthenticationRequiredError(
                f"{method} {url} requires an authenticated session"
            )

        headers: Dict[str, str] = {
            hdrs.ACCEPT: "application/json",
            hdrs.USER_AGENT: self.settings.user_agent,
        }
        if service_proxy is not None:
            headers[ATPROTO_PROXY_HEADER] = validate_service_proxy(service_proxy)
        if accept_labelers is not None:
            labelers = [parse_did(labeler).subject for labeler in accept_labelers]
            if len(labelers) > 0:
                headers[ATPROTO_ACCEPT_LABELERS_HEADER] = ", ".join(labelers)

        request_kwargs: Dict[str, Any] = {
            "timeout": aiohttp.ClientTimeout(total=self.settings.request_timeout),
        }
        flattened_params = query_params(params)
        if len(flattened_params) > 0:
            request_kwargs["params"] = flattened_params
        if body is not None:
            headers[hdrs.CONTENT_TYPE] = content_type
            request_kwargs["data"] = encode_body(body)

        chain_client = ChainMiddlewareClient(
            client_session=self._http_session,
            middleware=self._middleware(authenticated, use_refresh_token),
        )

        try:
            chain_response = await chain_client.request(
                method, url, cancel_event=cancel_event, headers=headers, **request_kwargs
            )
        except RequestCancelledError:
            logger.info("Request cancelled: %s %s", method, url)
            return XrpcResult.cancellation()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            sentry_sdk.capture_exception(e)
            logger.warning("Request failed: %s %s: %r", method, url, e)
            return XrpcResult.transport_failure(e)

        return self._interpret(method, url, chain_response, result_type)

    def _middleware(
        self, authenticated: bool, use_refresh_token: bool
    ) -> List[RequestMiddlewareBase]:
        middleware: List[RequestMiddlewareBase] = [
            StatsdMiddleware(self._metrics_client)
        ]
        if authenticated:
            middleware.append(
                AuthorizationMiddleware(
                    self.store,
                    use_refresh_token=use_refresh_token,
                    retry_error_codes=self.settings.dpop_retry_error_codes,
                    proof_lifetime=self.settings.dpop_proof_lifetime,
                )
            )
        if self.settings.debug:
            middleware.append(DebugMiddleware())
        return middleware

    def _interpret(
        self,
        method: str,
        url: str,
        chain_response: ChainResponse,
        result_type: Type[Any],
    ) -> XrpcResult[Any]:
        if chain_response.ok:
            try:
                value = decode_value(chain_response.body, result_type)
            except ValidationError as e:
                logger.warning("Unexpected response body from %s %s: %s", method, url, e)
                return XrpcResult.failure(
                    chain_response.status,
                    ErrorDetail(error="InvalidResponse", message=str(e)),
                    chain_response.headers,
                )
            if value is None:
                logger.warning("Empty response body from %s %s", method, url)
                return XrpcResult.failure(
                    chain_response.status,
                    ErrorDetail(
                        error="InvalidResponse",
                        message="Response had no body; use EmptyResponse for calls without one",
                    ),
                    chain_response.headers,
                )
            logger.debug("Request succeeded: %s %s", method, url)
            return XrpcResult.success(
                value, chain_response.status, chain_response.headers
            )

        error = chain_response.error_detail()
        logger.info(
            "Request failed: %s %s %s %s",
            method,
            url,
            chain_response.status,
            error.error if error is not None else None,
        )
        return XrpcResult.failure(chain_response.status, error, chain_response.headers)
