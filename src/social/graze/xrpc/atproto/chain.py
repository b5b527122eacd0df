import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from time import time
from typing import (
    Any,
    Awaitable,
    Callable,
    Collection,
    Dict,
    Generator,
    Optional,
    Sequence,
    Tuple,
)

from aiohttp import ClientResponse, ClientSession, hdrs
from multidict import CIMultiDict, CIMultiDictProxy
from pydantic import ValidationError

from social.graze.xrpc.app.metrics import MetricsClient
from social.graze.xrpc.atproto.dpop import (
    DPOP_HEADER,
    DPOP_NONCE_HEADER,
    create_dpop_proof,
)
from social.graze.xrpc.errors import AuthenticationRequiredError, RequestCancelledError
from social.graze.xrpc.model.credentials import (
    AccessCredential,
    Credential,
    ProofBoundCredential,
)
from social.graze.xrpc.model.result import ErrorDetail, RateLimit
from social.graze.xrpc.session.store import CredentialStore

logger = logging.getLogger(__name__)

DEFAULT_RETRY_ERROR_CODES = frozenset({"use_dpop_nonce"})
"""Error codes that signal a stale or missing DPoP nonce."""

NONCE_RETRY_STATUSES = frozenset({400, 401})

_WWW_AUTHENTICATE_ERROR = re.compile(r'error="([^"]+)"')


def is_json_content_type(content_type: str) -> bool:
    """``application/json`` and structured-syntax types such as ``application/did+ld+json``."""
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or (
        media_type.startswith("application/") and media_type.endswith("+json")
    )


@dataclass
class ChainRequest:
    method: str
    url: str
    headers: dict[str, str] | None = None
    kwargs: dict[str, Any] | None = None
    credential: AccessCredential | None = None
    attempt: int = field(default=1)

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        """Copy ``request`` for another attempt. Header and kwarg maps are copied."""
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers) if request.headers is not None else None,
            kwargs=dict(request.kwargs) if request.kwargs is not None else None,
            credential=request.credential,
            attempt=request.attempt + 1,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | list[Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = CIMultiDictProxy(CIMultiDict(response.headers))
        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        raw = await response.read()
        if len(raw) == 0:
            return ChainResponse(status=status, headers=headers, body=None)

        if is_json_content_type(content_type):
            try:
                return ChainResponse(status=status, headers=headers, body=json.loads(raw))
            except ValueError:
                logger.debug("Response declared JSON but did not parse")
                return ChainResponse(
                    status=status, headers=headers, body=raw.decode("utf-8", "replace")
                )
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=raw.decode("utf-8", "replace")
            )
        return ChainResponse(status=status, headers=headers, body=raw)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def error_code(self) -> Optional[str]:
        """The machine readable error, from the JSON body or a DPoP challenge."""
        if isinstance(self.body, dict) and isinstance(self.body.get("error"), str):
            return self.body["error"]

        challenge = self.headers.get(hdrs.WWW_AUTHENTICATE)
        if challenge is not None:
            match = _WWW_AUTHENTICATE_ERROR.search(challenge)
            if match is not None:
                return match.group(1)
        return None

    def error_detail(self) -> Optional[ErrorDetail]:
        if isinstance(self.body, dict):
            try:
                return ErrorDetail.model_validate(self.body)
            except ValidationError:
                logger.debug("Error body did not match the error shape: %s", self.body)
                return ErrorDetail(message=json.dumps(self.body))

        error_code = self.error_code
        if error_code is not None:
            return ErrorDetail(error=error_code)

        if isinstance(self.body, str) and len(self.body) > 0:
            return ErrorDetail(message=self.body)

        return None


NextChainResponseCallbackType = Tuple[ChainResponse, Optional[ChainRequest]]
"""A response, and the request to retry with when a middleware asks for one."""

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class AuthorizationMiddleware(RequestMiddlewareBase):
    """
    Attach credentials to a request and track DPoP nonce rotation.

    Every pass reads the credential, sets the ``Authorization`` header, and for
    DPoP-bound credentials signs a fresh proof with the current nonce. When a
    response carries a new ``DPoP-Nonce``, it is written to the store whether or not
    the response succeeded, unless the stored tokens changed while the request was
    in flight. If that same response is a
    nonce-stale error, a retry request bound to the rotated credential is returned.
    """

    def __init__(
        self,
        store: CredentialStore,
        use_refresh_token: bool = False,
        retry_error_codes: Collection[str] = DEFAULT_RETRY_ERROR_CODES,
        proof_lifetime: int = 30,
    ) -> None:
        super().__init__()
        self._store = store
        self._use_refresh_token = use_refresh_token
        self._retry_error_codes = frozenset(retry_error_codes)
        self._proof_lifetime = proof_lifetime

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        credential = request.credential or self._store.get()
        if credential is None:
            raise AuthenticationRequiredError(
                f"{request.method} {request.url} requires an authenticated session"
            )

        headers = dict(request.headers or {})
        token = credential.token(self._use_refresh_token)
        headers[hdrs.AUTHORIZATION] = f"{credential.authorization_scheme} {token}"
        if credential.can_sign_proof:
            headers[DPOP_HEADER] = create_dpop_proof(
                credential,
                request.method,
                request.url,
                use_refresh_token=self._use_refresh_token,
                expires_in_seconds=self._proof_lifetime,
            )
        request.headers = headers
        request.credential = credential

        chain_response, retry_request = await next(request)

        rotated = self._rotate_nonce(credential, chain_response)

        if (
            rotated is not None
            and retry_request is None
            and chain_response.status in NONCE_RETRY_STATUSES
            and chain_response.error_code in self._retry_error_codes
        ):
            retry_request = ChainRequest.from_chain_request(request)
            retry_request.credential = rotated

        return chain_response, retry_request

    def _rotate_nonce(
        self, credential: AccessCredential, chain_response: ChainResponse
    ) -> Optional[AccessCredential]:
        """
        Return ``credential`` with the response's new nonce, or None if it has none.

        The store is updated against its current credential, and only while that
        credential is still the session the request was signed for. A token
        refresh that lands while the request is in flight is left in place.
        """
        if not credential.can_sign_proof:
            return None

        nonce = chain_response.headers.get(DPOP_NONCE_HEADER)
        if nonce is None or nonce == getattr(credential, "dpop_nonce", None):
            return None

        logger.debug("DPoP nonce rotated by %s response", chain_response.status)

        def apply_nonce(current: Optional[Credential]) -> Optional[Credential]:
            if not isinstance(current, ProofBoundCredential):
                return None
            if not current.same_binding(credential) or current.dpop_nonce == nonce:
                return None
            return current.with_nonce(nonce)

        if self._store.update(apply_nonce) is None:
            logger.debug("Stored credential changed in flight, nonce not stored")
        return credential.with_nonce(nonce)  # type: ignore[attr-defined]


class StatsdMiddleware(RequestMiddlewareBase):
    def __init__(self, metrics_client: MetricsClient) -> None:
        super().__init__()
        self._metrics_client = metrics_client

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        start_time = time()
        tags = {"method": request.method.lower(), "attempt": str(request.attempt)}
        try:
            chain_response, retry_request = await next(request)
        except Exception as e:
            self._metrics_client.increment(
                "xrpc.request.exception",
                1,
                tag_dict={**tags, "exception": type(e).__name__},
            )
            raise
        finally:
            self._metrics_client.timer("xrpc.request.time", time() - start_time, tags)

        self._metrics_client.increment(
            "xrpc.request.count",
            1,
            tag_dict={**tags, "status": str(chain_response.status)},
        )

        rate_limit = RateLimit.from_headers(chain_response.headers)
        if rate_limit is not None:
            self._metrics_client.gauge(
                "xrpc.ratelimit.remaining", rate_limit.remaining, tag_dict=tags
            )
        return chain_response, retry_request


class DebugMiddleware(RequestMiddlewareBase):
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        logger.debug(
            "Request attempt %d: %s %s %s",
            request.attempt,
            request.method,
            request.url,
            {k: v for k, v in (request.headers or {}).items() if k != hdrs.AUTHORIZATION},
        )
        chain_response, retry_request = await next(request)
        logger.debug(
            "Response: %s %s %s",
            chain_response.status,
            dict(chain_response.headers),
            chain_response.body,
        )
        return chain_response, retry_request


class EndOfLineChainMiddleware:
    def __init__(self, client_session: ClientSession) -> None:
        self._client_session = client_session

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:
        async with self._client_session.request(
            request.method,
            request.url,
            headers=request.headers,
            **(request.kwargs or {}),
        ) as response:
            return await ChainResponse.from_aiohttp_response(response), None


class ChainMiddlewareContext:
    """
    Run a request through the chain, honouring at most one retry.

    A retry is only issued when a middleware returns a retry request for the first
    attempt. The cancel event is checked before every attempt and raced against
    each attempt in flight.
    """

    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._cancel_event = cancel_event
        self.attempts = 0

    async def _do_request(self) -> ChainResponse:
        chain_request = self._chain_request
        retried = False

        while True:
            if self._cancel_event is not None and self._cancel_event.is_set():
                raise RequestCancelledError("Request cancelled before it was sent")

            self.attempts += 1
            chain_response, retry_request = await self._attempt(chain_request)

            if retry_request is None or retried:
                return chain_response

            logger.debug(
                "Retrying %s %s after %s",
                chain_request.method,
                chain_request.url,
                chain_response.status,
            )
            retried = True
            chain_request = retry_request

    async def _attempt(self, chain_request: ChainRequest) -> NextChainResponseCallbackType:
        if self._cancel_event is None:
            return await self._chain_callback(chain_request)

        attempt = asyncio.ensure_future(self._chain_callback(chain_request))
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {attempt, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()
            if not attempt.done():
                attempt.cancel()

        if attempt in done:
            return attempt.result()

        await asyncio.gather(attempt, return_exceptions=True)
        raise RequestCancelledError("Request cancelled while in flight")

    def __await__(self) -> Generator[Any, None, ChainResponse]:
        return self._do_request().__await__()


class ChainMiddlewareClient:
    def __init__(
        self,
        client_session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
    ) -> None:
        self._client = client_session
        self._middleware = middleware

    def request(
        self,
        method: str,
        url: str,
        cancel_event: Optional[asyncio.Event] = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(method, url, cancel_event, **kwargs)

    def _make_request(
        self,
        method: str,
        url: str,
        cancel_event: Optional[asyncio.Event] = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        headers: Dict[str, str] = kwargs.pop("headers", None) or {}
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=dict(headers),
            kwargs=kwargs,
        )

        end_of_line_middleware = EndOfLineChainMiddleware(self._client)
        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        for mw in reversed(self._middleware or []):
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            cancel_event=cancel_event,
        )
