"""Handle to DID resolution.

A handle names its DID in one of two places: a ``_atproto.<handle>`` DNS TXT
record of the form ``did=<did>``, or the body of
``https://<handle>/.well-known/atproto-did``. Both are queried at once and the
DNS answer wins when both succeed.

Lookups never raise, apart from caller cancellation. A failed or unusable answer
is ``None``; unexpected errors are reported to Sentry.
"""

import asyncio
import logging
from typing import Iterable, Optional

import sentry_sdk
from aiodns import DNSResolver
from aiohttp import ClientSession

from social.graze.xrpc.errors import InvalidIdentifierError, RequestCancelledError
from social.graze.xrpc.model.identity import parse_did

logger = logging.getLogger(__name__)

DID_TXT_PREFIX = "did="
WELL_KNOWN_PATH = "/.well-known/atproto-did"


def _as_did(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    try:
        return parse_did(value).subject
    except InvalidIdentifierError:
        return None


def _txt_strings(records: Optional[Iterable]) -> Iterable[str]:
    for record in records or []:
        text = record.text
        yield text.decode("utf-8", "replace") if isinstance(text, bytes) else text


async def resolve_handle_dns(
    handle: str, resolver: Optional[DNSResolver] = None
) -> Optional[str]:
    """Look up the ``_atproto`` TXT record for ``handle``.

    Records without the ``did=`` prefix are ignored. More than one distinct DID
    makes the answer ambiguous and resolves to ``None``.
    """
    if resolver is None:
        resolver = DNSResolver()
    try:
        records = await resolver.query(f"_atproto.{handle}", "TXT")
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None

    dids = {
        _as_did(text.removeprefix(DID_TXT_PREFIX))
        for text in _txt_strings(records)
        if text.startswith(DID_TXT_PREFIX)
    }
    dids.discard(None)
    if len(dids) > 1:
        logger.warning("Handle %s has conflicting DNS records: %s", handle, sorted(dids))
        return None
    return next(iter(dids), None)


async def resolve_handle_http(session: ClientSession, handle: str) -> Optional[str]:
    """Fetch the DID published at ``https://<handle>/.well-known/atproto-did``."""
    try:
        async with session.get(f"https://{handle}{WELL_KNOWN_PATH}") as resp:
            if resp.status != 200:
                logger.debug("Well-known lookup for %s returned %s", handle, resp.status)
                return None
            return _as_did(await resp.text())
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None


async def _resolve_handle_both(session: ClientSession, handle: str) -> Optional[str]:
    async with asyncio.TaskGroup() as tg:
        from_dns = tg.create_task(resolve_handle_dns(handle))
        from_http = tg.create_task(resolve_handle_http(session, handle))

    did = from_dns.result() or from_http.result()
    if did is None:
        logger.debug("Handle %s did not resolve", handle)
    return did


async def resolve_handle(
    session: ClientSession,
    handle: str,
    cancel_event: Optional[asyncio.Event] = None,
) -> Optional[str]:
    """Resolve ``handle`` over DNS and HTTPS at once, preferring the DNS answer.

    Raises:
        RequestCancelledError: If ``cancel_event`` is set before the lookups finish.
    """
    if cancel_event is None:
        return await _resolve_handle_both(session, handle)
    if cancel_event.is_set():
        raise RequestCancelledError(f"Resolution of {handle} cancelled")

    lookup = asyncio.ensure_future(_resolve_handle_both(session, handle))
    cancelled = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait(
            {lookup, cancelled}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        cancelled.cancel()
        if not lookup.done():
            lookup.cancel()

    if lookup in done:
        return lookup.result()

    await asyncio.gather(lookup, return_exceptions=True)
    raise RequestCancelledError(f"Resolution of {handle} cancelled")
