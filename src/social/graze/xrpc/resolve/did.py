"""AT Protocol DID resolution.

Resolves did:plc and did:web DIDs to their DID documents and finds the personal
data server (PDS) each document names. Remote failures come back as failed
:class:`~social.graze.xrpc.model.result.XrpcResult` values carrying the observed
status; DIDs of any other method are rejected before a request is made.
"""

import asyncio
import logging
from typing import Any, Optional, Union
from urllib.parse import unquote

from aiohttp import hdrs

from social.graze.xrpc.client import XrpcClient
from social.graze.xrpc.errors import RequestCancelledError, UnsupportedDidMethodError
from social.graze.xrpc.model.identity import (
    DidDocument,
    ParsedSubject,
    ResolvedSubject,
    SubjectType,
    parse_did,
    parse_input,
)
from social.graze.xrpc.model.result import ErrorDetail, XrpcResult
from social.graze.xrpc.resolve.handle import resolve_handle

logger = logging.getLogger(__name__)


def plc_directory_url(plc_hostname: str) -> str:
    """Base URL of the PLC directory. A bare hostname is served over HTTPS."""
    if plc_hostname.startswith(("https://", "http://")):
        return plc_hostname.rstrip("/")
    return f"https://{plc_hostname}"


def did_web_url(subject: ParsedSubject) -> str:
    """Build the did.json URL for a did:web DID.

    A host-only DID uses ``/.well-known/did.json``; path segments, separated by
    colons in the DID, replace the well-known prefix. Percent-encoded characters
    such as a ``%3A`` port separator are decoded.
    """
    parts = [unquote(part) for part in (subject.identifier or "").split(":")]
    if len(parts) == 1:
        parts.append(".well-known")
    return "https://{inner}/did.json".format(inner="/".join(parts))


async def resolve_did_method_plc(
    client: XrpcClient,
    plc_hostname: str,
    subject: ParsedSubject,
    cancel_event: Optional[asyncio.Event] = None,
) -> XrpcResult[DidDocument]:
    """Fetch a did:plc document from the PLC directory.

    The directory's response body is the DID document.
    """
    logger.debug("Resolving %s against %s", subject.subject, plc_hostname)
    return await client.send(
        hdrs.METH_GET,
        f"{plc_directory_url(plc_hostname)}/{subject.subject}",
        result_type=DidDocument,
        authenticated=False,
        cancel_event=cancel_event,
    )


async def resolve_did_method_web(
    client: XrpcClient,
    subject: ParsedSubject,
    cancel_event: Optional[asyncio.Event] = None,
) -> XrpcResult[DidDocument]:
    """Fetch a did:web document from the host named by the DID."""
    url = did_web_url(subject)
    logger.debug("Resolving %s from %s", subject.subject, url)
    return await client.send(
        hdrs.METH_GET,
        url,
        result_type=DidDocument,
        authenticated=False,
        cancel_event=cancel_event,
    )


async def resolve_did(
    client: XrpcClient,
    plc_hostname: str,
    did: Union[str, ParsedSubject],
    cancel_event: Optional[asyncio.Event] = None,
) -> XrpcResult[DidDocument]:
    """Resolve a DID to its DID document.

    Args:
        client: XRPC client used for the unauthenticated fetch
        plc_hostname: PLC directory hostname for did:plc resolution
        did: DID, raw or already parsed
        cancel_event: Setting this event cancels the fetch

    Returns:
        The document on success. A failure carries the directory or host status,
        or ``DidDocumentMismatch`` when the document describes a different DID.

    Raises:
        InvalidIdentifierError: If ``did`` is not a valid DID.
        UnsupportedDidMethodError: If the DID method is neither plc nor web.
    """
    subject = parse_did(did) if isinstance(did, str) else did

    if subject.subject_type == SubjectType.did_method_plc:
        result = await resolve_did_method_plc(
            client, plc_hostname, subject, cancel_event
        )
    elif subject.subject_type == SubjectType.did_method_web:
        result = await resolve_did_method_web(client, subject, cancel_event)
    else:
        logger.warning("Refusing to resolve %s", subject.subject)
        raise UnsupportedDidMethodError(subject.subject, subject.method or "")

    if result.succeeded and result.value is not None and result.value.id != subject.subject:
        logger.warning(
            "DID document for %s describes %s", subject.subject, result.value.id
        )
        return XrpcResult.failure(
            result.status_code,
            ErrorDetail(
                error="DidDocumentMismatch",
                message=f"Document subject {result.value.id} does not match {subject.subject}",
            ),
            result.headers,
        )

    return result


def _pds_not_found(document_result: XrpcResult[DidDocument]) -> XrpcResult[Any]:
    did = document_result.value.id if document_result.value else "DID document"
    return XrpcResult.failure(
        document_result.status_code,
        ErrorDetail(error="PdsNotFound", message=f"{did} does not declare a PDS"),
        document_result.headers,
    )


async def resolve_pds(
    client: XrpcClient,
    plc_hostname: str,
    did: Union[str, ParsedSubject],
    cancel_event: Optional[asyncio.Event] = None,
) -> XrpcResult[str]:
    """Resolve a DID to the endpoint of its personal data server."""
    document_result = await resolve_did(client, plc_hostname, did, cancel_event)
    if not document_result.succeeded or document_result.value is None:
        return document_result  # type: ignore[return-value]

    endpoint = document_result.value.pds_endpoint
    if endpoint is None:
        return _pds_not_found(document_result)

    return XrpcResult.success(
        endpoint, document_result.status_code or 200, document_result.headers
    )


async def resolve_subject(
    client: XrpcClient,
    plc_hostname: str,
    subject: str,
    cancel_event: Optional[asyncio.Event] = None,
) -> XrpcResult[ResolvedSubject]:
    """Resolve AT Protocol subject (handle or DID) to complete information.

    Parses input, resolves handle to DID if needed, then resolves the DID document
    and its PDS.

    Args:
        client: XRPC client
        plc_hostname: PLC directory hostname
        subject: Handle or DID to resolve
        cancel_event: Setting this event cancels the handle lookup or document fetch

    Returns:
        ResolvedSubject on success, a failed result otherwise

    Raises:
        InvalidIdentifierError: If the subject is neither a DID nor a valid handle.
        UnsupportedDidMethodError: If the subject is a DID of an unsupported method.
    """
    parsed_subject = parse_input(subject)

    if parsed_subject.subject_type == SubjectType.hostname:
        try:
            did = await resolve_handle(
                client.http_session, parsed_subject.subject, cancel_event
            )
        except RequestCancelledError:
            logger.info("Resolution of %s cancelled", parsed_subject.subject)
            return XrpcResult.cancellation()
        if did is None:
            return XrpcResult.failure(
                None,
                ErrorDetail(
                    error="HandleNotFound",
                    message=f"Unable to resolve handle {parsed_subject.subject}",
                ),
            )
        parsed_did = parse_did(did)
    else:
        parsed_did = parsed_subject

    document_result = await resolve_did(client, plc_hostname, parsed_did, cancel_event)
    if not document_result.succeeded or document_result.value is None:
        return document_result  # type: ignore[return-value]

    document = document_result.value
    if document.pds_endpoint is None:
        return _pds_not_found(document_result)

    return XrpcResult.success(
        ResolvedSubject(did=document.id, handle=document.handle, pds=document.pds_endpoint),
        document_result.status_code or 200,
        document_result.headers,
    )
