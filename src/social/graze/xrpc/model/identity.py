"""Actor identifiers and DID documents.

Identifiers are parsed once into a :class:`ParsedSubject` carrying the resolution
method, so resolver code dispatches on :class:`SubjectType` instead of re-checking
string prefixes.
"""

import re
from enum import IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from social.graze.xrpc.errors import InvalidIdentifierError

PDS_SERVICE_ID = "#atproto_pds"
PDS_SERVICE_TYPE = "AtprotoPersonalDataServer"

HANDLE_MAXIMUM_LENGTH = 253

_DID_PATTERN = re.compile(r"^did:([a-z]+):([a-zA-Z0-9._:%-]*[a-zA-Z0-9._-])$")
_HANDLE_PATTERN = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+"
    r"[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration.

    Identifies whether a subject is a DID, by method, or a handle requiring resolution.
    """

    did_method_plc = 1
    did_method_web = 2
    hostname = 3
    did_method_unsupported = 4


class ParsedSubject(BaseModel):
    """Parsed AT Protocol subject input.

    Contains the classified subject type and normalized subject string. For DIDs,
    ``method`` and ``identifier`` hold the method name and method-specific part.
    """

    subject_type: SubjectType
    subject: str
    method: Optional[str] = None
    identifier: Optional[str] = None

    @property
    def is_did(self) -> bool:
        return self.subject_type != SubjectType.hostname


class Service(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    type: str
    service_endpoint: Optional[str] = Field(default=None, alias="serviceEndpoint")


class VerificationMethod(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    type: str
    controller: str
    public_key_multibase: Optional[str] = Field(
        default=None, alias="publicKeyMultibase"
    )


class DidDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    context: List[Any] = Field(default_factory=list, alias="@context")
    id: str
    also_known_as: List[str] = Field(default_factory=list, alias="alsoKnownAs")
    verification_method: List[VerificationMethod] = Field(
        default_factory=list, alias="verificationMethod"
    )
    service: List[Service] = Field(default_factory=list)

    @property
    def handle(self) -> Optional[str]:
        handle = next(filter(handle_predicate, self.also_known_as), None)
        if handle is None:
            return None
        return handle.removeprefix("at://")

    @property
    def pds_service(self) -> Optional[Service]:
        return next(
            (service for service in self.service if pds_predicate(self.id, service)),
            None,
        )

    @property
    def pds_endpoint(self) -> Optional[str]:
        service = self.pds_service
        if service is None:
            return None
        return service.service_endpoint


class ResolvedSubject(BaseModel):
    """Resolved AT Protocol subject with all identifiers.

    Contains DID, handle (when the document declares one), and PDS endpoint.
    """

    did: str
    handle: Optional[str] = None
    pds: str


def handle_predicate(value: str) -> bool:
    """Check if value is an AT Protocol handle reference."""
    return value is not None and value.startswith("at://")


def pds_predicate(did: str, value: Service) -> bool:
    """Check if a service entry is the subject's personal data server.

    The entry is matched by its ``#atproto_pds`` id, relative or qualified with the
    subject DID, or by the ``AtprotoPersonalDataServer`` type, and must declare an
    endpoint.
    """
    if value is None or not value.service_endpoint:
        return False
    return value.id in (PDS_SERVICE_ID, f"{did}{PDS_SERVICE_ID}") or (
        value.type == PDS_SERVICE_TYPE
    )


def is_valid_handle(handle: str) -> bool:
    return len(handle) <= HANDLE_MAXIMUM_LENGTH and (
        _HANDLE_PATTERN.match(handle) is not None
    )


def parse_did(value: str) -> ParsedSubject:
    """Parse a DID into a :class:`ParsedSubject`.

    Raises:
        InvalidIdentifierError: If ``value`` is not a syntactically valid DID.
    """
    match = _DID_PATTERN.match(value)
    if match is None:
        raise InvalidIdentifierError(f"'{value}' is not a valid DID")

    method, identifier = match.group(1), match.group(2)
    if method == "plc":
        subject_type = SubjectType.did_method_plc
    elif method == "web":
        subject_type = SubjectType.did_method_web
    else:
        subject_type = SubjectType.did_method_unsupported

    return ParsedSubject(
        subject_type=subject_type, subject=value, method=method, identifier=identifier
    )


def parse_input(subject: str) -> ParsedSubject:
    """Parse and classify AT Protocol subject input.

    Normalizes input by removing prefixes and classifies as DID or handle.

    Args:
        subject: Raw subject string (handle, DID, or prefixed)

    Returns:
        ParsedSubject with type and normalized string

    Raises:
        InvalidIdentifierError: If the input is neither a DID nor a valid handle.
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if subject.startswith("did:"):
        return parse_did(subject)

    handle = subject.lower()
    if not is_valid_handle(handle):
        raise InvalidIdentifierError(f"'{subject}' is not a valid handle")
    return ParsedSubject(subject_type=SubjectType.hostname, subject=handle)


def did_fragment_reference(value: str) -> Dict[str, str]:
    """Split a ``did#fragment`` reference, validating both halves.

    Used for service proxy targets such as ``did:web:api.bsky.chat#bsky_chat``.
    """
    did, separator, fragment = value.partition("#")
    if not separator or not fragment:
        raise InvalidIdentifierError(f"'{value}' does not name a service fragment")
    parse_did(did)
    return {"did": did, "fragment": fragment}
