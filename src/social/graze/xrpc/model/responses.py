"""Response bodies of the server and repository calls wrapped by AtProtoAgent."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionResponse(BaseModel):
    """Body of com.atproto.server.createSession and refreshSession."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    did: str
    handle: str
    access_jwt: str = Field(alias="accessJwt")
    refresh_jwt: str = Field(alias="refreshJwt")
    did_doc: Optional[Dict[str, Any]] = Field(default=None, alias="didDoc")
    email: Optional[str] = None
    active: Optional[bool] = None
    status: Optional[str] = None


class SessionInfo(BaseModel):
    """Body of com.atproto.server.getSession."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    did: str
    handle: str
    email: Optional[str] = None
    active: Optional[bool] = None


class ServerDescription(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    did: str
    available_user_domains: List[str] = Field(
        default_factory=list, alias="availableUserDomains"
    )
    invite_code_required: Optional[bool] = Field(
        default=None, alias="inviteCodeRequired"
    )


class StrongRef(BaseModel):
    uri: str
    cid: str


class RecordResponse(BaseModel):
    """Body of com.atproto.repo.getRecord."""

    uri: str
    cid: Optional[str] = None
    value: Dict[str, Any]
