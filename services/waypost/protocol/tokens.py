"""Authentication token payload, its signed envelope and the token RPCs."""

from datetime import datetime

from waypost.protocol.base import ProtoModel, tag


class Token(ProtoModel):
    """The semantic payload of a token. Trusted only after verification."""

    user: str = tag(1, "")
    token_id: bytes = tag(2, b"")
    valid_until: datetime | None = tag(3)
    login: bool = tag(4, False)
    invite: bool = tag(5, False)


class TokenTransport(ProtoModel):
    """Wire envelope: the encoded Token and its signature."""

    body: bytes = tag(1, b"")
    signature: bytes = tag(2, b"")
    key_id: str = tag(3, "")
    metadata: dict[str, str] = tag(4, default_factory=dict)


class HMACKey(ProtoModel):
    id: str = tag(1, "")
    key: bytes = tag(2, b"")


class LoginTokenRequest(ProtoModel):
    duration: str = tag(1, "")
    user: str = tag(2, "")


class InviteTokenRequest(ProtoModel):
    duration: str = tag(1, "")


class NewTokenResponse(ProtoModel):
    token: str = tag(1, "")


class ConvertInviteTokenRequest(ProtoModel):
    token: str = tag(1, "")


class DecodeTokenRequest(ProtoModel):
    token: str = tag(1, "")


class DecodeTokenResponse(ProtoModel):
    token: Token | None = tag(1)
    transport: TokenTransport | None = tag(2)
