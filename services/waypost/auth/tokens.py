"""
Signed authentication tokens.

A token is a Token payload wrapped in a TokenTransport that carries an
HMAC-SHA256 signature of the encoded payload and the id of the key that
made it. The string handed to users is:

    urlsafe_base64(magic + encoded TokenTransport)

Keys live in a Keyring. The signing key is created on first use, so an
empty keyring means the server has never issued a token, which is the only
time bootstrap_token() is allowed.

Token kinds:
- login: authenticates API calls, optionally until valid_until
- invite: exchanged once for a login token via convert_invite_token()
"""

import base64
import binascii
import hashlib
import hmac
import secrets
from datetime import timedelta

from google.protobuf.message import DecodeError
from pydantic import ValidationError

from waypost.config import TokensConfig
from waypost.durations import parse_duration
from waypost.errors import FailedPreconditionError, InvalidArgumentError, InvalidTokenError
from waypost.jobs.state import utc_now
from waypost.logging_config import get_logger
from waypost.protocol.tokens import (
    ConvertInviteTokenRequest,
    DecodeTokenRequest,
    DecodeTokenResponse,
    HMACKey,
    InviteTokenRequest,
    LoginTokenRequest,
    NewTokenResponse,
    Token,
    TokenTransport,
)

logger = get_logger(__name__)


class Keyring:
    """HMAC keys by id."""

    def __init__(self) -> None:
        self._keys: dict[str, HMACKey] = {}

    def get(self, key_id: str) -> HMACKey | None:
        return self._keys.get(key_id)

    def add(self, key: HMACKey) -> None:
        if not key.id or not key.key:
            raise InvalidArgumentError("key id and key material are required")
        self._keys[key.id] = key

    def create_if_missing(self, key_id: str, size: int = 32) -> HMACKey:
        key = self._keys.get(key_id)
        if key is None:
            key = HMACKey(id=key_id, key=secrets.token_bytes(size))
            self._keys[key_id] = key
            logger.info("Token signing key created", key_id=key_id)
        return key

    def is_empty(self) -> bool:
        return not self._keys


def sign(key: HMACKey, body: bytes) -> bytes:
    return hmac.new(key.key, body, hashlib.sha256).digest()


class TokenService:
    """Mints and verifies tokens."""

    def __init__(self, keyring: Keyring | None = None, config: TokensConfig | None = None) -> None:
        self._keyring = keyring or Keyring()
        self._config = config or TokensConfig()
        self._magic = self._config.magic.encode()

    @property
    def keyring(self) -> Keyring:
        return self._keyring

    # --- Encoding ---

    def encode_token(self, token: Token, metadata: dict[str, str] | None = None) -> str:
        """Sign a token with the default key and return its string form."""
        key = self._keyring.create_if_missing(
            self._config.default_key_id, self._config.key_size_bytes
        )
        body = token.encode()
        transport = TokenTransport(
            body=body,
            signature=sign(key, body),
            key_id=key.id,
            metadata=metadata or {},
        )
        return base64.urlsafe_b64encode(self._magic + transport.encode()).decode()

    def decode_token(self, token: str) -> tuple[TokenTransport, Token]:
        """Verify a token string and return its envelope and payload.

        Raises:
            InvalidTokenError: If the token is malformed, signed with an
                unknown key, tampered with or expired.
        """
        try:
            raw = base64.urlsafe_b64decode(token.encode())
        except (binascii.Error, ValueError):
            raise InvalidTokenError() from None
        if not raw.startswith(self._magic):
            raise InvalidTokenError()

        try:
            transport = TokenTransport.decode(raw[len(self._magic) :])
        except (DecodeError, ValidationError):
            raise InvalidTokenError() from None

        key = self._keyring.get(transport.key_id)
        if key is None:
            logger.warning("Token signed with unknown key", key_id=transport.key_id)
            raise InvalidTokenError()
        if not hmac.compare_digest(sign(key, transport.body), transport.signature):
            logger.warning("Token signature mismatch", key_id=transport.key_id)
            raise InvalidTokenError()

        try:
            body = Token.decode(transport.body)
        except (DecodeError, ValidationError):
            raise InvalidTokenError() from None
        if body.valid_until is not None and body.valid_until < utc_now():
            raise InvalidTokenError("authentication token has expired")
        return transport, body

    # --- Minting ---

    def _duration(self, value: str) -> timedelta | None:
        """Parse a requested lifetime. Empty means no expiry.

        Raises:
            InvalidArgumentError: If the value is not a positive duration.
        """
        if not value:
            return None
        try:
            duration = parse_duration(value)
        except ValueError as e:
            raise InvalidArgumentError(f"duration: {e}") from e
        if duration <= timedelta(0):
            raise InvalidArgumentError(f"duration: {value!r} must be positive")
        return duration

    def _new_token(self, user: str, duration: timedelta | None, **kinds: bool) -> Token:
        return Token(
            user=user or self._config.default_user,
            token_id=secrets.token_bytes(16),
            valid_until=utc_now() + duration if duration is not None else None,
            **kinds,
        )

    def generate_login_token(self, user: str = "", duration: timedelta | None = None) -> str:
        token = self._new_token(user, duration, login=True)
        logger.info("Login token issued", user=token.user, expires=token.valid_until is not None)
        return self.encode_token(token)

    def login_token(self, request: LoginTokenRequest) -> NewTokenResponse:
        token = self.generate_login_token(request.user, self._duration(request.duration))
        return NewTokenResponse(token=token)

    def generate_invite_token(self, request: InviteTokenRequest) -> NewTokenResponse:
        duration = self._duration(request.duration)
        limit = self._duration(self._config.invite_max_duration)
        if limit is not None:
            if duration is None:
                duration = limit
            elif duration > limit:
                raise InvalidArgumentError(
                    f"invite duration exceeds the maximum of {self._config.invite_max_duration}"
                )

        token = self._new_token("", duration, invite=True)
        logger.info("Invite token issued", expires=token.valid_until is not None)
        return NewTokenResponse(token=self.encode_token(token))

    def convert_invite_token(self, request: ConvertInviteTokenRequest) -> NewTokenResponse:
        """Exchange a valid invite token for a login token without expiry."""
        _, invite = self.decode_token(request.token)
        if not invite.invite or invite.login:
            raise InvalidArgumentError("not an invite token")
        return NewTokenResponse(token=self.generate_login_token(invite.user))

    def bootstrap_token(self) -> NewTokenResponse:
        """Issue the first login token of a fresh server."""
        if not self._keyring.is_empty():
            raise FailedPreconditionError("server is already bootstrapped")
        logger.info("Server bootstrapped")
        return NewTokenResponse(token=self.generate_login_token())

    def decode(self, request: DecodeTokenRequest) -> DecodeTokenResponse:
        transport, token = self.decode_token(request.token)
        return DecodeTokenResponse(token=token, transport=transport)
