"""Tests for token minting and verification: signing, expiry, invites, bootstrap."""

import base64
from datetime import timedelta

import pytest

from waypost.auth.tokens import Keyring, TokenService, sign
from waypost.config import TokensConfig
from waypost.errors import FailedPreconditionError, InvalidArgumentError, InvalidTokenError
from waypost.jobs.state import utc_now
from waypost.protocol.tokens import (
    ConvertInviteTokenRequest,
    DecodeTokenRequest,
    HMACKey,
    InviteTokenRequest,
    LoginTokenRequest,
    Token,
    TokenTransport,
)


def wrap(transport: TokenTransport, magic: bytes = b"wp24") -> str:
    return base64.urlsafe_b64encode(magic + transport.encode()).decode()


def unverified(raw: str) -> Token:
    """Read a token body without checking signature or expiry."""
    transport = TokenTransport.decode(base64.urlsafe_b64decode(raw)[len(b"wp24") :])
    return Token.decode(transport.body)


@pytest.fixture
def tokens() -> TokenService:
    return TokenService()


class TestKeyring:
    def test_create_if_missing_is_stable(self):
        keyring = Keyring()
        assert keyring.is_empty()
        first = keyring.create_if_missing("k1")
        assert len(first.key) == 32
        assert keyring.create_if_missing("k1") is first
        assert not keyring.is_empty()

    def test_add_requires_material(self):
        with pytest.raises(InvalidArgumentError):
            Keyring().add(HMACKey(id="k1"))

    def test_sign_is_hmac_sha256(self):
        key = HMACKey(id="k1", key=b"secret")
        assert len(sign(key, b"body")) == 32
        assert sign(key, b"body") != sign(key, b"other")


class TestLoginToken:
    def test_round_trip(self, tokens: TokenService):
        raw = tokens.generate_login_token("alice")
        transport, token = tokens.decode_token(raw)
        assert token.user == "alice"
        assert token.login is True
        assert token.invite is False
        assert token.valid_until is None
        assert len(token.token_id) == 16
        assert transport.key_id == "k1"

    def test_default_user(self, tokens: TokenService):
        _, token = tokens.decode_token(tokens.generate_login_token())
        assert token.user == "waypoint"

    def test_tokens_are_unique(self, tokens: TokenService):
        assert tokens.generate_login_token() != tokens.generate_login_token()

    def test_duration_sets_expiry(self, tokens: TokenService):
        response = tokens.login_token(LoginTokenRequest(duration="1h", user="bob"))
        _, token = tokens.decode_token(response.token)
        remaining = token.valid_until - utc_now()
        assert timedelta(minutes=59) < remaining <= timedelta(hours=1)

    def test_bad_duration(self, tokens: TokenService):
        with pytest.raises(InvalidArgumentError, match="duration"):
            tokens.login_token(LoginTokenRequest(duration="a while"))

    @pytest.mark.parametrize("duration", ["0s", "0", "-1h"])
    def test_non_positive_duration_is_rejected(self, tokens: TokenService, duration: str):
        with pytest.raises(InvalidArgumentError, match="must be positive"):
            tokens.login_token(LoginTokenRequest(duration=duration))

    def test_zero_duration_still_expires(self, tokens: TokenService):
        raw = tokens.generate_login_token(duration=timedelta(0))
        token = unverified(raw)
        assert token.valid_until is not None
        assert token.valid_until <= utc_now()

    def test_metadata_is_carried(self, tokens: TokenService):
        token = Token(user="ci", login=True)
        transport, _ = tokens.decode_token(tokens.encode_token(token, {"purpose": "ci"}))
        assert transport.metadata == {"purpose": "ci"}

    def test_decode_rpc(self, tokens: TokenService):
        raw = tokens.generate_login_token("carol")
        response = tokens.decode(DecodeTokenRequest(token=raw))
        assert response.token.user == "carol"
        assert response.transport.key_id == "k1"


class TestVerification:
    def test_expired(self, tokens: TokenService):
        raw = tokens.generate_login_token(duration=timedelta(seconds=-1))
        with pytest.raises(InvalidTokenError, match="expired"):
            tokens.decode_token(raw)

    def test_tampered_body(self, tokens: TokenService):
        transport, _ = tokens.decode_token(tokens.generate_login_token("alice"))
        forged = Token(user="root", login=True).encode()
        with pytest.raises(InvalidTokenError):
            tokens.decode_token(wrap(transport.model_copy(update={"body": forged})))

    def test_unknown_key(self, tokens: TokenService):
        raw = tokens.generate_login_token()
        with pytest.raises(InvalidTokenError):
            TokenService().decode_token(raw)

    def test_shared_keyring_verifies(self, tokens: TokenService):
        raw = tokens.generate_login_token("dave")
        _, token = TokenService(keyring=tokens.keyring).decode_token(raw)
        assert token.user == "dave"

    def test_wrong_magic(self, tokens: TokenService):
        transport, _ = tokens.decode_token(tokens.generate_login_token())
        with pytest.raises(InvalidTokenError):
            tokens.decode_token(wrap(transport, magic=b"xx99"))

    @pytest.mark.parametrize("raw", ["", "not a token", "d3AyNA", "d3AyNHt7"])
    def test_malformed(self, tokens: TokenService, raw: str):
        tokens.keyring.create_if_missing("k1")
        with pytest.raises(InvalidTokenError):
            tokens.decode_token(raw)


class TestInviteToken:
    def test_convert_to_login(self, tokens: TokenService):
        invite = tokens.generate_invite_token(InviteTokenRequest(duration="10m"))
        _, decoded = tokens.decode_token(invite.token)
        assert decoded.invite is True
        assert decoded.login is False

        login = tokens.convert_invite_token(ConvertInviteTokenRequest(token=invite.token))
        _, token = tokens.decode_token(login.token)
        assert token.login is True
        assert token.invite is False
        assert token.valid_until is None

    def test_login_token_cannot_be_converted(self, tokens: TokenService):
        raw = tokens.generate_login_token()
        with pytest.raises(InvalidArgumentError, match="not an invite token"):
            tokens.convert_invite_token(ConvertInviteTokenRequest(token=raw))

    def test_expired_invite_cannot_be_converted(self, tokens: TokenService):
        invite = tokens.encode_token(
            Token(user="eve", invite=True, valid_until=utc_now() - timedelta(minutes=1))
        )
        with pytest.raises(InvalidTokenError):
            tokens.convert_invite_token(ConvertInviteTokenRequest(token=invite))

    def test_max_duration_is_the_default(self):
        tokens = TokenService(config=TokensConfig(invite_max_duration="1h"))
        invite = tokens.generate_invite_token(InviteTokenRequest())
        _, token = tokens.decode_token(invite.token)
        assert token.valid_until - utc_now() <= timedelta(hours=1)

    def test_max_duration_is_enforced(self):
        tokens = TokenService(config=TokensConfig(invite_max_duration="1h"))
        with pytest.raises(InvalidArgumentError, match="maximum"):
            tokens.generate_invite_token(InviteTokenRequest(duration="2h"))

    @pytest.mark.parametrize("duration", ["0s", "-1h"])
    def test_non_positive_duration_cannot_bypass_maximum(self, duration: str):
        tokens = TokenService(config=TokensConfig(invite_max_duration="1h"))
        with pytest.raises(InvalidArgumentError, match="must be positive"):
            tokens.generate_invite_token(InviteTokenRequest(duration=duration))

    def test_unlimited_invite_has_no_expiry(self, tokens: TokenService):
        invite = tokens.generate_invite_token(InviteTokenRequest())
        assert unverified(invite.token).valid_until is None


class TestBootstrap:
    def test_only_once(self, tokens: TokenService):
        response = tokens.bootstrap_token()
        _, token = tokens.decode_token(response.token)
        assert token.login is True

        with pytest.raises(FailedPreconditionError, match="already bootstrapped"):
            tokens.bootstrap_token()

    def test_not_after_other_tokens(self, tokens: TokenService):
        tokens.generate_login_token()
        with pytest.raises(FailedPreconditionError):
            tokens.bootstrap_token()
