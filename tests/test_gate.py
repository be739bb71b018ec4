"""Tests for request authorization through the account gate."""

import pytest
from eth_account import Account

from warden.errors import (
    InvalidSignatureError,
    LimitReachedError,
    TargetNotWhitelistedError,
    UnauthorizedError,
    UnknownSignerError,
)
from warden.gate import (
    SIG_VALIDATION_FAILED,
    SIG_VALIDATION_SUCCESS,
    AuthorizationPath,
    pack_validation_data,
    unpack_validation_data,
)
from warden.request import Request
from warden.signatures import SignatureMode

from conftest import GENESIS, addr, signed

X = "0x" + "aa" * 20
Y = "0x" + "bb" * 20
HOUR = 3600


def _request(account, target=X, nonce=0):
    return Request.single(account.address, nonce, target, 0, b"")


class TestValidationData:
    def test_pack_layout(self):
        packed = pack_validation_data(valid_until=0x1234, valid_after=0x99)
        assert packed == (0x1234 << 160) | (0x99 << 208)
        assert unpack_validation_data(packed) == (False, 0x1234, 0x99)

    def test_failure_bit(self):
        assert unpack_validation_data(pack_validation_data(5, 1, sig_failed=True))[0] is True


class TestOwnerPath:
    @pytest.mark.parametrize("mode", list(SignatureMode))
    def test_owner_signature_every_mode(self, account, relayer, owner, mode):
        request = signed(_request(account), owner, mode)
        assert account.validate_request(relayer.address, request) == SIG_VALIDATION_SUCCESS
        assert account.engine.has_ticket

    def test_resolve_reports_mode_and_path(self, account, owner):
        request = signed(_request(account), owner, SignatureMode.PERSONAL)
        mode, signer, path = account.gate.resolve(request.request_hash(), request.signature)
        assert (mode, signer, path) == (SignatureMode.PERSONAL, addr(owner), AuthorizationPath.OWNER)

    def test_unknown_signer_fails_validation(self, account, relayer, other):
        request = signed(_request(account), other)
        assert account.validate_request(relayer.address, request) == SIG_VALIDATION_FAILED
        assert not account.engine.has_ticket
        with pytest.raises(UnknownSignerError):
            account.gate.authorize(request, GENESIS)

    def test_malformed_signature_fails_validation(self, account, relayer):
        request = _request(account).with_signature(b"\x01" * 64)
        assert account.validate_request(relayer.address, request) == SIG_VALIDATION_FAILED
        with pytest.raises(InvalidSignatureError):
            account.gate.authorize(request, GENESIS)

    def test_typed_signature_for_other_chain_fails(self, account, relayer, owner):
        request = signed(_request(account), owner, SignatureMode.TYPED_DATA, chain_id=1)
        assert account.validate_request(relayer.address, request) == SIG_VALIDATION_FAILED

    def test_signature_does_not_cover_other_request(self, account, relayer, owner):
        sig = signed(_request(account, X), owner).signature
        tampered = _request(account, Y).with_signature(sig)
        assert account.validate_request(relayer.address, tampered) == SIG_VALIDATION_FAILED

    def test_only_relayer_validates(self, account, owner, other):
        request = signed(_request(account), owner)
        with pytest.raises(UnauthorizedError):
            account.validate_request(other.address, request)
        with pytest.raises(UnauthorizedError):
            account.validate_request(owner.address, request)

    def test_request_for_other_account_rejected(self, account, relayer, owner):
        request = signed(Request.single("0x" + "cc" * 20, 0, X), owner)
        with pytest.raises(ValueError, match="not this account"):
            account.validate_request(relayer.address, request)


class TestSessionKeyPath:
    @pytest.mark.parametrize("mode", list(SignatureMode))
    def test_session_key_every_mode(self, account, relayer, owner, mode):
        key = Account.create()
        account.register_session_key(owner.address, key.address, GENESIS, GENESIS + HOUR, limit=5)
        request = signed(_request(account), key, mode)
        data = account.validate_request(relayer.address, request)
        assert unpack_validation_data(data) == (False, GENESIS + HOUR, GENESIS)
        assert account.session_keys.remaining_uses(key.address) == 4

    def test_denial_propagates_and_grants_nothing(self, account, relayer, owner):
        key = Account.create()
        account.register_session_key(owner.address, key.address, GENESIS, GENESIS + HOUR, limit=5, whitelist=[X])
        request = signed(_request(account, Y), key)
        with pytest.raises(TargetNotWhitelistedError):
            account.validate_request(relayer.address, request)
        assert not account.engine.has_ticket
        assert account.session_keys.remaining_uses(key.address) == 5

    def test_revoked_key_is_unknown_signer(self, account, relayer, owner):
        key = Account.create()
        account.register_session_key(owner.address, key.address, GENESIS, GENESIS + HOUR, limit=5)
        account.revoke_session_key(owner.address, key.address)
        request = signed(_request(account), key)
        assert account.validate_request(relayer.address, request) == SIG_VALIDATION_FAILED

    def test_limited_whitelisted_key_lifecycle(self, account, relayer, owner):
        spender, stranger_key = Account.create(), Account.create()
        account.register_session_key(owner.address, spender.address, GENESIS, GENESIS + HOUR, limit=1, whitelist=[X])
        account.register_session_key(owner.address, stranger_key.address, GENESIS, GENESIS + HOUR, limit=1, whitelist=[X])

        first = relayer.handle(signed(_request(account, X, nonce=0), spender))
        assert first.success

        with pytest.raises(LimitReachedError):
            relayer.handle(signed(_request(account, X, nonce=1), spender))
        with pytest.raises(TargetNotWhitelistedError):
            relayer.handle(signed(_request(account, Y, nonce=1), stranger_key))

        assert relayer.get_nonce(account.address) == 1
        assert account.session_keys.remaining_uses(stranger_key.address) == 1


class TestVerify:
    def test_verify_does_not_consume(self, account, owner):
        key = Account.create()
        account.register_session_key(owner.address, key.address, GENESIS, GENESIS + HOUR, limit=1)
        request = signed(_request(account), key)
        assert account.gate.verify(request.request_hash(), request.signature, GENESIS)
        assert account.gate.verify(request.request_hash(), request.signature, GENESIS)
        assert account.session_keys.remaining_uses(key.address) == 1

    def test_verify_inactive_key(self, account, owner):
        key = Account.create()
        account.register_session_key(owner.address, key.address, GENESIS, GENESIS + HOUR, limit=1)
        request = signed(_request(account), key)
        assert not account.gate.verify(request.request_hash(), request.signature, GENESIS + HOUR + 1)
