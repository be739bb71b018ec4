"""Tests for relayed request handling: nonces, receipts and reentrancy."""

import pytest
from eth_account import Account

from warden.errors import CallRevertedError, InvalidNonceError, LimitReachedError, NoCodeError
from warden.gate import SIG_VALIDATION_FAILED
from warden.relayer import ExecutionReceipt
from warden.request import Call, Request

from conftest import GENESIS, signed

HOUR = 3600


class TestNonces:
    def test_nonce_advances_on_success(self, account, relayer, owner, recorder):
        for nonce in range(3):
            receipt = relayer.handle(signed(Request.single(account.address, nonce, recorder.address), owner))
            assert receipt.success
        assert relayer.get_nonce(account.address) == 3

    def test_wrong_nonce_rejected(self, account, relayer, owner, recorder):
        with pytest.raises(InvalidNonceError) as exc:
            relayer.handle(signed(Request.single(account.address, 1, recorder.address), owner))
        assert (exc.value.expected, exc.value.got) == (0, 1)

    def test_replay_rejected(self, account, relayer, owner, recorder):
        request = signed(Request.single(account.address, 0, recorder.address), owner)
        relayer.handle(request)
        with pytest.raises(InvalidNonceError):
            relayer.handle(request)
        assert len(recorder.storage.calls) == 1

    def test_bad_signature_does_not_spend_nonce(self, account, relayer, other, recorder):
        receipt = relayer.handle(signed(Request.single(account.address, 0, recorder.address), other))
        assert not receipt.success
        assert receipt.validation_data == SIG_VALIDATION_FAILED
        assert relayer.get_nonce(account.address) == 0
        assert recorder.storage.calls == []

    def test_unknown_sender(self, relayer, owner, recorder):
        with pytest.raises(NoCodeError):
            relayer.handle(signed(Request.single("0x" + "44" * 20, 0, recorder.address), owner))


class TestReceipts:
    def test_success_receipt_carries_return_data(self, account, relayer, owner, recorder):
        calls = [Call(recorder.address, 0, b"a"), Call(recorder.address, 0, b"b")]
        receipt = relayer.handle(signed(Request.batch(account.address, 0, calls), owner))
        assert receipt.success
        assert receipt.return_data == [b"ok:a", b"ok:b"]
        assert receipt.to_dict()["return_data"] == ["0x" + b"ok:a".hex(), "0x" + b"ok:b".hex()]

    def test_revert_captured_with_original_data(self, account, relayer, owner, recorder, reverter):
        calls = [Call(recorder.address, 0, b"a"), Call(reverter.address)]
        receipt = relayer.handle(signed(Request.batch(account.address, 0, calls), owner))
        assert not receipt.success
        assert receipt.revert_data == reverter.revert_data
        assert recorder.storage.calls == []
        assert relayer.get_nonce(account.address) == 1

    def test_session_key_receipt_window(self, account, relayer, owner, recorder):
        key = Account.create()
        account.register_session_key(owner.address, key.address, GENESIS, GENESIS + HOUR, limit=1)
        receipt = relayer.handle(signed(Request.single(account.address, 0, recorder.address), key))
        assert receipt.validity_window == (GENESIS, GENESIS + HOUR)


class TestSessionKeyBudget:
    def test_batch_counts_as_one_use(self, account, relayer, owner, recorder):
        key = Account.create()
        account.register_session_key(owner.address, key.address, GENESIS, GENESIS + HOUR, limit=1)
        calls = [Call(recorder.address, 0, bytes([i])) for i in range(3)]
        receipt = relayer.handle(signed(Request.batch(account.address, 0, calls), key))
        assert receipt.success
        assert len(recorder.storage.calls) == 3
        assert account.session_keys.remaining_uses(key.address) == 0
        assert not account.is_session_key_active(key.address)

        with pytest.raises(LimitReachedError):
            relayer.handle(signed(Request.single(account.address, 1, recorder.address), key))

    def test_revert_still_spends_use(self, account, relayer, owner, reverter):
        key = Account.create()
        account.register_session_key(owner.address, key.address, GENESIS, GENESIS + HOUR, limit=2)
        receipt = relayer.handle(signed(Request.single(account.address, 0, reverter.address), key))
        assert not receipt.success
        assert account.session_keys.remaining_uses(key.address) == 1

    def test_reentrant_request_sees_spent_budget(self, account, relayer, owner, reentrant):
        key = Account.create()
        account.register_session_key(
            owner.address, key.address, GENESIS, GENESIS + HOUR, limit=1, whitelist=[reentrant.address]
        )
        reentrant.queued = signed(Request.single(account.address, 1, reentrant.address), key)

        receipt = relayer.handle(signed(Request.single(account.address, 0, reentrant.address), key))

        assert receipt.success
        assert isinstance(reentrant.inner_error, LimitReachedError)
        assert reentrant.inner_receipt is None
        assert account.session_keys.remaining_uses(key.address) == 0
        assert relayer.get_nonce(account.address) == 1

    def test_reentrant_owner_request_runs(self, account, relayer, owner, reentrant, recorder):
        reentrant.queued = signed(Request.single(account.address, 1, recorder.address, 0, b"inner"), owner)
        receipt = relayer.handle(signed(Request.single(account.address, 0, reentrant.address), owner))
        assert receipt.success
        assert reentrant.inner_receipt.success
        assert recorder.storage.calls == [(account.address, 0, b"inner")]
        assert relayer.get_nonce(account.address) == 2


class TestRollback:
    def test_inner_request_rolled_back_with_outer_batch(self, account, relayer, owner, recorder, reverter, reentrant):
        reentrant.queued = signed(Request.single(account.address, 1, recorder.address, 0, b"inner"), owner)
        calls = [Call(reentrant.address), Call(reverter.address)]

        receipt = relayer.handle(signed(Request.batch(account.address, 0, calls), owner))

        assert not receipt.success
        assert recorder.storage.calls == []
        assert relayer.get_nonce(account.address) == 1
        assert relayer.receipts(account.address) == [receipt]

    def test_inner_request_kept_when_outer_succeeds(self, account, relayer, owner, recorder, reentrant):
        reentrant.queued = signed(Request.single(account.address, 1, recorder.address, 0, b"inner"), owner)
        receipt = relayer.handle(signed(Request.single(account.address, 0, reentrant.address), owner))
        assert [r.nonce for r in relayer.receipts()] == [1, 0]
        assert relayer.receipts()[-1] == receipt

    def test_relayer_is_deployed_on_its_chain(self, chain, relayer):
        assert chain.get_contract(relayer.address) is relayer

    def test_relayer_rejects_calldata(self, chain, relayer):
        with pytest.raises(CallRevertedError):
            chain.call("0x" + "55" * 20, relayer.address, 0, b"\x01")

    def test_receipt_dict_round_trip(self, account, relayer, owner, reverter):
        receipt = relayer.handle(signed(Request.single(account.address, 0, reverter.address), owner))
        assert ExecutionReceipt.from_dict(receipt.to_dict()) == receipt
