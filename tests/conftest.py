"""Shared fixtures: a local chain, relayer, factory and a few mock contracts."""

from dataclasses import dataclass, field
from typing import Optional

import pytest
from eth_account import Account

from warden.chain import LocalChain
from warden.errors import AuthorizationError, CallRevertedError
from warden.factory import AccountFactory
from warden.relayer import LocalRelayer
from warden.request import Request, sign_request
from warden.signatures import SignatureMode


GENESIS = 1_700_000_000
CHAIN_ID = 8453


@dataclass
class RecorderStorage:
    calls: list = field(default_factory=list)


class Recorder:
    """Records every call it receives and echoes the calldata back."""

    def __init__(self, address: str):
        self.address = address
        self.storage = RecorderStorage()

    def on_call(self, chain, sender, value, data):
        self.storage.calls.append((sender, value, data))
        return b"ok:" + data


class Reverter:
    def __init__(self, address: str, revert_data: bytes = b"nope"):
        self.address = address
        self.revert_data = revert_data

    def on_call(self, chain, sender, value, data):
        raise CallRevertedError(self.revert_data, target=self.address)


class Reentrant:
    """Submits a queued request back through the relayer while being called."""

    def __init__(self, address: str, relayer: LocalRelayer):
        self.address = address
        self.relayer = relayer
        self.queued: Optional[Request] = None
        self.inner_receipt = None
        self.inner_error: Optional[Exception] = None

    def on_call(self, chain, sender, value, data):
        if self.queued is not None:
            request, self.queued = self.queued, None
            try:
                self.inner_receipt = self.relayer.handle(request)
            except AuthorizationError as e:
                self.inner_error = e
        return b""


def addr(account) -> str:
    return account.address.lower()


def signed(request: Request, signer, mode: SignatureMode = SignatureMode.TYPED_DATA, chain_id: int = CHAIN_ID):
    return sign_request(request, signer.key, chain_id, mode)


@pytest.fixture
def chain():
    return LocalChain(chain_id=CHAIN_ID, timestamp=GENESIS)


@pytest.fixture
def relayer(chain):
    return LocalRelayer(chain)


@pytest.fixture
def factory(chain, relayer):
    return AccountFactory(chain, relayer.address)


@pytest.fixture
def owner():
    return Account.create()


@pytest.fixture
def other():
    return Account.create()


@pytest.fixture
def account(chain, factory, owner):
    address = factory.create_account(owner.address, 0)
    chain.mint(address, 10**18)
    return factory.get_account(address)


@pytest.fixture
def recorder(chain):
    contract = Recorder("0x" + "11" * 20)
    chain.deploy(contract.address, contract)
    return contract


@pytest.fixture
def reverter(chain):
    contract = Reverter("0x" + "22" * 20, revert_data=b"\x08\xc3\x79\xa0custom")
    chain.deploy(contract.address, contract)
    return contract


@pytest.fixture
def reentrant(chain, relayer):
    contract = Reentrant("0x" + "33" * 20, relayer)
    chain.deploy(contract.address, contract)
    return contract
