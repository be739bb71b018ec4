"""
Deterministic account deployment.

Account addresses follow CREATE2 over an EIP-1167 minimal proxy that
points at the variant's implementation:

    salt     = keccak(pad32(admin) || uint256(nonce))
    initCode = 0x3d602d80600a3d3981f3363d3d373d3d3d363d73 || implementation || 0x5af43d82803e903d91602b57fd5bf3
    address  = keccak(0xff || factory || salt || keccak(initCode))[12:]

so an account's address is known before it exists, and creating it
twice is a no-op that returns the same address.
"""

from __future__ import annotations

import logging
from typing import Optional

from eth_utils import keccak

from .account import SmartAccount, _AccountBase
from .chain import LocalChain
from .encoding import address_bytes, is_zero_address, normalize_address
from .errors import ZeroAddressNotAllowedError

logger = logging.getLogger(__name__)


EIP1167_PREFIX = bytes.fromhex("3d602d80600a3d3981f3363d3d373d3d3d363d73")
EIP1167_SUFFIX = bytes.fromhex("5af43d82803e903d91602b57fd5bf3")

_UINT256_MAX = 2**256 - 1


def derived_address(label: str) -> str:
    """Stable placeholder address for a named singleton (factory, implementation)."""
    return "0x" + keccak(text=f"warden:{label}")[12:].hex()


def account_salt(admin: str, nonce: int) -> bytes:
    if not (0 <= nonce <= _UINT256_MAX):
        raise ValueError("nonce must fit in uint256")
    return keccak(address_bytes(admin).rjust(32, b"\x00") + int(nonce).to_bytes(32, "big"))


def proxy_init_code(implementation: str) -> bytes:
    return EIP1167_PREFIX + address_bytes(implementation) + EIP1167_SUFFIX


def create2_address(deployer: str, salt: bytes, init_code_hash: bytes) -> str:
    digest = keccak(b"\xff" + address_bytes(deployer) + salt + init_code_hash)
    return "0x" + digest[12:].hex()


class AccountFactory:
    """Creates accounts of one variant, all trusting the same relayer."""

    def __init__(
        self,
        chain: LocalChain,
        trusted_relayer: str,
        account_cls: type[_AccountBase] = SmartAccount,
        address: Optional[str] = None,
        implementation: Optional[str] = None,
    ):
        if is_zero_address(trusted_relayer):
            raise ZeroAddressNotAllowedError("trusted relayer")
        self.chain = chain
        self.trusted_relayer = normalize_address(trusted_relayer)
        self.account_cls = account_cls
        self.address = normalize_address(address or derived_address(f"factory:{account_cls.VARIANT}"))
        self.implementation = normalize_address(
            implementation or derived_address(f"implementation:{account_cls.VARIANT}")
        )
        self._init_code_hash = keccak(proxy_init_code(self.implementation))

    def get_address(self, admin: str, nonce: int) -> str:
        """Predict the account address for ``(admin, nonce)``. Pure."""
        return create2_address(self.address, account_salt(admin, nonce), self._init_code_hash)

    def create_account(self, admin: str, nonce: int) -> str:
        """Deploy the account for ``(admin, nonce)`` unless it already exists."""
        address = self.get_address(admin, nonce)
        if self.chain.has_code(address):
            logger.debug("Account already deployed at %s", address)
            return address
        if is_zero_address(admin):
            raise ZeroAddressNotAllowedError("admin")

        account = self.account_cls(self.chain, address)
        with self.chain.atomic():
            self.chain.deploy(address, account)
            account.initialize(admin, self.trusted_relayer)
            self.chain.emit(self.address, "AccountCreated", account=address, admin=normalize_address(admin))

        logger.info(
            "Account created: %s (variant: %s, admin: %s, nonce: %d)",
            address, self.account_cls.VARIANT, normalize_address(admin), nonce,
        )
        return address

    def get_account(self, address: str) -> _AccountBase:
        account = self.chain.get_contract(address)
        if not isinstance(account, self.account_cls):
            raise TypeError(f"{address} is not a {self.account_cls.__name__}")
        return account
