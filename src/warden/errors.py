"""
Warden error types.

Specific exceptions for each way a request can be refused or an
execution can fail, so relayers and callers can tell a bad signature
from an exhausted session key from a reverting sub-call.
"""

from __future__ import annotations

from typing import Optional


class WardenError(Exception):
    """Base error for all Warden operations."""
    pass


# Authorization errors
class AuthorizationError(WardenError):
    """Base error for a refused request or caller."""
    pass


class UnauthorizedError(AuthorizationError):
    """Caller lacks the role required for the operation."""
    def __init__(self, caller: str, action: str):
        self.caller = caller
        self.action = action
        super().__init__(f"{caller} is not authorized to {action}")


class InvalidSignatureError(AuthorizationError):
    """Signature is malformed or cannot be recovered."""
    pass


class UnknownSignerError(AuthorizationError):
    """Recovered signer holds no authority over the account."""
    def __init__(self, account: str):
        self.account = account
        super().__init__(f"Signer has no authority over account {account}")


class ExpiredError(AuthorizationError):
    """Session key window has closed."""
    def __init__(self, key: str, valid_until: int, now: int):
        self.key = key
        self.valid_until = valid_until
        self.now = now
        super().__init__(f"Session key {key} expired at {valid_until} (now {now})")


class NotYetValidError(AuthorizationError):
    """Session key window has not opened yet."""
    def __init__(self, key: str, valid_after: int, now: int):
        self.key = key
        self.valid_after = valid_after
        self.now = now
        super().__init__(f"Session key {key} not valid before {valid_after} (now {now})")


class LimitReachedError(AuthorizationError):
    """Session key call budget is exhausted."""
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Session key {key} has no remaining uses")


class TargetNotWhitelistedError(AuthorizationError):
    """A call target is outside the session key's whitelist."""
    def __init__(self, key: str, target: str):
        self.key = key
        self.target = target
        super().__init__(f"Target {target} is not whitelisted for session key {key}")


class InvalidNonceError(AuthorizationError):
    """Request nonce is not the next one expected for its sender."""
    def __init__(self, sender: str, expected: int, got: int):
        self.sender = sender
        self.expected = expected
        self.got = got
        super().__init__(f"Invalid nonce for {sender}: expected {expected}, got {got}")


class BatchTooLargeError(AuthorizationError):
    """Whitelisted session keys may not sign oversized batches."""
    def __init__(self, size: int, maximum: int):
        self.size = size
        self.maximum = maximum
        super().__init__(f"Batch of {size} calls exceeds whitelist batch cap {maximum}")


# Session-key policy errors
class PolicyError(WardenError):
    """Base error for invalid session-key policies."""
    pass


class WhitelistTooLargeError(PolicyError):
    def __init__(self, size: int, maximum: int):
        self.size = size
        self.maximum = maximum
        super().__init__(f"Whitelist has {size} entries, maximum is {maximum}")


class InvalidWindowError(PolicyError):
    def __init__(self, valid_after: int, valid_until: int):
        self.valid_after = valid_after
        self.valid_until = valid_until
        super().__init__(f"Invalid validity window [{valid_after}, {valid_until}]")


class UnknownSessionKeyError(PolicyError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Session key not registered: {key}")


# Account administration errors
class AccountError(WardenError):
    """Base error for account administration failures."""
    pass


class ZeroAddressNotAllowedError(AccountError):
    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"{field_name} cannot be the zero address")


class AlreadyInitializedError(AccountError):
    """Account initialize() called twice."""
    pass


class LengthMismatchError(AccountError):
    def __init__(self, targets: int, values: int, data_items: int):
        super().__init__(
            f"Batch arity mismatch: {targets} targets, {values} values, {data_items} data items"
        )


# Execution errors
class ExecutionError(WardenError):
    """Base error for sub-call failures."""
    pass


class CallRevertedError(ExecutionError):
    """A sub-call reverted. ``revert_data`` is the callee's failure data, verbatim."""
    def __init__(self, revert_data: bytes = b"", target: Optional[str] = None):
        self.revert_data = revert_data
        self.target = target
        reason = revert_data.decode("utf-8", errors="replace") if revert_data else "no reason"
        super().__init__(f"Call reverted: {reason}")


class InsufficientBalanceError(CallRevertedError):
    def __init__(self, sender: str, balance: int, value: int):
        self.sender = sender
        self.balance = balance
        self.value = value
        super().__init__(b"insufficient balance")


class NoCodeError(ExecutionError):
    """No contract is deployed at the address."""
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"No contract deployed at {address}")
