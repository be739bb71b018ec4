"""
Warden — self-custodial smart accounts with delegated session keys.

An owner controls the account; session keys act on the owner's behalf
within a time window, a call budget and an optional target whitelist.
A trusted relayer submits signed requests; nobody else can spend.
"""

__version__ = "0.1.0"

from .account import (
    ACCOUNT_VARIANTS,
    ERC1271_INVALID,
    ERC1271_MAGIC_VALUE,
    AccountStorage,
    SimpleAccount,
    SmartAccount,
)
from .audit import AuditTrail, EventType
from .chain import LocalChain
from .config import WardenConfig
from .execution import ExecutionEngine
from .factory import AccountFactory
from .gate import Authorization, AuthorizationGate, AuthorizationPath
from .ownership import OwnershipController
from .relayer import ExecutionReceipt, LocalRelayer
from .request import Call, Request, sign_request
from .session_keys import UNLIMITED, SessionKeyPolicy, SessionKeyRegistry
from .signatures import SignatureMode, SignatureResolver, SigningDomain, sign_request_hash
from .store import ChainStore

__all__ = [
    "SmartAccount", "SimpleAccount", "AccountStorage", "ACCOUNT_VARIANTS",
    "ERC1271_MAGIC_VALUE", "ERC1271_INVALID",
    "AccountFactory", "LocalChain", "LocalRelayer", "ExecutionReceipt",
    "Call", "Request", "sign_request",
    "SignatureMode", "SignatureResolver", "SigningDomain", "sign_request_hash",
    "SessionKeyPolicy", "SessionKeyRegistry", "UNLIMITED",
    "OwnershipController", "AuthorizationGate", "Authorization", "AuthorizationPath",
    "ExecutionEngine", "ChainStore", "WardenConfig",
    "AuditTrail", "EventType",
]
