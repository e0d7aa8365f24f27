#!/usr/bin/env python3
"""
ShadowBounty — Type Definitions
================================
Enums, records, the error taxonomy and reward-token helpers shared by
every ShadowBounty module.

Usage:
    from shadowbounty_types import Bounty, Claim, BountyStatus, InvalidState, ...

Version: 1.0  —  October 2026
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================================
# ENUMS
# ============================================================================

class BountyStatus(str, Enum):
    """Lifecycle status of a Bounty."""
    OPEN = "open"
    CLOSED = "closed"


class ClaimStatus(str, Enum):
    """Review status of a Claim. Approved and Rejected are terminal."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CloseReason(str, Enum):
    """Why a bounty left the Open state."""
    AWARDED = "awarded"
    CANCELLED = "cancelled"


class EncryptionScheme(str, Enum):
    """How a claim's evidence blob was produced."""
    PGP = "pgp"
    BASE64_UNENCRYPTED = "base64-unencrypted"


# Valid status transitions: from_status → set of allowed to_statuses
BOUNTY_TRANSITIONS: Dict[str, set] = {
    "open":   {"closed"},
    "closed": set(),
}

CLAIM_TRANSITIONS: Dict[str, set] = {
    "pending":  {"approved", "rejected"},
    "approved": set(),
    "rejected": set(),
}


def can_transition(table: Dict[str, set], old: Enum, new: Enum) -> bool:
    """Check a move against one of the transition tables."""
    return new.value in table.get(old.value, set())


# ============================================================================
# ERRORS
# ============================================================================

class MarketplaceError(Exception):
    """
    Base error for the coordination core.

    `code` is the machine-readable identifier returned over HTTP.
    `stage` is set by the orchestrators to name the step that failed
    (e.g. "storage.put", "claim.approve").
    """
    code = "ERROR"
    http_status = 500

    def __init__(self, message: str, stage: Optional[str] = None):
        self.message = message
        self.stage = stage
        super().__init__(f"[{stage}] {message}" if stage else message)

    def with_stage(self, stage: str) -> "MarketplaceError":
        """Annotate with the failing stage, keeping an existing annotation."""
        if self.stage is None:
            self.stage = stage
            self.args = (f"[{stage}] {self.message}",)
        return self

    def to_detail(self) -> Dict[str, Any]:
        detail = {"code": self.code, "message": self.message}
        if self.stage:
            detail["stage"] = self.stage
        return detail


class TransientError(MarketplaceError):
    """Marker for upstream failures a caller may retry with backoff."""


class InvalidInput(MarketplaceError):
    code = "INVALID_INPUT"
    http_status = 400


class InvalidKey(InvalidInput):
    code = "INVALID_KEY"


class InvalidState(MarketplaceError):
    code = "INVALID_STATE"
    http_status = 409


class Unauthorized(MarketplaceError):
    code = "UNAUTHORIZED"
    http_status = 403


class NotFound(MarketplaceError):
    code = "NOT_FOUND"
    http_status = 404


class StorageUnavailable(TransientError):
    code = "STORAGE_UNAVAILABLE"
    http_status = 503


class LedgerUnavailable(TransientError):
    code = "LEDGER_UNAVAILABLE"
    http_status = 503


class Inconsistent(MarketplaceError):
    """
    Local state and custody state disagree (e.g. claim Approved but funds
    not released). Requires reconciliation; never shown as an ordinary
    failure.
    """
    code = "INCONSISTENT"
    http_status = 500

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        bounty_id: Optional[int] = None,
        claim_id: Optional[int] = None,
    ):
        self.bounty_id = bounty_id
        self.claim_id = claim_id
        super().__init__(message, stage)

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["bounty_id"] = self.bounty_id
        detail["claim_id"] = self.claim_id
        detail["requires_reconciliation"] = True
        return detail


# ============================================================================
# IDENTITIES & KEYS
# ============================================================================

PGP_PUBLIC_KEY_BEGIN = "-----BEGIN PGP PUBLIC KEY BLOCK-----"
PGP_PUBLIC_KEY_END = "-----END PGP PUBLIC KEY BLOCK-----"


def canonical_identity(raw: Optional[str], field_name: str = "identity") -> str:
    """Wallet addresses compare case-insensitively; store them lower-cased."""
    value = (raw or "").strip().lower()
    if not value:
        raise InvalidInput(f"{field_name} is required")
    return value


def validate_pgp_public_key(armored: Optional[str]) -> str:
    """
    Structural check only: both armor delimiters present, BEGIN before END.
    Returns the stripped key text.
    """
    text = (armored or "").strip()
    if not text:
        raise InvalidInput("PGP public key is required")
    begin = text.find(PGP_PUBLIC_KEY_BEGIN)
    end = text.find(PGP_PUBLIC_KEY_END)
    if begin < 0 or end < 0 or end < begin:
        raise InvalidKey("Invalid PGP key format")
    return text


# ============================================================================
# REWARD TOKENS
# ============================================================================

@dataclass(frozen=True)
class RewardToken:
    """An ERC-20 style token accepted for bounty rewards."""
    symbol: str
    address: str
    decimals: int


# Test-chain tokens offered by the bounty creation form.
DEFAULT_REWARD_TOKENS: List[RewardToken] = [
    RewardToken("pUSDC", "0x5425890298aed601595a70ab815c96711a31bc65", 6),
    RewardToken("pLINK", "0x0b9d5d9136855f6fec3c0993fee6e9ce8a297846", 18),
    RewardToken("pDAI", "0x51bc2dfb9d12d9db50c855a5330fba0faf761d15", 18),
]


def find_token(tokens: List[RewardToken], ref: str) -> Optional[RewardToken]:
    """Look a token up by address or symbol, case-insensitively."""
    needle = (ref or "").strip().lower()
    for token in tokens:
        if token.address.lower() == needle or token.symbol.lower() == needle:
            return token
    return None


def parse_units(amount: str, decimals: int) -> int:
    """
    Convert a human decimal amount ("12.5") into the token's smallest unit.
    Never goes through float.
    """
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInput(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise InvalidInput(f"Invalid amount: {amount!r}")
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidInput(f"Amount {amount} has more than {decimals} decimal places")
    units = int(scaled)
    if units <= 0:
        raise InvalidInput("Reward amount must be greater than zero")
    return units


def format_units(units: int, decimals: int) -> str:
    """Inverse of parse_units, trimmed of trailing zeros."""
    text = format(Decimal(units).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


# ============================================================================
# CORE RECORDS
# ============================================================================

def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


@dataclass
class Organization:
    """A registered organization: who to encrypt claim evidence for."""
    wallet_address: str
    org_name: str
    pgp_key: str
    registered_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "walletAddress": self.wallet_address,
            "orgName": self.org_name,
            "pgpKey": self.pgp_key,
            "registeredAt": _iso(self.registered_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Organization":
        return cls(
            wallet_address=data["walletAddress"],
            org_name=data["orgName"],
            pgp_key=data["pgpKey"],
            registered_at=_parse_ts(data.get("registeredAt")) or datetime.utcnow(),
        )


@dataclass
class Bounty:
    """
    An organization's standing offer. The reward is escrowed at creation
    and is immutable afterwards; amounts are integers in the token's
    smallest unit.
    """
    bounty_id: int
    creator: str
    title: str
    reward_token: str
    reward_amount: int
    status: BountyStatus = BountyStatus.OPEN
    escrow_ref: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)
    closed_at: Optional[datetime] = None
    close_reason: Optional[CloseReason] = None
    winning_claim_id: Optional[int] = None
    release_tx: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == BountyStatus.OPEN

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["close_reason"] = self.close_reason.value if self.close_reason else None
        data["created_at"] = _iso(self.created_at)
        data["closed_at"] = _iso(self.closed_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Bounty":
        return cls(
            bounty_id=int(data["bounty_id"]),
            creator=data["creator"],
            title=data["title"],
            reward_token=data["reward_token"],
            reward_amount=int(data["reward_amount"]),
            status=BountyStatus(data.get("status", "open")),
            escrow_ref=data.get("escrow_ref", ""),
            created_at=_parse_ts(data.get("created_at")) or datetime.utcnow(),
            closed_at=_parse_ts(data.get("closed_at")),
            close_reason=CloseReason(data["close_reason"]) if data.get("close_reason") else None,
            winning_claim_id=data.get("winning_claim_id"),
            release_tx=data.get("release_tx"),
        )


@dataclass
class Claim:
    """
    A submitter's response to a bounty: public teaser plus the content id
    of the encrypted full message. References its bounty by id only.
    """
    claim_id: int
    bounty_id: int
    submitter: str
    teaser: str
    content_id: str
    encryption: EncryptionScheme = EncryptionScheme.PGP
    status: ClaimStatus = ClaimStatus.PENDING
    submitted_at: datetime = field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @property
    def confidential(self) -> bool:
        """False when the evidence was only base64-encoded, not encrypted."""
        return self.encryption == EncryptionScheme.PGP

    @property
    def is_resolved(self) -> bool:
        return self.status != ClaimStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["encryption"] = self.encryption.value
        data["confidential"] = self.confidential
        data["submitted_at"] = _iso(self.submitted_at)
        data["resolved_at"] = _iso(self.resolved_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Claim":
        return cls(
            claim_id=int(data["claim_id"]),
            bounty_id=int(data["bounty_id"]),
            submitter=data["submitter"],
            teaser=data["teaser"],
            content_id=data["content_id"],
            encryption=EncryptionScheme(data.get("encryption", "pgp")),
            status=ClaimStatus(data.get("status", "pending")),
            submitted_at=_parse_ts(data.get("submitted_at")) or datetime.utcnow(),
            resolved_at=_parse_ts(data.get("resolved_at")),
            resolved_by=data.get("resolved_by"),
        )


@dataclass
class EncryptedPayload:
    """Output of the encryption step. `scheme` travels with the claim."""
    ciphertext: bytes
    scheme: EncryptionScheme

    @property
    def confidential(self) -> bool:
        return self.scheme == EncryptionScheme.PGP
