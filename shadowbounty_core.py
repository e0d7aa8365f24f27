#!/usr/bin/env python3
"""
ShadowBounty Coordination Core
===============================
Escrow and claim coordination for the intelligence-bounty marketplace.

Components:
    OrganizationDirectory — wallet → display name + PGP public key
    BountyLedger          — bounty records, escrow lock/release/refund
    ClaimRegistry         — claim records, single-winner enforcement
    SubmissionLog         — legacy append-only list of content ids
    SubmissionPipeline    — encrypt → store → register a claim
    ReviewEngine          — approve/reject, release funds, reconcile

Every mutation of a bounty and of the claims under it runs under the
bounty's entry in a shared KeyedLock. Approval is additionally a
compare-and-set in the backend, so two approvals racing for one bounty
cannot both land even across processes.

The caller's wallet identity is an explicit argument everywhere; nothing
here reads ambient session state.

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from shadowbounty_backend import KeyedLock
from shadowbounty_content import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_RETRY_ATTEMPTS,
    encode_unencrypted,
    retry_with_backoff,
)
from shadowbounty_types import (
    BOUNTY_TRANSITIONS,
    CLAIM_TRANSITIONS,
    Bounty,
    BountyStatus,
    Claim,
    ClaimStatus,
    CloseReason,
    EncryptionScheme,
    Inconsistent,
    InvalidInput,
    InvalidState,
    MarketplaceError,
    NotFound,
    Organization,
    StorageUnavailable,
    Unauthorized,
    canonical_identity,
    can_transition,
    validate_pgp_public_key,
)

logger = logging.getLogger("sb-core")


# ============================================================================
# ORGANIZATION DIRECTORY
# ============================================================================

class OrganizationDirectory:
    """Registration is last-write-wins per canonical wallet address."""

    def __init__(self, backend):
        self.backend = backend

    def register(self, identity: str, name: str, public_key: str) -> Organization:
        wallet = canonical_identity(identity, "walletAddress")
        org_name = (name or "").strip()
        if not org_name:
            raise InvalidInput("Organization name is required")
        key = validate_pgp_public_key(public_key)

        org = Organization(wallet_address=wallet, org_name=org_name, pgp_key=key)
        previous = self.backend.get_organization(wallet)
        self.backend.put_organization(org)
        self.backend.audit(
            "organization.reregistered" if previous else "organization.registered",
            {"wallet_address": wallet, "org_name": org_name},
            actor=wallet,
        )
        logger.info(f"Organization registered: {org_name} ({wallet})")
        return org

    def get(self, identity: str) -> Organization:
        wallet = canonical_identity(identity, "walletAddress")
        org = self.backend.get_organization(wallet)
        if org is None:
            raise NotFound(f"Organization {wallet} not found")
        return org

    def list_organizations(self) -> List[Organization]:
        return self.backend.list_organizations()

    def public_key_for(self, identity: str) -> Optional[str]:
        """The key to encrypt for, or None if the wallet never registered."""
        try:
            return self.get(identity).pgp_key
        except NotFound:
            return None


# ============================================================================
# BOUNTY LEDGER
# ============================================================================

class BountyLedger:
    """
    Owns bounty state and is the boundary to the custody collaborator.
    A bounty record only exists if its escrow lock succeeded.
    """

    def __init__(self, backend, custody, locks: KeyedLock, allow_cancellation: bool = False):
        self.backend = backend
        self.custody = custody
        self.locks = locks
        self.allow_cancellation = allow_cancellation

    def create(self, creator: str, title: str, reward_token: str, reward_amount: int) -> int:
        creator = canonical_identity(creator, "creator")
        title = (title or "").strip()
        token = (reward_token or "").strip().lower()
        if not title:
            raise InvalidInput("Bounty title is required")
        if not token:
            raise InvalidInput("Reward token is required")
        if isinstance(reward_amount, bool) or not isinstance(reward_amount, int):
            raise InvalidInput("Reward amount must be an integer in the token's smallest unit")
        if reward_amount <= 0:
            raise InvalidInput("Reward amount must be greater than zero")

        try:
            escrow_ref = self.custody.create_escrow(token, reward_amount, creator)
        except MarketplaceError as e:
            raise e.with_stage("escrow.lock")

        bounty = Bounty(
            bounty_id=0,
            creator=creator,
            title=title,
            reward_token=token,
            reward_amount=reward_amount,
            escrow_ref=escrow_ref,
        )
        try:
            bounty = self.backend.insert_bounty(bounty)
        except Exception as e:
            logger.error(f"Bounty record failed after escrow {escrow_ref} locked: {e}")
            try:
                self.custody.refund_or_close(escrow_ref)
            except MarketplaceError as refund_error:
                self._flag_orphan_escrow(escrow_ref, creator, refund_error)
                raise Inconsistent(
                    f"Escrow {escrow_ref} locked but bounty not recorded and refund failed",
                    stage="bounty.record",
                ) from e
            raise

        self.backend.publish_event("bounty.created", {
            "bounty_id": bounty.bounty_id,
            "creator": creator,
            "reward_token": token,
            "reward_amount": str(reward_amount),
            "escrow_ref": escrow_ref,
        })
        self.backend.audit("bounty.created", {
            "bounty_id": bounty.bounty_id,
            "title": title,
            "reward_amount": str(reward_amount),
        }, actor=creator)
        logger.info(f"Bounty #{bounty.bounty_id} created by {creator}: {reward_amount} of {token}")
        return bounty.bounty_id

    def _flag_orphan_escrow(self, escrow_ref: str, creator: str, error: Exception) -> None:
        logger.critical(f"INCONSISTENT: escrow {escrow_ref} has no bounty record: {error}")
        self.backend.publish_event("escrow.reconciliation_required", {
            "escrow_ref": escrow_ref,
            "creator": creator,
            "reason": "bounty_not_recorded",
            "error": str(error),
        })

    def get(self, bounty_id: int) -> Bounty:
        bounty = self.backend.get_bounty(bounty_id)
        if bounty is None:
            raise NotFound(f"Bounty #{bounty_id} not found")
        return bounty

    def list_bounties(
        self,
        creator: Optional[str] = None,
        status: Optional[BountyStatus] = None,
    ) -> List[Bounty]:
        """Newest first, optionally filtered by creator and/or status."""
        if creator:
            creator = canonical_identity(creator, "creator")
        return self.backend.list_bounties(creator=creator, status=status)

    def close(
        self,
        bounty_id: int,
        reason: CloseReason = CloseReason.AWARDED,
        winning_claim_id: Optional[int] = None,
    ) -> Bounty:
        self.get(bounty_id)
        with self.locks.hold(bounty_id):
            bounty = self.get(bounty_id)
            if not can_transition(BOUNTY_TRANSITIONS, bounty.status, BountyStatus.CLOSED):
                raise InvalidState(f"Bounty #{bounty_id} is already closed")
            closed = replace(
                bounty,
                status=BountyStatus.CLOSED,
                closed_at=datetime.utcnow(),
                close_reason=reason,
                winning_claim_id=winning_claim_id,
            )
            if not self.backend.cas_bounty(closed, expected=BountyStatus.OPEN):
                raise InvalidState(f"Bounty #{bounty_id} changed state concurrently")
        self.backend.publish_event("bounty.closed", {
            "bounty_id": bounty_id,
            "reason": reason.value,
            "winning_claim_id": winning_claim_id,
        })
        logger.info(f"Bounty #{bounty_id} closed ({reason.value})")
        return closed

    def release_funds(self, bounty_id: int, recipient: str) -> str:
        """
        Transfer the escrowed reward to `recipient`. The bounty must still
        be Open and must not have released before.
        """
        recipient = canonical_identity(recipient, "recipient")
        self.get(bounty_id)
        with self.locks.hold(bounty_id):
            bounty = self.get(bounty_id)
            if bounty.status != BountyStatus.OPEN:
                raise InvalidState(f"Bounty #{bounty_id} is not open")
            if bounty.release_tx:
                raise InvalidState(f"Bounty #{bounty_id} already released ({bounty.release_tx})")
            tx_ref = self.custody.release(bounty.escrow_ref, recipient)
            updated = replace(bounty, release_tx=tx_ref)
            if not self.backend.cas_bounty(updated, expected=BountyStatus.OPEN):
                raise Inconsistent(
                    f"Funds released ({tx_ref}) but bounty #{bounty_id} record not updated",
                    stage="escrow.release",
                    bounty_id=bounty_id,
                )
        self.backend.publish_event("escrow.released", {
            "bounty_id": bounty_id,
            "escrow_ref": bounty.escrow_ref,
            "recipient": recipient,
            "amount": str(bounty.reward_amount),
            "tx_ref": tx_ref,
        })
        logger.info(f"Bounty #{bounty_id}: {bounty.reward_amount} released to {recipient} ({tx_ref})")
        return tx_ref

    def cancel(self, bounty_id: int, caller: str) -> Bounty:
        """
        Creator-only refund of an Open bounty nobody has a live claim on.
        Disabled unless the deployment turns it on.
        """
        if not self.allow_cancellation:
            raise InvalidState("Bounty cancellation is disabled")
        caller = canonical_identity(caller, "caller")
        self.get(bounty_id)
        with self.locks.hold(bounty_id):
            bounty = self.get(bounty_id)
            if caller != bounty.creator:
                raise Unauthorized(f"Only the creator may cancel bounty #{bounty_id}")
            if bounty.status != BountyStatus.OPEN:
                raise InvalidState(f"Bounty #{bounty_id} is not open")
            live = [
                c for c in self.backend.list_claims(bounty_id=bounty_id)
                if c.status in (ClaimStatus.PENDING, ClaimStatus.APPROVED)
            ]
            if live:
                raise InvalidState(f"Bounty #{bounty_id} has {len(live)} unresolved or approved claim(s)")
            try:
                tx_ref = self.custody.refund_or_close(bounty.escrow_ref)
            except MarketplaceError as e:
                raise e.with_stage("escrow.refund")
            try:
                closed = self.close(bounty_id, reason=CloseReason.CANCELLED)
            except Exception as e:
                logger.critical(f"INCONSISTENT: bounty #{bounty_id} refunded ({tx_ref}) but still open")
                self.backend.publish_event("escrow.reconciliation_required", {
                    "bounty_id": bounty_id,
                    "reason": "refunded_but_open",
                    "tx_ref": tx_ref,
                })
                raise Inconsistent(
                    f"Escrow refunded ({tx_ref}) but bounty #{bounty_id} not closed: {e}",
                    stage="bounty.close",
                    bounty_id=bounty_id,
                ) from e
        self.backend.audit("bounty.cancelled", {"bounty_id": bounty_id, "tx_ref": tx_ref}, actor=caller)
        return closed


# ============================================================================
# CLAIM REGISTRY
# ============================================================================

class ClaimRegistry:
    """Owns claims. At most one Approved claim per bounty."""

    def __init__(self, backend, locks: KeyedLock):
        self.backend = backend
        self.locks = locks

    def submit(
        self,
        bounty_id: int,
        submitter: str,
        teaser: str,
        content_id: str,
        encryption: EncryptionScheme = EncryptionScheme.PGP,
    ) -> int:
        submitter = canonical_identity(submitter, "submitter")
        teaser = (teaser or "").strip()
        content_id = (content_id or "").strip()
        if not teaser:
            raise InvalidInput("Teaser is required")
        if not content_id:
            raise InvalidInput("Content id is required")

        if self.backend.get_bounty(bounty_id) is None:
            raise InvalidInput(f"Unknown bounty #{bounty_id}")
        with self.locks.hold(bounty_id):
            bounty = self.backend.get_bounty(bounty_id)
            if bounty is None:
                raise InvalidInput(f"Unknown bounty #{bounty_id}")
            if bounty.status != BountyStatus.OPEN:
                raise InvalidState(f"Bounty #{bounty_id} is closed")
            claim = self.backend.insert_claim(Claim(
                claim_id=0,
                bounty_id=bounty_id,
                submitter=submitter,
                teaser=teaser,
                content_id=content_id,
                encryption=encryption,
            ))

        self.backend.publish_event("claim.submitted", {
            "claim_id": claim.claim_id,
            "bounty_id": bounty_id,
            "content_id": content_id,
            "encryption": encryption.value,
        })
        logger.info(f"Claim #{claim.claim_id} submitted to bounty #{bounty_id}")
        return claim.claim_id

    def get(self, claim_id: int) -> Claim:
        claim = self.backend.get_claim(claim_id)
        if claim is None:
            raise NotFound(f"Claim #{claim_id} not found")
        return claim

    def list_by_bounty(self, bounty_id: int) -> List[Claim]:
        """Oldest first."""
        return self.backend.list_claims(bounty_id=bounty_id)

    def list_by_submitter(self, submitter: str) -> List[Claim]:
        return self.backend.list_claims(submitter=canonical_identity(submitter, "submitter"))

    def approve(self, claim_id: int, reviewer: Optional[str] = None) -> Claim:
        """
        Atomic check-and-set: claim Pending, bounty Open, no sibling
        Approved. A caller that loses a race gets InvalidState and must not
        retry; the other claim has won.
        """
        bounty_id = self.get(claim_id).bounty_id
        with self.locks.hold(bounty_id):
            claim = self.get(claim_id)
            if not can_transition(CLAIM_TRANSITIONS, claim.status, ClaimStatus.APPROVED):
                raise InvalidState(f"Claim #{claim_id} is already {claim.status.value}")
            bounty = self.backend.get_bounty(bounty_id)
            if bounty is None or bounty.status != BountyStatus.OPEN:
                raise InvalidState(f"Bounty #{bounty_id} is closed")
            winners = [
                c for c in self.backend.list_claims(bounty_id=bounty_id)
                if c.status == ClaimStatus.APPROVED
            ]
            if winners:
                raise InvalidState(
                    f"Bounty #{bounty_id} already has approved claim #{winners[0].claim_id}"
                )
            approved = replace(
                claim,
                status=ClaimStatus.APPROVED,
                resolved_at=datetime.utcnow(),
                resolved_by=reviewer,
            )
            if not self.backend.cas_approve_claim(approved):
                raise InvalidState(f"Claim #{claim_id} or bounty #{bounty_id} changed state concurrently")

        self.backend.publish_event("claim.approved", {
            "claim_id": claim_id,
            "bounty_id": bounty_id,
            "reviewer": reviewer,
        })
        return approved

    def reject(self, claim_id: int, reviewer: Optional[str] = None) -> Claim:
        """
        Pending → Rejected. Allowed after the bounty closed, as bookkeeping;
        it never touches funds.
        """
        bounty_id = self.get(claim_id).bounty_id
        with self.locks.hold(bounty_id):
            claim = self.get(claim_id)
            if not can_transition(CLAIM_TRANSITIONS, claim.status, ClaimStatus.REJECTED):
                raise InvalidState(f"Claim #{claim_id} is already {claim.status.value}")
            rejected = replace(
                claim,
                status=ClaimStatus.REJECTED,
                resolved_at=datetime.utcnow(),
                resolved_by=reviewer,
            )
            if not self.backend.cas_claim(rejected, expected=ClaimStatus.PENDING):
                raise InvalidState(f"Claim #{claim_id} changed state concurrently")

        self.backend.publish_event("claim.rejected", {
            "claim_id": claim_id,
            "bounty_id": bounty_id,
            "reviewer": reviewer,
        })
        return rejected


# ============================================================================
# LEGACY SUBMISSION LOG
# ============================================================================

class SubmissionLog:
    """Free-form anonymous submissions, not tied to a bounty. Append-only."""

    def __init__(self, backend):
        self.backend = backend

    def append(self, content_id: str) -> None:
        if not isinstance(content_id, str) or not content_id.strip():
            raise InvalidInput("Invalid CID provided")
        self.backend.append_submission(content_id.strip())

    def list_submissions(self) -> List[str]:
        """Most recent first."""
        return self.backend.list_submissions()


# ============================================================================
# SUBMISSION PIPELINE
# ============================================================================

class SubmissionPipeline:
    """
    encrypt → ContentStore.put (retried) → ClaimRegistry.submit.

    No state of its own. Errors carry the stage that failed. If the store
    succeeded and registration did not, the blob is left orphaned; a retry
    re-stores identical bytes only when re-encryption is deterministic,
    so callers should dedupe on the returned content id.
    """

    def __init__(
        self,
        ledger: BountyLedger,
        registry: ClaimRegistry,
        content_store,
        encryption_gateway,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_base_delay: float = DEFAULT_BACKOFF_BASE,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.registry = registry
        self.content_store = content_store
        self.encryption_gateway = encryption_gateway
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.sleep = sleep

    def _store(self, data: bytes, filename: Optional[str]) -> str:
        return retry_with_backoff(
            lambda: self.content_store.put(data, filename),
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            sleep=self.sleep,
            label="storage.put",
        )

    def fetch(self, content_id: str) -> bytes:
        return retry_with_backoff(
            lambda: self.content_store.get(content_id),
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            sleep=self.sleep,
            label="storage.get",
        )

    def submit_claim(
        self,
        bounty_id: int,
        submitter: str,
        teaser: str,
        full_message: str,
        recipient_public_key: Optional[str] = None,
    ) -> int:
        submitter = canonical_identity(submitter, "submitter")
        if not (teaser or "").strip():
            raise InvalidInput("Teaser is required", stage="validate")
        if not (full_message or "").strip():
            raise InvalidInput("Full message is required", stage="validate")

        # 1. Fail fast before spending encryption/storage work.
        bounty = self.ledger.backend.get_bounty(bounty_id)
        if bounty is None:
            raise InvalidInput(f"Unknown bounty #{bounty_id}", stage="validate")
        if bounty.status != BountyStatus.OPEN:
            raise InvalidState(f"Bounty #{bounty_id} is closed", stage="validate")

        # 2. Encrypt, or fall back to the labelled unencrypted encoding.
        try:
            if recipient_public_key and recipient_public_key.strip():
                payload = self.encryption_gateway.encrypt(full_message, recipient_public_key)
            else:
                payload = encode_unencrypted(full_message)
        except MarketplaceError as e:
            raise e.with_stage("encryption")

        # 3. Store the ciphertext.
        filename = f"claim-{bounty_id}-{int(time.time() * 1000)}.txt"
        try:
            content_id = self._store(payload.ciphertext, filename)
        except MarketplaceError as e:
            raise e.with_stage("storage.put")

        # 4. Register the claim.
        try:
            return self.registry.submit(
                bounty_id, submitter, teaser, content_id, encryption=payload.scheme,
            )
        except MarketplaceError as e:
            logger.warning(
                f"Claim registration failed for bounty #{bounty_id}; "
                f"blob {content_id} is orphaned: {e}"
            )
            raise e.with_stage("claim.submit")

    def upload(self, data: bytes, filename: Optional[str] = None) -> Dict[str, Any]:
        """
        Raw upload for the browser flow. When the store stays unavailable
        after retries, answer with a placeholder id flagged as degraded
        instead of failing the caller.
        """
        if not data:
            raise InvalidInput("Content is required")
        try:
            content_id = self._store(data, filename)
        except StorageUnavailable as e:
            placeholder = f"local-{uuid.uuid4().hex}"
            logger.warning(f"Content store unavailable, issuing placeholder {placeholder}: {e}")
            return {
                "cid": placeholder,
                "degraded": True,
                "message": "Content store unavailable; placeholder id issued, content NOT stored.",
            }
        return {
            "cid": content_id,
            "degraded": False,
            "message": "File uploaded successfully",
        }


# ============================================================================
# REVIEW ENGINE
# ============================================================================

class ReviewEngine:
    """
    Organization-side decisions. Only the bounty's creator may review its
    claims. Approval is: claim CAS → release escrow → close bounty, all
    under the bounty lock. A failure after the CAS leaves an Approved
    claim on an Open bounty; that is reported as Inconsistent and can be
    re-driven with reconcile().
    """

    def __init__(
        self,
        ledger: BountyLedger,
        registry: ClaimRegistry,
        locks: KeyedLock,
        evidence_reader: Optional[Callable[[str], bytes]] = None,
    ):
        self.ledger = ledger
        self.registry = registry
        self.locks = locks
        self.evidence_reader = evidence_reader

    @property
    def backend(self):
        return self.ledger.backend

    def _authorize(self, claim_id: int, reviewer: str):
        reviewer = canonical_identity(reviewer, "reviewer")
        claim = self.registry.get(claim_id)
        bounty = self.ledger.get(claim.bounty_id)
        if reviewer != bounty.creator:
            raise Unauthorized(
                f"{reviewer} is not the creator of bounty #{bounty.bounty_id}",
                stage="authorize",
            )
        return reviewer, claim, bounty

    def approve_claim(self, claim_id: int, reviewer: str) -> Claim:
        reviewer, claim, bounty = self._authorize(claim_id, reviewer)
        with self.locks.hold(bounty.bounty_id):
            try:
                approved = self.registry.approve(claim_id, reviewer)
            except MarketplaceError as e:
                raise e.with_stage("claim.approve")
            stage = "escrow.release"
            try:
                self.ledger.release_funds(bounty.bounty_id, approved.submitter)
                stage = "bounty.close"
                self.ledger.close(bounty.bounty_id, CloseReason.AWARDED, winning_claim_id=claim_id)
            except Exception as e:
                self._flag_inconsistent(bounty.bounty_id, claim_id, stage, e, reviewer)
                raise Inconsistent(
                    f"Claim #{claim_id} approved but {stage} failed: {e}",
                    stage=stage,
                    bounty_id=bounty.bounty_id,
                    claim_id=claim_id,
                ) from e

        self.backend.audit("claim.approved", {
            "claim_id": claim_id,
            "bounty_id": bounty.bounty_id,
            "recipient": approved.submitter,
            "amount": str(bounty.reward_amount),
        }, actor=reviewer)
        logger.info(f"Claim #{claim_id} approved; bounty #{bounty.bounty_id} awarded")
        return approved

    def reject_claim(self, claim_id: int, reviewer: str) -> Claim:
        reviewer, _, bounty = self._authorize(claim_id, reviewer)
        try:
            rejected = self.registry.reject(claim_id, reviewer)
        except MarketplaceError as e:
            raise e.with_stage("claim.reject")
        self.backend.audit("claim.rejected", {
            "claim_id": claim_id,
            "bounty_id": bounty.bounty_id,
            "bounty_status": bounty.status.value,
        }, actor=reviewer)
        return rejected

    def fetch_evidence(self, claim_id: int, reviewer: str) -> Tuple[Claim, bytes]:
        """
        The stored evidence blob, for the bounty creator only. It is returned
        as stored; decryption happens with the organization's private key.
        """
        reviewer, claim, _ = self._authorize(claim_id, reviewer)
        if self.evidence_reader is None:
            raise InvalidState("Evidence retrieval is not configured")
        try:
            blob = self.evidence_reader(claim.content_id)
        except MarketplaceError as e:
            raise e.with_stage("storage.get")
        if not claim.confidential:
            logger.warning(f"Claim #{claim_id} evidence is {claim.encryption.value}, not encrypted")
        self.backend.audit("evidence.retrieved", {
            "claim_id": claim_id,
            "bounty_id": claim.bounty_id,
            "content_id": claim.content_id,
            "encryption": claim.encryption.value,
        }, actor=reviewer)
        return claim, blob

    def _flag_inconsistent(
        self,
        bounty_id: int,
        claim_id: int,
        stage: str,
        error: Exception,
        actor: str,
    ) -> None:
        detail = {
            "bounty_id": bounty_id,
            "claim_id": claim_id,
            "stage": stage,
            "error": str(error),
        }
        logger.critical(
            f"INCONSISTENT: claim #{claim_id} approved but bounty #{bounty_id} "
            f"failed at {stage}: {error}"
        )
        self.backend.publish_event("escrow.reconciliation_required", detail)
        self.backend.audit("escrow.inconsistent", detail, actor=actor)

    def find_inconsistencies(self) -> List[Dict[str, Any]]:
        """Open bounties that already hold an Approved claim."""
        found = []
        for bounty in self.ledger.list_bounties(status=BountyStatus.OPEN):
            for claim in self.registry.list_by_bounty(bounty.bounty_id):
                if claim.status == ClaimStatus.APPROVED:
                    found.append({
                        "bounty_id": bounty.bounty_id,
                        "claim_id": claim.claim_id,
                        "recipient": claim.submitter,
                        "funds_released": bool(bounty.release_tx),
                        "release_tx": bounty.release_tx,
                    })
        return found

    def reconcile(self, bounty_id: int, operator: str = "operator") -> Bounty:
        """Finish an interrupted award: release if not yet released, then close."""
        self.ledger.get(bounty_id)
        with self.locks.hold(bounty_id):
            bounty = self.ledger.get(bounty_id)
            if bounty.status != BountyStatus.OPEN:
                raise InvalidState(f"Bounty #{bounty_id} is already closed")
            winners = [
                c for c in self.registry.list_by_bounty(bounty_id)
                if c.status == ClaimStatus.APPROVED
            ]
            if not winners:
                raise InvalidState(f"Bounty #{bounty_id} has no approved claim to settle")
            winner = winners[0]
            if not bounty.release_tx:
                self.ledger.release_funds(bounty_id, winner.submitter)
            closed = self.ledger.close(bounty_id, CloseReason.AWARDED, winning_claim_id=winner.claim_id)

        self.backend.publish_event("escrow.reconciled", {
            "bounty_id": bounty_id,
            "claim_id": winner.claim_id,
            "release_tx": closed.release_tx,
        })
        self.backend.audit("escrow.reconciled", {
            "bounty_id": bounty_id,
            "claim_id": winner.claim_id,
        }, actor=operator)
        logger.info(f"Bounty #{bounty_id} reconciled by {operator}")
        return closed


# ============================================================================
# WIRING
# ============================================================================

@dataclass
class Marketplace:
    """All core services sharing one backend and one lock table."""
    backend: Any
    content_store: Any
    custody: Any
    directory: OrganizationDirectory
    ledger: BountyLedger
    registry: ClaimRegistry
    submissions: SubmissionLog
    pipeline: SubmissionPipeline
    review: ReviewEngine
    locks: KeyedLock = field(default_factory=KeyedLock)


def build_marketplace(
    backend,
    content_store,
    custody,
    encryption_gateway,
    allow_cancellation: bool = False,
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
    retry_base_delay: float = DEFAULT_BACKOFF_BASE,
    sleep: Callable[[float], None] = time.sleep,
) -> Marketplace:
    locks = KeyedLock()
    ledger = BountyLedger(backend, custody, locks, allow_cancellation=allow_cancellation)
    registry = ClaimRegistry(backend, locks)
    pipeline = SubmissionPipeline(
        ledger, registry, content_store, encryption_gateway,
        retry_attempts=retry_attempts,
        retry_base_delay=retry_base_delay,
        sleep=sleep,
    )
    return Marketplace(
        backend=backend,
        content_store=content_store,
        custody=custody,
        directory=OrganizationDirectory(backend),
        ledger=ledger,
        registry=registry,
        submissions=SubmissionLog(backend),
        pipeline=pipeline,
        review=ReviewEngine(ledger, registry, locks, evidence_reader=pipeline.fetch),
        locks=locks,
    )
