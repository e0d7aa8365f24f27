"""
Tests for the coordination core.

These tests verify that:
1. Bounty and claim lifecycles follow their state machines
2. Exactly one claim can win a bounty, even under concurrent approval
3. Escrowed funds are released at most once, to the winner
4. Submissions to closed bounties cause no encryption or storage work
5. A failure after approval is surfaced for reconciliation, never lost
"""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from shadowbounty_backend import InMemoryBackend
from shadowbounty_content import (
    InMemoryContentStore,
    PGPEncryptionGateway,
    decode_unencrypted,
)
from shadowbounty_core import ClaimRegistry, build_marketplace
from shadowbounty_backend import KeyedLock
from shadowbounty_custody import InMemoryCustody
from shadowbounty_types import (
    BountyStatus,
    ClaimStatus,
    CloseReason,
    EncryptionScheme,
    Inconsistent,
    InvalidInput,
    InvalidKey,
    InvalidState,
    LedgerUnavailable,
    NotFound,
    StorageUnavailable,
    Unauthorized,
)

from conftest import ORG, ORG_CANON, TOKEN, WHISTLEBLOWER_1, WHISTLEBLOWER_2, decrypt


# =============================================================================
# HELPERS
# =============================================================================

class FlakyStore(InMemoryContentStore):
    """Fails the first `failures` puts with StorageUnavailable."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.put_calls = 0

    def put(self, data, filename=None):
        self.put_calls += 1
        if self.put_calls <= self.failures:
            raise StorageUnavailable(f"pin service down (attempt {self.put_calls})")
        return super().put(data, filename)


class CountingGateway(PGPEncryptionGateway):
    def __init__(self):
        self.calls = 0

    def encrypt(self, plaintext, recipient_key):
        self.calls += 1
        return super().encrypt(plaintext, recipient_key)


class FlakyCustody(InMemoryCustody):
    """Release fails while `release_down` is set."""

    def __init__(self):
        super().__init__()
        self.release_down = False
        self.refund_down = False

    def release(self, escrow_ref, recipient):
        if self.release_down:
            raise LedgerUnavailable("relayer timeout")
        return super().release(escrow_ref, recipient)

    def refund_or_close(self, escrow_ref):
        if self.refund_down:
            raise LedgerUnavailable("relayer timeout")
        return super().refund_or_close(escrow_ref)


class RejectingStore(InMemoryContentStore):
    def put(self, data, filename=None):
        raise InvalidState("Pinata rejected pin: HTTP 401")


class FlakyReadStore(InMemoryContentStore):
    """Fails the first `failures` gets with StorageUnavailable."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.get_calls = 0

    def get(self, content_id):
        self.get_calls += 1
        if self.get_calls <= self.failures:
            raise StorageUnavailable("gateway timeout")
        return super().get(content_id)


class BrokenInsertBackend(InMemoryBackend):
    def insert_bounty(self, bounty):
        raise sqlite3.OperationalError("disk I/O error")


def _open_bounty(market, reward=1000, creator=ORG):
    return market.ledger.create(creator, "Internal audit reports", TOKEN, reward)


def _wire(backend=None, store=None, custody=None, gateway=None, sleeps=None):
    return build_marketplace(
        backend if backend is not None else InMemoryBackend(),
        store if store is not None else InMemoryContentStore(),
        custody if custody is not None else InMemoryCustody(),
        gateway if gateway is not None else PGPEncryptionGateway(),
        allow_cancellation=True,
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
    )


# =============================================================================
# ORGANIZATIONS & LEGACY LOG
# =============================================================================

class TestOrganizationDirectory:

    def test_register_and_reregister(self, market, pgp_public_armor):
        market.directory.register(ORG, "Acme", pgp_public_armor)
        market.directory.register(ORG.upper().replace("0X", "0x"), "Acme Security", pgp_public_armor)
        orgs = market.directory.list_organizations()
        assert len(orgs) == 1
        assert orgs[0].wallet_address == ORG_CANON
        assert market.directory.get(ORG).org_name == "Acme Security"

    def test_register_validation(self, market, pgp_public_armor):
        with pytest.raises(InvalidInput, match="name"):
            market.directory.register(ORG, "  ", pgp_public_armor)
        with pytest.raises(InvalidKey):
            market.directory.register(ORG, "Acme", "ssh-rsa AAAA")
        with pytest.raises(InvalidInput):
            market.directory.register("", "Acme", pgp_public_armor)

    def test_unknown_org(self, market):
        with pytest.raises(NotFound):
            market.directory.get("0xnobody")
        assert market.directory.public_key_for("0xnobody") is None


class TestSubmissionLog:

    def test_append_and_list_most_recent_first(self, market):
        market.submissions.append("bafyfirst")
        market.submissions.append("bafysecond")
        assert market.submissions.list_submissions() == ["bafysecond", "bafyfirst"]

    def test_rejects_empty(self, market):
        with pytest.raises(InvalidInput, match="Invalid CID"):
            market.submissions.append("")


# =============================================================================
# BOUNTY LEDGER
# =============================================================================

class TestBountyLedger:

    def test_create_locks_escrow(self, market, custody):
        bounty_id = _open_bounty(market, reward=1000)
        bounty = market.ledger.get(bounty_id)
        assert bounty.status == BountyStatus.OPEN
        assert bounty.creator == ORG_CANON
        assert custody.accounts[bounty.escrow_ref].amount == 1000

    @pytest.mark.parametrize("title,amount", [("", 100), ("ok", 0), ("ok", -1), ("ok", 1.5), ("ok", True)])
    def test_create_validation(self, market, custody, title, amount):
        with pytest.raises(InvalidInput):
            market.ledger.create(ORG, title, TOKEN, amount)
        assert custody.accounts == {}

    def test_failed_escrow_creates_no_record(self):
        class DownCustody(InMemoryCustody):
            def create_escrow(self, token, amount, creator):
                raise LedgerUnavailable("relayer down")

        market = _wire(custody=DownCustody())
        with pytest.raises(LedgerUnavailable) as exc:
            _open_bounty(market)
        assert exc.value.stage == "escrow.lock"
        assert market.ledger.list_bounties() == []

    def test_failed_record_refunds_escrow(self):
        custody = InMemoryCustody()
        market = _wire(backend=BrokenInsertBackend(), custody=custody)
        with pytest.raises(sqlite3.OperationalError):
            _open_bounty(market)
        (account,) = custody.accounts.values()
        assert account.refunded == account.amount

    def test_failed_record_and_refund_is_inconsistent(self):
        custody = FlakyCustody()
        custody.refund_down = True
        backend = BrokenInsertBackend()
        market = _wire(backend=backend, custody=custody)
        with pytest.raises(Inconsistent):
            _open_bounty(market)
        assert backend.list_events(topic="escrow.reconciliation_required")

    def test_list_filters(self, market):
        first = _open_bounty(market)
        second = market.ledger.create("0xother", "Other", TOKEN, 5)
        assert [b.bounty_id for b in market.ledger.list_bounties()] == [second, first]
        assert [b.bounty_id for b in market.ledger.list_bounties(creator=ORG)] == [first]
        market.ledger.close(first)
        assert [b.bounty_id for b in market.ledger.list_bounties(status=BountyStatus.OPEN)] == [second]

    def test_close_twice_is_invalid_state(self, market):
        bounty_id = _open_bounty(market)
        market.ledger.close(bounty_id)
        with pytest.raises(InvalidState):
            market.ledger.close(bounty_id)

    def test_release_requires_open_bounty(self, market):
        bounty_id = _open_bounty(market)
        market.ledger.close(bounty_id)
        with pytest.raises(InvalidState):
            market.ledger.release_funds(bounty_id, WHISTLEBLOWER_1)

    def test_unknown_bounty(self, market):
        with pytest.raises(NotFound):
            market.ledger.get(999)


class TestCancellation:

    def test_creator_cancels_unclaimed_bounty(self, market, custody):
        bounty_id = _open_bounty(market, reward=700)
        bounty = market.ledger.cancel(bounty_id, ORG)
        assert bounty.status == BountyStatus.CLOSED
        assert bounty.close_reason == CloseReason.CANCELLED
        assert custody.accounts[bounty.escrow_ref].refunded == 700

    def test_only_creator(self, market):
        bounty_id = _open_bounty(market)
        with pytest.raises(Unauthorized):
            market.ledger.cancel(bounty_id, WHISTLEBLOWER_1)

    def test_pending_claim_blocks_cancellation(self, market):
        bounty_id = _open_bounty(market)
        market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "full")
        with pytest.raises(InvalidState, match="unresolved"):
            market.ledger.cancel(bounty_id, ORG)

    def test_rejected_claims_do_not_block(self, market):
        bounty_id = _open_bounty(market)
        claim_id = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "full")
        market.review.reject_claim(claim_id, ORG)
        assert market.ledger.cancel(bounty_id, ORG).status == BountyStatus.CLOSED

    def test_disabled_by_default(self):
        market = build_marketplace(InMemoryBackend(), InMemoryContentStore(),
                                   InMemoryCustody(), PGPEncryptionGateway())
        bounty_id = _open_bounty(market)
        with pytest.raises(InvalidState, match="disabled"):
            market.ledger.cancel(bounty_id, ORG)


# =============================================================================
# SUBMISSION PIPELINE
# =============================================================================

class TestSubmissionPipeline:

    def test_encrypts_to_recipient_key(self, market, content_store, pgp_private_key, pgp_public_armor):
        bounty_id = _open_bounty(market)
        claim_id = market.pipeline.submit_claim(
            bounty_id, WHISTLEBLOWER_1, "Q3 ledger mismatch", "full report text", pgp_public_armor,
        )
        claim = market.registry.get(claim_id)
        assert claim.status == ClaimStatus.PENDING
        assert claim.encryption == EncryptionScheme.PGP and claim.confidential
        assert decrypt(pgp_private_key, content_store.get(claim.content_id)) == "full report text"

    def test_without_key_falls_back_visibly(self, market, content_store):
        bounty_id = _open_bounty(market)
        claim_id = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T", "plain evidence")
        claim = market.registry.get(claim_id)
        assert claim.encryption == EncryptionScheme.BASE64_UNENCRYPTED
        assert claim.confidential is False
        assert decode_unencrypted(content_store.get(claim.content_id)) == "plain evidence"

    def test_empty_teaser_fails_before_storage(self):
        """Scenario B."""
        store = FlakyStore(failures=0)
        market = _wire(store=store)
        bounty_id = _open_bounty(market)
        with pytest.raises(InvalidInput) as exc:
            market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "   ", "full message")
        assert exc.value.stage == "validate"
        assert store.put_calls == 0

    def test_retries_storage_then_succeeds(self, pgp_private_key, pgp_public_armor):
        """Scenario C: two StorageUnavailable, then success on the third attempt."""
        store = FlakyStore(failures=2)
        sleeps = []
        market = _wire(store=store, sleeps=sleeps)
        bounty_id = _open_bounty(market)

        claim_id = market.pipeline.submit_claim(
            bounty_id, WHISTLEBLOWER_1, "T1", "the full message", pgp_public_armor,
        )
        assert store.put_calls == 3
        assert sleeps == [0.5, 1.0]
        claim = market.registry.get(claim_id)
        assert decrypt(pgp_private_key, store.get(claim.content_id)) == "the full message"

    def test_storage_exhausted_is_annotated(self):
        store = FlakyStore(failures=10)
        market = _wire(store=store)
        bounty_id = _open_bounty(market)
        with pytest.raises(StorageUnavailable) as exc:
            market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "msg")
        assert exc.value.stage == "storage.put"
        assert store.put_calls == 3
        assert market.registry.list_by_bounty(bounty_id) == []

    def test_bad_key_is_annotated(self, market):
        bounty_id = _open_bounty(market)
        with pytest.raises(InvalidKey) as exc:
            market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "msg", "garbage key")
        assert exc.value.stage == "encryption"

    def test_closed_bounty_has_no_side_effects(self, pgp_public_armor):
        """A closed bounty rejects submissions before encryption or storage."""
        store = FlakyStore(failures=0)
        gateway = CountingGateway()
        market = _wire(store=store, gateway=gateway)
        bounty_id = _open_bounty(market)
        market.ledger.close(bounty_id)

        with pytest.raises(InvalidState):
            market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "msg", pgp_public_armor)
        assert gateway.calls == 0
        assert store.put_calls == 0
        assert len(store) == 0

    def test_unknown_bounty(self, market, content_store):
        with pytest.raises(InvalidInput, match="Unknown bounty"):
            market.pipeline.submit_claim(404, WHISTLEBLOWER_1, "T1", "msg")
        assert len(content_store) == 0

    def test_identical_unencrypted_content_dedupes(self, market, content_store):
        """Re-storing identical ciphertext yields the same content id."""
        bounty_id = _open_bounty(market)
        c1 = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T", "same bytes")
        c2 = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T", "same bytes")
        assert market.registry.get(c1).content_id == market.registry.get(c2).content_id
        assert len(content_store) == 1

    def test_upload_degrades_to_placeholder(self):
        market = _wire(store=FlakyStore(failures=10))
        result = market.pipeline.upload(b"ciphertext", "encrypted-data.txt")
        assert result["degraded"] is True
        assert result["cid"].startswith("local-")

    def test_upload_rejection_is_not_degraded(self):
        """A store that refuses the upload is reported, not hidden behind a placeholder."""
        market = _wire(store=RejectingStore())
        with pytest.raises(InvalidState):
            market.pipeline.upload(b"ciphertext")

    def test_upload_success(self, market, content_store):
        result = market.pipeline.upload(b"ciphertext")
        assert result["degraded"] is False
        assert content_store.get(result["cid"]) == b"ciphertext"


# =============================================================================
# REVIEW
# =============================================================================

class TestReviewScenario:

    def test_scenario_a(self, market, custody):
        """Approve C1 closes B1 and pays C1's submitter; C2 can only be rejected."""
        b1 = _open_bounty(market, reward=1000)
        c1 = market.pipeline.submit_claim(b1, WHISTLEBLOWER_1, "T1", "evidence one")
        c2 = market.pipeline.submit_claim(b1, WHISTLEBLOWER_2, "T2", "evidence two")

        approved = market.review.approve_claim(c1, ORG)
        assert approved.status == ClaimStatus.APPROVED
        bounty = market.ledger.get(b1)
        assert bounty.status == BountyStatus.CLOSED
        assert bounty.close_reason == CloseReason.AWARDED
        assert bounty.winning_claim_id == c1
        assert bounty.release_tx
        assert custody.transfers[-1]["to"] == WHISTLEBLOWER_1
        assert custody.released_total(bounty.escrow_ref) == 1000

        with pytest.raises(InvalidState) as exc:
            market.review.approve_claim(c2, ORG)
        assert exc.value.stage == "claim.approve"

        rejected = market.review.reject_claim(c2, ORG)
        assert rejected.status == ClaimStatus.REJECTED
        assert rejected.resolved_by == ORG_CANON

    def test_reviewer_must_be_creator(self, market):
        bounty_id = _open_bounty(market)
        claim_id = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "msg")
        for action in (market.review.approve_claim, market.review.reject_claim):
            with pytest.raises(Unauthorized) as exc:
                action(claim_id, WHISTLEBLOWER_2)
            assert exc.value.stage == "authorize"
        assert market.registry.get(claim_id).status == ClaimStatus.PENDING

    def test_creator_identity_is_case_insensitive(self, market):
        bounty_id = _open_bounty(market)
        claim_id = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "msg")
        market.review.approve_claim(claim_id, ORG.upper().replace("0X", "0x"))
        assert market.ledger.get(bounty_id).status == BountyStatus.CLOSED

    def test_terminal_statuses_never_change(self, market):
        bounty_id = _open_bounty(market)
        c1 = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "msg")
        c2 = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_2, "T2", "msg")
        market.review.reject_claim(c2, ORG)
        market.review.approve_claim(c1, ORG)

        attempts = [
            (market.review.approve_claim, c1), (market.review.reject_claim, c1),
            (market.review.approve_claim, c2), (market.review.reject_claim, c2),
            (market.registry.approve, c1), (market.registry.reject, c2),
        ]
        for action, claim_id in attempts:
            with pytest.raises(InvalidState):
                action(claim_id, ORG)
        assert market.registry.get(c1).status == ClaimStatus.APPROVED
        assert market.registry.get(c2).status == ClaimStatus.REJECTED

    def test_events_and_audit_trail(self, market, backend):
        bounty_id = _open_bounty(market)
        claim_id = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "msg")
        market.review.approve_claim(claim_id, ORG)
        topics = {e["topic"] for e in backend.list_events(limit=100)}
        assert {"bounty.created", "claim.submitted", "claim.approved",
                "escrow.released", "bounty.closed"} <= topics
        assert backend.get_audit_log(action="claim.approved")[0]["actor"] == ORG_CANON


class TestSingleWinner:

    N = 8

    def _race(self, market, claim_ids, reviewer):
        barrier = threading.Barrier(len(claim_ids))

        def attempt(claim_id):
            barrier.wait()
            try:
                market.review.approve_claim(claim_id, reviewer)
                return "approved"
            except InvalidState:
                return "invalid_state"

        with ThreadPoolExecutor(max_workers=len(claim_ids)) as pool:
            return list(pool.map(attempt, claim_ids))

    def test_concurrent_approvals(self, market, custody):
        """N racing approvals: one wins, the rest fail with InvalidState."""
        bounty_id = _open_bounty(market, reward=1000)
        claim_ids = [
            market.pipeline.submit_claim(bounty_id, f"0x{i:040x}", f"T{i}", f"message {i}")
            for i in range(self.N)
        ]

        results = self._race(market, claim_ids, ORG)

        assert results.count("approved") == 1
        assert results.count("invalid_state") == self.N - 1
        bounty = market.ledger.get(bounty_id)
        assert bounty.status == BountyStatus.CLOSED
        approved = [c for c in market.registry.list_by_bounty(bounty_id)
                    if c.status == ClaimStatus.APPROVED]
        assert len(approved) == 1
        assert bounty.winning_claim_id == approved[0].claim_id
        assert custody.released_total(bounty.escrow_ref) == 1000
        assert len([t for t in custody.transfers if t["kind"] == "release"]) == 1

    def test_registries_with_separate_locks_still_single_winner(self, backend):
        """Two processes sharing one database: the backend CAS decides."""
        market = _wire(backend=backend)
        bounty_id = _open_bounty(market)
        claim_ids = [
            market.pipeline.submit_claim(bounty_id, f"0x{i:040x}", f"T{i}", "msg")
            for i in range(self.N)
        ]
        registries = [ClaimRegistry(backend, KeyedLock()) for _ in claim_ids]
        barrier = threading.Barrier(len(claim_ids))

        def attempt(pair):
            registry, claim_id = pair
            barrier.wait()
            try:
                registry.approve(claim_id)
                return True
            except InvalidState:
                return False

        with ThreadPoolExecutor(max_workers=len(claim_ids)) as pool:
            results = list(pool.map(attempt, zip(registries, claim_ids)))

        assert results.count(True) == 1
        approved = [c for c in backend.list_claims(bounty_id=bounty_id)
                    if c.status == ClaimStatus.APPROVED]
        assert len(approved) == 1


# =============================================================================
# INCONSISTENCY & RECONCILIATION
# =============================================================================

class TestReconciliation:

    def _market(self):
        custody = FlakyCustody()
        backend = InMemoryBackend()
        return _wire(backend=backend, custody=custody), custody, backend

    def test_release_failure_is_inconsistent_and_reported(self):
        market, custody, backend = self._market()
        bounty_id = _open_bounty(market)
        claim_id = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "msg")
        custody.release_down = True

        with pytest.raises(Inconsistent) as exc:
            market.review.approve_claim(claim_id, ORG)
        assert exc.value.stage == "escrow.release"
        assert exc.value.to_detail()["requires_reconciliation"] is True

        assert market.registry.get(claim_id).status == ClaimStatus.APPROVED
        assert market.ledger.get(bounty_id).status == BountyStatus.OPEN
        events = backend.list_events(topic="escrow.reconciliation_required")
        assert events[0]["payload"]["claim_id"] == claim_id
        assert backend.get_audit_log(action="escrow.inconsistent")

        found = market.review.find_inconsistencies()
        assert found == [{
            "bounty_id": bounty_id,
            "claim_id": claim_id,
            "recipient": WHISTLEBLOWER_1,
            "funds_released": False,
            "release_tx": None,
        }]

    def test_reconcile_finishes_the_award(self):
        market, custody, backend = self._market()
        bounty_id = _open_bounty(market, reward=250)
        claim_id = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "msg")
        custody.release_down = True
        with pytest.raises(Inconsistent):
            market.review.approve_claim(claim_id, ORG)

        custody.release_down = False
        bounty = market.review.reconcile(bounty_id, operator="ops")
        assert bounty.status == BountyStatus.CLOSED
        assert bounty.winning_claim_id == claim_id
        assert bounty.release_tx
        assert custody.released_total(bounty.escrow_ref) == 250
        assert market.review.find_inconsistencies() == []
        assert backend.list_events(topic="escrow.reconciled")

    def test_reconcile_does_not_release_twice(self):
        market, custody, _ = self._market()
        bounty_id = _open_bounty(market, reward=90)
        claim_id = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "msg")
        market.registry.approve(claim_id)
        market.ledger.release_funds(bounty_id, WHISTLEBLOWER_1)

        found = market.review.find_inconsistencies()
        assert found[0]["funds_released"] is True
        market.review.reconcile(bounty_id)
        escrow_ref = market.ledger.get(bounty_id).escrow_ref
        assert custody.released_total(escrow_ref) == 90

    def test_reconcile_requires_approved_claim(self, market):
        bounty_id = _open_bounty(market)
        with pytest.raises(InvalidState, match="no approved claim"):
            market.review.reconcile(bounty_id)

    def test_unknown_bounty_takes_no_lock(self, market):
        with pytest.raises(NotFound):
            market.review.reconcile(9999)
        with pytest.raises(NotFound):
            market.ledger.close(9998)
        with pytest.raises(NotFound):
            market.ledger.release_funds(9997, WHISTLEBLOWER_1)
        with pytest.raises(NotFound):
            market.ledger.cancel(9996, ORG)
        with pytest.raises(InvalidInput):
            market.registry.submit(9995, WHISTLEBLOWER_1, "T1", "bafyexample")
        assert market.locks._locks == {}


# =============================================================================
# EVIDENCE RETRIEVAL
# =============================================================================

class TestEvidence:

    def test_creator_downloads_encrypted_blob(self, market, pgp_private_key, pgp_public_armor):
        bounty_id = _open_bounty(market)
        claim_id = market.pipeline.submit_claim(
            bounty_id, WHISTLEBLOWER_1, "T1", "the ledger was altered", pgp_public_armor,
        )
        claim, blob = market.review.fetch_evidence(claim_id, ORG)
        assert claim.claim_id == claim_id
        assert decrypt(pgp_private_key, blob) == "the ledger was altered"
        entry = market.backend.get_audit_log(action="evidence.retrieved")[0]
        assert entry["actor"] == ORG_CANON

    def test_only_creator(self, market):
        bounty_id = _open_bounty(market)
        claim_id = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "msg")
        with pytest.raises(Unauthorized):
            market.review.fetch_evidence(claim_id, WHISTLEBLOWER_1)

    def test_unencrypted_blob_is_flagged(self, market):
        bounty_id = _open_bounty(market)
        claim_id = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "plain")
        claim, blob = market.review.fetch_evidence(claim_id, ORG)
        assert claim.confidential is False
        assert decode_unencrypted(blob) == "plain"

    def test_transient_read_is_retried(self):
        store = FlakyReadStore(failures=2)
        sleeps = []
        market = _wire(store=store, sleeps=sleeps)
        bounty_id = _open_bounty(market)
        claim_id = market.pipeline.submit_claim(bounty_id, WHISTLEBLOWER_1, "T1", "msg")
        _, blob = market.review.fetch_evidence(claim_id, ORG)
        assert decode_unencrypted(blob) == "msg"
        assert store.get_calls == 3
        assert sleeps == [0.5, 1.0]

    def test_missing_blob_is_annotated(self):
        store = InMemoryContentStore()
        market = _wire(store=store)
        bounty_id = _open_bounty(market)
        claim_id = market.registry.submit(bounty_id, WHISTLEBLOWER_1, "T1", "bafynotstored")
        with pytest.raises(NotFound) as exc:
            market.review.fetch_evidence(claim_id, ORG)
        assert exc.value.stage == "storage.get"
