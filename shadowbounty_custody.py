#!/usr/bin/env python3
"""
ShadowBounty Escrow Custody
============================
Client side of the fund-custody collaborator. Token transfers, signature
checks and fees live in the on-chain escrow; this module only asks it to
lock, release or refund.

  InMemoryCustody — balance-tracking stand-in for tests and local dev
  HttpCustody     — JSON client for a custody relayer service

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from shadowbounty_types import InvalidInput, InvalidState, LedgerUnavailable, NotFound

logger = logging.getLogger("sb-custody")


@dataclass
class EscrowAccount:
    """Balance sheet for one escrow held by InMemoryCustody."""
    escrow_ref: str
    token: str
    amount: int
    creator: str
    released: int = 0
    refunded: int = 0
    recipient: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.released + self.refunded >= self.amount


class InMemoryCustody:
    """
    Tracks locked, released and refunded amounts per escrow. An escrow can
    be settled exactly once, so released funds can never exceed the lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.accounts: Dict[str, EscrowAccount] = {}
        self.transfers: List[Dict[str, Any]] = []

    def create_escrow(self, token: str, amount: int, creator: str) -> str:
        if amount <= 0:
            raise InvalidInput("Escrow amount must be greater than zero")
        ref = f"esc_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self.accounts[ref] = EscrowAccount(ref, token, amount, creator)
        logger.info(f"Escrow locked: {ref} {amount} of {token} from {creator}")
        return ref

    def _settle(self, escrow_ref: str, recipient: str, kind: str) -> str:
        with self._lock:
            account = self.accounts.get(escrow_ref)
            if account is None:
                raise NotFound(f"Escrow {escrow_ref} not found")
            if account.settled:
                raise InvalidState(f"Escrow {escrow_ref} already settled")
            remaining = account.amount - account.released - account.refunded
            if kind == "release":
                account.released += remaining
                account.recipient = recipient
            else:
                account.refunded += remaining
            tx = f"tx_{uuid.uuid4().hex[:16]}"
            self.transfers.append({
                "tx_ref": tx,
                "escrow_ref": escrow_ref,
                "kind": kind,
                "to": recipient,
                "token": account.token,
                "amount": remaining,
            })
        logger.info(f"Escrow {kind}: {escrow_ref} {remaining} -> {recipient} ({tx})")
        return tx

    def release(self, escrow_ref: str, recipient: str) -> str:
        return self._settle(escrow_ref, recipient, "release")

    def refund_or_close(self, escrow_ref: str) -> str:
        account = self.accounts.get(escrow_ref)
        creator = account.creator if account else ""
        return self._settle(escrow_ref, creator, "refund")

    def released_total(self, escrow_ref: str) -> int:
        with self._lock:
            return sum(
                t["amount"] for t in self.transfers
                if t["escrow_ref"] == escrow_ref and t["kind"] == "release"
            )


class HttpCustody:
    """
    Talks to a relayer that fronts the escrow contract.

    POST /escrows                    {token, amount, creator} → {escrow_ref}
    POST /escrows/{ref}/release      {recipient}              → {tx_ref}
    POST /escrows/{ref}/refund       {}                       → {tx_ref}

    Transport errors and 5xx map to LedgerUnavailable (retry with backoff);
    4xx responses mean the relayer refused the request.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, body: Dict[str, Any], field: str) -> str:
        try:
            res = self._client.post(path, json=body)
        except httpx.HTTPError as e:
            raise LedgerUnavailable(f"Custody relayer unreachable: {e}")
        if res.status_code >= 500 or res.status_code in (408, 429):
            raise LedgerUnavailable(f"Custody relayer failed: HTTP {res.status_code}")
        if res.status_code == 404:
            raise NotFound(f"Custody relayer: {path} not found")
        if res.status_code >= 400:
            try:
                reason = res.json().get("error", "")
            except ValueError:
                reason = res.text
            raise InvalidState(f"Custody relayer refused {path}: {reason}")
        value = res.json().get(field)
        if not value:
            raise LedgerUnavailable(f"Custody relayer response missing {field}")
        return value

    def create_escrow(self, token: str, amount: int, creator: str) -> str:
        # Amounts travel as strings: 18-decimal tokens overflow JSON numbers.
        return self._post(
            "/escrows",
            {"token": token, "amount": str(amount), "creator": creator},
            "escrow_ref",
        )

    def release(self, escrow_ref: str, recipient: str) -> str:
        return self._post(f"/escrows/{escrow_ref}/release", {"recipient": recipient}, "tx_ref")

    def refund_or_close(self, escrow_ref: str) -> str:
        return self._post(f"/escrows/{escrow_ref}/refund", {}, "tx_ref")
