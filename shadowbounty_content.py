#!/usr/bin/env python3
"""
ShadowBounty Content & Encryption
==================================
Content-addressed blob stores and the evidence encryption step.

Stores (all content-addressed, `put` is idempotent):
  InMemoryContentStore   — tests and local dev
  FileSystemContentStore — durable local directory, one file per CID
  PinataContentStore     — IPFS pinning via the Pinata HTTP API

Encryption:
  PGPEncryptionGateway   — OpenPGP encryption to an organization's key
  encode_unencrypted     — labelled base64 fallback, NOT encryption

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import re
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, Optional, TypeVar, Union

import httpx
import pgpy
from pgpy.errors import PGPEncryptionError, PGPError

from shadowbounty_types import (
    EncryptedPayload,
    EncryptionScheme,
    InvalidInput,
    InvalidKey,
    InvalidState,
    NotFound,
    StorageUnavailable,
    TransientError,
    validate_pgp_public_key,
)

logger = logging.getLogger("sb-content")

T = TypeVar("T")


# ============================================================================
# CONTENT ADDRESSING
# ============================================================================

_CID_VERSION = 0x01
_RAW_CODEC = 0x55
_SHA2_256 = 0x12
_SHA2_256_LEN = 0x20
_CID_PATTERN = re.compile(r"^b[a-z2-7]+$")


def compute_cid(data: bytes) -> str:
    """
    CIDv1 for raw bytes: raw codec, sha2-256 multihash, base32 multibase.
    Anyone holding the bytes can recompute and verify the address.
    """
    digest = hashlib.sha256(data).digest()
    binary = bytes([_CID_VERSION, _RAW_CODEC, _SHA2_256, _SHA2_256_LEN]) + digest
    return "b" + base64.b32encode(binary).decode("ascii").lower().rstrip("=")


def is_local_cid(content_id: str) -> bool:
    return bool(_CID_PATTERN.match(content_id or ""))


# ============================================================================
# RETRY
# ============================================================================

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 0.5  # seconds


def retry_with_backoff(
    fn: Callable[[], T],
    attempts: int = DEFAULT_RETRY_ATTEMPTS,
    base_delay: float = DEFAULT_BACKOFF_BASE,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """
    Call `fn`, retrying transient upstream failures with exponential
    backoff (base, 2·base, 4·base, ...). Anything that is not a
    TransientError propagates immediately. After the last attempt the
    final error is re-raised.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except TransientError as e:
            if attempt == attempts:
                logger.error(f"{label}: all {attempts} attempts failed: {e}")
                raise
            backoff = base_delay * (2 ** (attempt - 1))
            logger.warning(
                f"{label}: attempt {attempt}/{attempts} failed: {e}. "
                f"Backoff {backoff}s"
            )
            sleep(backoff)
    raise AssertionError("unreachable")


# ============================================================================
# CONTENT STORES
# ============================================================================

class InMemoryContentStore:
    """Process-local blob store keyed by CID."""

    def __init__(self):
        self._lock = threading.Lock()
        self._blobs: Dict[str, bytes] = {}

    def put(self, data: bytes, filename: Optional[str] = None) -> str:
        cid = compute_cid(data)
        with self._lock:
            self._blobs.setdefault(cid, bytes(data))
        return cid

    def get(self, content_id: str) -> bytes:
        with self._lock:
            blob = self._blobs.get(content_id)
        if blob is None:
            raise NotFound(f"Content {content_id} not found")
        return blob

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)


class FileSystemContentStore:
    """
    Durable blob store: one file per CID under `root`. Writes go through a
    temp file and an atomic rename, so readers never see partial blobs.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, content_id: str) -> Path:
        return self.root / content_id

    def put(self, data: bytes, filename: Optional[str] = None) -> str:
        cid = compute_cid(data)
        target = self._path(cid)
        if target.exists():
            return cid
        tmp = self.root / f".{cid}.{uuid.uuid4().hex[:8]}.tmp"
        try:
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageUnavailable(f"Could not write blob {cid}: {e}")
        logger.info(f"Stored blob {cid} ({len(data)} bytes)")
        return cid

    def get(self, content_id: str) -> bytes:
        if not is_local_cid(content_id):
            raise NotFound(f"Content {content_id} not found")
        try:
            return self._path(content_id).read_bytes()
        except FileNotFoundError:
            raise NotFound(f"Content {content_id} not found")
        except OSError as e:
            raise StorageUnavailable(f"Could not read blob {content_id}: {e}")


def _is_retryable_status(status: int) -> bool:
    return status >= 500 or status in {408, 429}


class PinataContentStore:
    """
    IPFS pinning through Pinata. `put` pins with CIDv1 so identical bytes
    map to the same address; `get` reads back through a gateway.
    """

    def __init__(
        self,
        jwt: str,
        endpoint: str = "https://api.pinata.cloud",
        gateway: str = "https://gateway.pinata.cloud",
        timeout: float = 20.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not jwt:
            raise InvalidInput("Pinata JWT is required")
        self.endpoint = endpoint.rstrip("/ ")
        self.gateway = gateway.rstrip("/ ")
        token = jwt if jwt.lower().startswith("bearer ") else f"Bearer {jwt}"
        self._client = httpx.Client(
            timeout=timeout,
            headers={"Authorization": token},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def put(self, data: bytes, filename: Optional[str] = None) -> str:
        url = f"{self.endpoint}/pinning/pinFileToIPFS"
        files = {"file": (filename or "encrypted-data.txt", data, "text/plain")}
        form = {"pinataOptions": json.dumps({"cidVersion": 1})}
        try:
            res = self._client.post(url, files=files, data=form)
        except httpx.HTTPError as e:
            raise StorageUnavailable(f"Pinata unreachable: {e}")
        if res.status_code not in (200, 201):
            if _is_retryable_status(res.status_code):
                logger.warning(f"Pinata pin failed: {res.status_code} {res.text[:200]}")
                raise StorageUnavailable(f"Pinata pin failed: HTTP {res.status_code}")
            # Other 4xx answers are final.
            logger.error(f"Pinata rejected pin: {res.status_code} {res.text[:200]}")
            raise InvalidState(f"Pinata rejected pin: HTTP {res.status_code}")
        cid = res.json().get("IpfsHash")
        if not cid:
            raise StorageUnavailable("Missing CID in Pinata response")
        logger.info(f"Pinned blob {cid} ({len(data)} bytes)")
        return cid

    def get(self, content_id: str) -> bytes:
        url = f"{self.gateway}/ipfs/{content_id}"
        try:
            res = self._client.get(url)
        except httpx.HTTPError as e:
            raise StorageUnavailable(f"IPFS gateway unreachable: {e}")
        if res.status_code == 404:
            raise NotFound(f"Content {content_id} not found")
        if res.status_code != 200:
            raise StorageUnavailable(f"IPFS gateway failed: HTTP {res.status_code}")
        return res.content


# ============================================================================
# ENCRYPTION
# ============================================================================

class PGPEncryptionGateway:
    """
    Encrypts evidence to an organization's armored OpenPGP public key.
    Decryption happens client-side with the organization's private key;
    this process never sees it.
    """

    def load_key(self, armored: str) -> pgpy.PGPKey:
        text = validate_pgp_public_key(armored)
        try:
            key, _ = pgpy.PGPKey.from_blob(text)
        except (PGPError, ValueError, TypeError, IndexError) as e:
            raise InvalidKey(f"Unreadable PGP public key: {e}")
        if not key.is_public:
            raise InvalidKey("Expected a public key")
        return key

    def encrypt(self, plaintext: str, recipient_key: str) -> EncryptedPayload:
        key = self.load_key(recipient_key)
        message = pgpy.PGPMessage.new(plaintext)
        try:
            encrypted = key.encrypt(message)
        except (PGPError, PGPEncryptionError, NotImplementedError, ValueError) as e:
            raise InvalidKey(f"Key cannot be used for encryption: {e}")
        return EncryptedPayload(
            ciphertext=str(encrypted).encode("utf-8"),
            scheme=EncryptionScheme.PGP,
        )


UNENCRYPTED_BEGIN = "-----BEGIN UNENCRYPTED BASE64 MESSAGE-----"
UNENCRYPTED_END = "-----END UNENCRYPTED BASE64 MESSAGE-----"


def encode_unencrypted(plaintext: str) -> EncryptedPayload:
    """
    Reversible base64 encoding for when no recipient key is available.
    This provides no confidentiality; the armor label and the payload
    scheme make that visible to every downstream reader.
    """
    logger.warning("No recipient key: evidence stored base64-encoded, NOT encrypted")
    body = base64.b64encode(plaintext.encode("utf-8")).decode("ascii")
    armored = f"{UNENCRYPTED_BEGIN}\n{body}\n{UNENCRYPTED_END}\n"
    return EncryptedPayload(
        ciphertext=armored.encode("ascii"),
        scheme=EncryptionScheme.BASE64_UNENCRYPTED,
    )


def decode_unencrypted(blob: bytes) -> str:
    """Reverse encode_unencrypted (reviewer tooling)."""
    text = blob.decode("ascii").strip()
    if not (text.startswith(UNENCRYPTED_BEGIN) and text.endswith(UNENCRYPTED_END)):
        raise InvalidInput("Blob is not an unencrypted base64 message")
    body = text[len(UNENCRYPTED_BEGIN):-len(UNENCRYPTED_END)].strip()
    return base64.b64decode(body).decode("utf-8")
