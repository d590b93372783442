"""
dope_auth/audit.py

Tamper-evident audit trail for token exchanges.

One JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Credentials and issued tokens never appear in the log; only their SHA3-256
digest and length are recorded.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64
LOG_NAME = "exchange_audit.jsonl"
STATE_NAME = "exchange_audit.state"
LOCK_NAME = "exchange_audit.lock"


def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    """Next chain hash for `event` (hash fields are ignored)."""
    e = {k: v for k, v in event.items() if k not in ("prev_hash", "hash")}
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(e))


def build_event(
    *,
    mode: str,
    result: str,
    reason: str,
    subject: Optional[str] = None,
    credential: Optional[str] = None,
    issued_token: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build an exchange audit event. Keep this "boring" and stable.

    Secrets are reduced to digest + length so the log stays non-sensitive.
    """
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "mode": mode,
        "result": result,
        "reason": reason,
    }
    if subject:
        out["subject"] = subject
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]
    if credential:
        out["credential_len"] = len(credential)
        out["credential_sha3_256"] = sha3_256_hex(credential.encode("utf-8"))
    if issued_token:
        out["token_sha3_256"] = sha3_256_hex(issued_token.encode("utf-8"))
    return out


class AuditLog:
    def __init__(self, directory: Path, enabled: bool = True):
        self.directory = Path(directory)
        self.enabled = enabled

    @property
    def log_path(self) -> Path:
        return self.directory / LOG_NAME

    @property
    def state_path(self) -> Path:
        return self.directory / STATE_NAME

    def _read_last_hash_unlocked(self) -> str:
        # caller holds the lock
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip().lower()
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s

    def append(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Append one event with hash chaining; returns the new chain head.

        A dedicated lock file serializes writers across workers so the chain
        stays linear.
        """
        if not self.enabled:
            return None

        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self.directory / LOCK_NAME, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()
                stored = {k: v for k, v in event.items() if k not in ("prev_hash", "hash")}
                stored["prev_hash"] = prev_hash
                stored["hash"] = chain_hash(prev_hash, stored)

                with open(self.log_path, "ab") as f:
                    f.write(canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(stored["hash"] + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)
        return stored["hash"]

    def record(self, **fields: Any) -> None:
        """
        Best-effort append used by the exchange service.

        The audit trail must never turn a successful exchange into a 500.
        """
        try:
            self.append(build_event(**fields))
        except OSError as e:
            logger.error("audit append failed: %s", e)


def verify_log_chain(path: Path) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid (or absent), False otherwise.
    """
    if not path.exists():
        return True

    prev = GENESIS_HASH
    with open(path, "rb") as f:
        for raw_line in f:
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            try:
                obj = json.loads(raw_line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                return False
            if not isinstance(obj, dict) or obj.get("prev_hash") != prev:
                return False
            if chain_hash(prev, obj) != obj.get("hash"):
                return False
            prev = obj["hash"]
    return True
