#!/usr/bin/env python3
"""
verify_audit.py: Verify the hash-chained token-exchange audit log (JSONL).

Checks:
- every line parses as a JSON object
- prev_hash links to the previous line's hash (genesis = 64 zeros)
- hash matches SHA3-256(prev_hash || canonical event)
- no line carries a raw credential or token (only *_sha3_256 digests)
- optional state file holds the last hash

Exit codes:
- 0: OK
- 1: Verification failed
- 2: Log missing or unreadable
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dope_auth.audit import GENESIS_HASH, LOG_NAME, STATE_NAME, chain_hash

# fields that would mean a secret leaked into the trail
FORBIDDEN_FIELDS = ("credential", "token", "app_jwt", "appJwt", "turnkeyJwt", "signature")


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str


def _is_hex64(s) -> bool:
    if not isinstance(s, str) or len(s) != 64:
        return False
    try:
        bytes.fromhex(s)
    except ValueError:
        return False
    return True


def verify_audit(log_path: Path, state_path: Optional[Path] = None) -> VerifyResult:
    prev = GENESIS_HASH
    lines = 0

    with log_path.open("r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            raw = raw.strip()
            if not raw:
                continue
            lines += 1
            where = f"{log_path}:{lineno}"

            try:
                event = json.loads(raw)
            except json.JSONDecodeError as e:
                return VerifyResult(False, lines, prev, f"{where}: invalid JSON: {e}")
            if not isinstance(event, dict):
                return VerifyResult(False, lines, prev, f"{where}: JSON root must be an object")

            leaked = [k for k in FORBIDDEN_FIELDS if k in event]
            if leaked:
                return VerifyResult(False, lines, prev, f"{where}: raw secret field(s) present: {leaked}")

            if not _is_hex64(event.get("prev_hash")) or not _is_hex64(event.get("hash")):
                return VerifyResult(False, lines, prev, f"{where}: prev_hash/hash must be 64-hex")
            if event["prev_hash"] != prev:
                return VerifyResult(False, lines, prev, f"{where}: prev_hash mismatch: expected {prev}")

            expected = chain_hash(prev, event)
            if event["hash"] != expected:
                return VerifyResult(False, lines, prev, f"{where}: hash mismatch: expected {expected}")
            prev = event["hash"]

    if state_path is not None:
        if not state_path.exists():
            return VerifyResult(False, lines, prev, f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip().lower()
        if state_val != prev:
            return VerifyResult(False, lines, prev, f"State mismatch: state={state_val} log_last={prev}")

    return VerifyResult(True, lines, prev if lines else None, "OK")


def main(argv: Optional[list] = None) -> int:
    p = argparse.ArgumentParser(description="Verify dope-auth exchange audit log integrity.")
    p.add_argument(
        "log",
        type=Path,
        nargs="?",
        default=Path("audit") / LOG_NAME,
        help=f"Path to audit JSONL file (default: audit/{LOG_NAME})",
    )
    p.add_argument(
        "--state",
        type=Path,
        default=None,
        help=f"Optional state file with the last hash (e.g. audit/{STATE_NAME})",
    )
    args = p.parse_args(argv)

    if not args.log.exists():
        print(f"FAIL: log not found: {args.log}", file=sys.stderr)
        return 2

    try:
        res = verify_audit(args.log, state_path=args.state)
    except (OSError, UnicodeDecodeError) as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 2

    out = sys.stdout if res.ok else sys.stderr
    print("OK" if res.ok else "FAIL", file=out)
    if not res.ok:
        print(res.message, file=out)
    print(f"lines={res.lines}", file=out)
    if res.last_hash:
        print(f"last_hash={res.last_hash}", file=out)
    return 0 if res.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
