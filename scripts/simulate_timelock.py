#!/usr/bin/env python3
"""
Timelock Simulation

Prints the withdrawal timelocks found in a rules text and which of them are
due at a given time. Deposits are given as ``id=timestamp_ms`` pairs.

Usage:
    python scripts/simulate_timelock.py --rules rules.txt \
        --deposit 0xabc=1768435200000 --now 1768435500000
"""

from __future__ import annotations

import argparse
import json
import time
from datetime import datetime, timezone
from pathlib import Path

from custody.timelock import DepositAnchor, due_timelocks, extract_timelock_triggers


def _deposit(text: str) -> DepositAnchor:
    anchor_id, _, timestamp = text.partition("=")
    if not anchor_id or not timestamp.isdigit():
        raise argparse.ArgumentTypeError(f"expected id=timestamp_ms, got {text!r}")
    return DepositAnchor(anchor_id, int(timestamp))


def _iso(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--rules", required=True, help="path to the rules text, or '-' for inline")
    parser.add_argument("--text", default="", help="inline rules text when --rules is '-'")
    parser.add_argument("--deposit", action="append", type=_deposit, default=[])
    parser.add_argument("--now", type=int, default=None, help="evaluation time in ms")
    args = parser.parse_args()

    rules = args.text if args.rules == "-" else Path(args.rules).read_text(encoding="utf-8")
    now_ms = args.now if args.now is not None else int(time.time() * 1000)

    triggers = extract_timelock_triggers(rules, args.deposit)
    due = {t.id for t in due_timelocks(triggers, now_ms)}

    print(f"Evaluated at {_iso(now_ms)} ({now_ms})")
    print(f"Found {len(triggers)} timelock trigger(s)")
    for trigger in triggers:
        tag = "DUE    " if trigger.id in due else "WAITING"
        print(f"  [{tag}] {trigger.id}  unlocks {_iso(trigger.timestamp_ms)}")
        print(f"            {json.dumps(trigger.as_json())}")


if __name__ == "__main__":
    main()
