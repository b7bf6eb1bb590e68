#!/usr/bin/env python3
"""Audit users' credits_balance against their credits_ledger entries.

Read-only: drift is reported, never corrected here. Corrections go through
BalanceManager.grant so they leave a ledger entry of their own.
"""

import argparse
import sys

from firebase_admin import firestore

from study_planner.config import load_config
from study_planner.extensions import init_firestore
from study_planner.logging_config import configure_logging, logger
from study_planner.repositories import users_repo
from study_planner.services.credits_service import BalanceManager


def reconcile_users(manager, uids):
    scanned = 0
    drifted = 0
    broken = 0
    for uid in uids:
        scanned += 1
        report = manager.reconcile(uid)
        if report.ok:
            continue
        if report.mismatches:
            broken += 1
            print(f"[BROKEN] uid={uid} entries={report.entry_count} first_mismatch={report.mismatches[0]}")
        else:
            drifted += 1
            print(f"[DRIFT] uid={uid} balance={report.account_balance} ledger_total={report.ledger_total}")
    return scanned, drifted, broken


def main():
    parser = argparse.ArgumentParser(description="Compare credits_balance with the credits ledger.")
    parser.add_argument("--uid", action="append", default=[], help="Only check this user (repeatable).")
    args = parser.parse_args()

    config = load_config()
    configure_logging(config.log_level)
    db = init_firestore(config, logger)
    if db is None:
        print("Firestore is not configured (firebase-credentials.json or FIREBASE_CREDENTIALS).")
        return 2

    manager = BalanceManager(
        db,
        firestore,
        plan_credits=config.plan_credits,
        timeout=config.store_timeout_seconds,
        max_attempts=config.store_max_attempts,
    )
    uids = args.uid or [doc.id for doc in users_repo.stream_all(db)]
    scanned, drifted, broken = reconcile_users(manager, uids)
    print(f"scanned={scanned} users, drifted={drifted}, broken_chains={broken}")
    return 1 if (drifted or broken) else 0


if __name__ == "__main__":
    sys.exit(main())
