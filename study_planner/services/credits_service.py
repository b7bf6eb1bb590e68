"""Credits ledger: balance reads, deductions and grants.

``BalanceManager`` is the only code that writes ``credits_balance``. Each
mutation runs in a single Firestore transaction that also appends the
matching ``credits_ledger`` entry, so a balance change without its ledger
row (or the reverse) cannot be committed.

Ledger entries that carry an idempotency key live under a document id
derived from the key. The transaction reads that document before writing,
which makes the key check and the insert one serialized unit: a replayed
call sees the earlier entry and returns the current balance with
``duplicate=True`` instead of applying twice.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import List, Optional

from study_planner.errors import (
    InsufficientBalanceError,
    StoreUnavailableError,
    UserNotFoundError,
    store_errors,
)
from study_planner.logging_config import log_event
from study_planner.repositories import ledger_repo, users_repo

PLAN_FREE = 'free'
PLAN_PRO = 'pro'
PLANS = (PLAN_FREE, PLAN_PRO)

ENTRY_GRANT = 'grant'
ENTRY_DEDUCTION = 'deduction'
ENTRY_PURCHASE = 'purchase'
ENTRY_REFUND = 'refund'
ENTRY_TYPES = (ENTRY_GRANT, ENTRY_DEDUCTION, ENTRY_PURCHASE, ENTRY_REFUND)


def init_key(uid):
    return f"init_{uid}"


def manual_pro_key(uid):
    return f"manual_pro_{uid}"


def _as_int(value, default=0):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Account:
    uid: str
    plan: str = PLAN_FREE
    credits_balance: int = 0
    subscription_id: Optional[str] = None
    ledger_sequence: int = 0
    manual_pro_credits_granted: bool = False
    created_at: float = 0.0

    @classmethod
    def from_doc(cls, uid, data):
        data = data or {}
        plan = str(data.get('plan') or PLAN_FREE).strip().lower()
        return cls(
            uid=uid,
            plan=plan if plan in PLANS else PLAN_FREE,
            credits_balance=max(0, _as_int(data.get('credits_balance'))),
            subscription_id=data.get('subscription_id') or None,
            ledger_sequence=_as_int(data.get('ledger_sequence')),
            manual_pro_credits_granted=bool(data.get('manual_pro_credits_granted', False)),
            created_at=data.get('created_at') or 0.0,
        )

    def to_dict(self):
        return {'plan': self.plan, 'credits_balance': self.credits_balance}


@dataclass(frozen=True)
class LedgerResult:
    new_balance: int
    duplicate: bool = False

    def as_payload(self):
        return {'success': True, 'new_balance': self.new_balance, 'duplicate': self.duplicate}


@dataclass
class ReconciliationReport:
    uid: str
    account_balance: Optional[int]
    ledger_total: int = 0
    entry_count: int = 0
    mismatches: List[dict] = field(default_factory=list)

    @property
    def ok(self):
        return not self.mismatches and (self.account_balance is None or self.account_balance == self.ledger_total)


def build_ledger_entry(uid, amount, entry_type, description, *, balance_after, sequence, now,
                       idempotency_key=None, external_event_id=None, requested_amount=None):
    return {
        'uid': uid,
        'amount': int(amount),
        'requested_amount': int(amount if requested_amount is None else requested_amount),
        'type': entry_type,
        'description': str(description or '')[:500],
        'idempotency_key': idempotency_key,
        'external_event_id': external_event_id,
        'balance_after': int(balance_after),
        'sequence': int(sequence),
        'created_at': now,
    }


class BalanceManager:
    def __init__(self, db, firestore_module, *, plan_credits, timeout=None, max_attempts=5, logger=None):
        self.db = db
        self.firestore = firestore_module
        self.plan_credits = dict(plan_credits)
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.logger = logger or logging.getLogger('study_planner.credits')

    def _require_db(self):
        if self.db is None:
            raise StoreUnavailableError('Firestore is not initialized')
        return self.db

    def _run_transaction(self, operation, fn):
        db = self._require_db()
        with store_errors(operation):
            transaction = db.transaction(max_attempts=self.max_attempts)
            return self.firestore.transactional(fn)(transaction)

    def _read(self, ref, transaction):
        return ref.get(transaction=transaction, timeout=self.timeout)

    def get_balance(self, uid) -> Account:
        """Return the account for ``uid``, provisioning a free account on first sight."""
        db = self._require_db()
        user_ref = users_repo.doc_ref(db, uid)
        init_ref = ledger_repo.keyed_doc_ref(db, init_key(uid))
        manual_ref = ledger_repo.keyed_doc_ref(db, manual_pro_key(uid))
        free_credits = self.plan_credits[PLAN_FREE]
        pro_credits = self.plan_credits[PLAN_PRO]

        def _txn(transaction):
            snapshot = self._read(user_ref, transaction)
            now = time.time()
            if not snapshot.exists:
                transaction.set(user_ref, {
                    'plan': PLAN_FREE,
                    'credits_balance': free_credits,
                    'subscription_id': None,
                    'ledger_sequence': 1,
                    'manual_pro_credits_granted': False,
                    'created_at': now,
                    'updated_at': now,
                })
                transaction.set(init_ref, build_ledger_entry(
                    uid, free_credits, ENTRY_GRANT, 'Initial free plan credits',
                    balance_after=free_credits, sequence=1, now=now,
                    idempotency_key=init_key(uid),
                ))
                return Account(uid=uid, plan=PLAN_FREE, credits_balance=free_credits, ledger_sequence=1, created_at=now), True

            account = Account.from_doc(uid, snapshot.to_dict())
            if account.plan != PLAN_PRO or account.subscription_id or account.manual_pro_credits_granted:
                return account, False

            # Plan was set to pro by hand (no subscription); top up once.
            if account.credits_balance >= pro_credits:
                transaction.update(user_ref, {'manual_pro_credits_granted': True, 'updated_at': now})
                return replace(account, manual_pro_credits_granted=True), False
            sequence = account.ledger_sequence + 1
            top_up = pro_credits - account.credits_balance
            transaction.update(user_ref, {
                'credits_balance': pro_credits,
                'ledger_sequence': sequence,
                'manual_pro_credits_granted': True,
                'updated_at': now,
            })
            transaction.set(manual_ref, build_ledger_entry(
                uid, top_up, ENTRY_GRANT, 'Manual pro plan credit correction',
                balance_after=pro_credits, sequence=sequence, now=now,
                idempotency_key=manual_pro_key(uid),
            ))
            return replace(
                account,
                credits_balance=pro_credits,
                ledger_sequence=sequence,
                manual_pro_credits_granted=True,
            ), False

        account, created = self._run_transaction('get_balance', _txn)
        if created:
            log_event(logging.INFO, 'credits_account_created', log=self.logger, uid=uid, credits_balance=account.credits_balance)
        return account

    def deduct(self, uid, amount, description, idempotency_key=None) -> LedgerResult:
        """Atomically remove ``amount`` credits.

        Raises UserNotFoundError when no account exists and
        InsufficientBalanceError when the balance is lower than ``amount``.
        A replay with an already-used ``idempotency_key`` is a no-op that
        returns the current balance with ``duplicate=True``.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError('amount must be a positive integer')
        db = self._require_db()
        user_ref = users_repo.doc_ref(db, uid)
        entry_ref = ledger_repo.keyed_doc_ref(db, idempotency_key) if idempotency_key else ledger_repo.new_doc_ref(db)

        def _txn(transaction):
            if idempotency_key and self._read(entry_ref, transaction).exists:
                snapshot = self._read(user_ref, transaction)
                balance = Account.from_doc(uid, snapshot.to_dict()).credits_balance if snapshot.exists else 0
                return LedgerResult(new_balance=balance, duplicate=True)

            snapshot = self._read(user_ref, transaction)
            if not snapshot.exists:
                raise UserNotFoundError(uid)
            account = Account.from_doc(uid, snapshot.to_dict())
            if account.credits_balance < amount:
                raise InsufficientBalanceError(uid, account.credits_balance, amount, account.plan)

            now = time.time()
            new_balance = account.credits_balance - amount
            sequence = account.ledger_sequence + 1
            transaction.update(user_ref, {
                'credits_balance': new_balance,
                'ledger_sequence': sequence,
                'updated_at': now,
            })
            transaction.set(entry_ref, build_ledger_entry(
                uid, -amount, ENTRY_DEDUCTION, description,
                balance_after=new_balance, sequence=sequence, now=now,
                idempotency_key=idempotency_key,
            ))
            return LedgerResult(new_balance=new_balance)

        try:
            result = self._run_transaction('deduct', _txn)
        except (UserNotFoundError, InsufficientBalanceError) as exc:
            log_event(logging.INFO, 'credits_deduct_rejected', log=self.logger, uid=uid, amount=amount, reason=type(exc).__name__)
            raise
        if result.duplicate:
            log_event(logging.WARNING, 'credits_deduct_duplicate', log=self.logger, uid=uid, idempotency_key=idempotency_key)
        else:
            log_event(logging.INFO, 'credits_deducted', log=self.logger, uid=uid, amount=amount, new_balance=result.new_balance)
        return result

    def grant(self, uid, amount, entry_type, description, idempotency_key, external_event_id=None) -> LedgerResult:
        """Atomically add ``amount`` credits (negative for reversals).

        The balance never drops below zero; the ledger entry records the delta
        that was actually applied. A ``purchase`` moves the account to pro and
        a missing account is created on the fly.
        """
        if entry_type not in ENTRY_TYPES:
            raise ValueError(f"unknown ledger entry type: {entry_type}")
        if not idempotency_key:
            raise ValueError('grant requires an idempotency key')
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise ValueError('amount must be a non-zero integer')
        db = self._require_db()
        user_ref = users_repo.doc_ref(db, uid)
        entry_ref = ledger_repo.keyed_doc_ref(db, idempotency_key)

        def _txn(transaction):
            if self._read(entry_ref, transaction).exists:
                snapshot = self._read(user_ref, transaction)
                balance = Account.from_doc(uid, snapshot.to_dict()).credits_balance if snapshot.exists else 0
                return LedgerResult(new_balance=balance, duplicate=True)

            snapshot = self._read(user_ref, transaction)
            now = time.time()
            if snapshot.exists:
                account = Account.from_doc(uid, snapshot.to_dict())
                new_balance = max(0, account.credits_balance + amount)
                sequence = account.ledger_sequence + 1
                transaction.update(user_ref, {
                    'credits_balance': new_balance,
                    'plan': PLAN_PRO if entry_type == ENTRY_PURCHASE else account.plan,
                    'ledger_sequence': sequence,
                    'updated_at': now,
                })
                applied = new_balance - account.credits_balance
            else:
                new_balance = max(0, amount)
                sequence = 1
                transaction.set(user_ref, {
                    'plan': PLAN_PRO if entry_type == ENTRY_PURCHASE else PLAN_FREE,
                    'credits_balance': new_balance,
                    'subscription_id': None,
                    'ledger_sequence': sequence,
                    'manual_pro_credits_granted': False,
                    'created_at': now,
                    'updated_at': now,
                })
                applied = new_balance

            transaction.set(entry_ref, build_ledger_entry(
                uid, applied, entry_type, description,
                balance_after=new_balance, sequence=sequence, now=now,
                idempotency_key=idempotency_key, external_event_id=external_event_id,
                requested_amount=amount,
            ))
            return LedgerResult(new_balance=new_balance)

        result = self._run_transaction('grant', _txn)
        if result.duplicate:
            log_event(logging.WARNING, 'credits_grant_duplicate', log=self.logger, uid=uid, idempotency_key=idempotency_key)
        else:
            log_event(
                logging.INFO, 'credits_granted', log=self.logger,
                uid=uid, amount=amount, type=entry_type, new_balance=result.new_balance,
                external_event_id=external_event_id,
            )
        return result

    def find_user_by_subscription(self, subscription_id):
        if not subscription_id:
            return None
        db = self._require_db()
        with store_errors('find_user_by_subscription'):
            docs = users_repo.find_by_subscription_id(db, subscription_id, timeout=self.timeout)
        return docs[0].id if docs else None

    def attach_subscription(self, uid, subscription_id):
        db = self._require_db()
        with store_errors('attach_subscription'):
            users_repo.update_doc(db, uid, {
                'subscription_id': subscription_id,
                'plan': PLAN_PRO,
                'updated_at': time.time(),
            }, timeout=self.timeout)
        log_event(logging.INFO, 'subscription_attached', log=self.logger, uid=uid, subscription_id=subscription_id)

    def downgrade_to_free(self, uid):
        db = self._require_db()
        now = time.time()
        with store_errors('downgrade_to_free'):
            users_repo.update_doc(db, uid, {
                'plan': PLAN_FREE,
                'subscription_cancelled_at': now,
                'updated_at': now,
            }, timeout=self.timeout)
        log_event(logging.INFO, 'subscription_downgraded', log=self.logger, uid=uid)

    def list_entries(self, uid, limit=50):
        db = self._require_db()
        with store_errors('list_entries'):
            docs = ledger_repo.list_by_uid_recent(db, uid, limit, self.firestore, timeout=self.timeout)
        entries = []
        for doc in docs:
            data = doc.to_dict() or {}
            entries.append({
                'id': doc.id,
                'amount': _as_int(data.get('amount')),
                'type': data.get('type', ''),
                'description': data.get('description', ''),
                'balance_after': _as_int(data.get('balance_after')),
                'created_at': data.get('created_at', 0),
            })
        return entries

    def reconcile(self, uid) -> ReconciliationReport:
        """Replay a user's ledger in sequence order and compare with the stored balance."""
        db = self._require_db()
        with store_errors('reconcile'):
            snapshot = users_repo.get_doc(db, uid, timeout=self.timeout)
            docs = ledger_repo.list_by_uid(db, uid, timeout=self.timeout)
        account_balance = Account.from_doc(uid, snapshot.to_dict()).credits_balance if snapshot.exists else None
        entries = sorted((doc.to_dict() or {} for doc in docs), key=lambda entry: _as_int(entry.get('sequence')))
        report = ReconciliationReport(uid=uid, account_balance=account_balance, entry_count=len(entries))
        running = 0
        for entry in entries:
            running += _as_int(entry.get('amount'))
            recorded = _as_int(entry.get('balance_after'))
            if recorded != running:
                report.mismatches.append({
                    'sequence': _as_int(entry.get('sequence')),
                    'expected_balance_after': running,
                    'recorded_balance_after': recorded,
                })
        report.ledger_total = running
        return report
