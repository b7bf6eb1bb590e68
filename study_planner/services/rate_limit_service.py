"""Fixed-window rate limiting, Firestore first with an in-process fallback."""

import hashlib
import re
import threading
import time

from flask import jsonify

from study_planner.repositories import rate_limit_repo

MEMORY_SWEEP_INTERVAL_SECONDS = 60


def window_counter_id(key, window_seconds, window_start):
    raw = f"{key}|{window_seconds}|{int(window_start)}".encode('utf-8')
    return hashlib.sha256(raw).hexdigest()


def normalize_key_part(value, fallback='anon', max_len=120):
    raw = str(value or '').strip().lower()
    if not raw:
        return fallback
    safe = re.sub(r'[^a-z0-9_.:@-]+', '_', raw)
    return safe[:max_len] if safe else fallback


class RateLimiter:
    def __init__(self, db, firestore_module, *, firestore_enabled=True, logger=None, clock=time.time):
        self.db = db
        self.firestore = firestore_module
        self.firestore_enabled = firestore_enabled
        self.logger = logger
        self.clock = clock
        self._events = {}
        self._windows = {}
        self._last_sweep = 0.0
        self._lock = threading.Lock()

    def _sweep_locked(self, now_ts):
        if now_ts - self._last_sweep < MEMORY_SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now_ts
        for key in list(self._events):
            cutoff = now_ts - self._windows.get(key, 0)
            kept = [ts for ts in self._events[key] if ts >= cutoff]
            if kept:
                self._events[key] = kept
            else:
                self._events.pop(key, None)
                self._windows.pop(key, None)

    def _check_firestore(self, key, limit, window_seconds, now_ts):
        if not self.firestore_enabled or self.db is None:
            return None
        try:
            window_start = int(now_ts // window_seconds) * int(window_seconds)
            retry_after = max(1, int((window_start + window_seconds) - now_ts))
            counter_ref = rate_limit_repo.counter_doc_ref(self.db, window_counter_id(key, window_seconds, window_start))
            transaction = self.db.transaction()

            @self.firestore.transactional
            def _txn(txn):
                snapshot = counter_ref.get(transaction=txn)
                count = 0
                if snapshot.exists:
                    count = int((snapshot.to_dict() or {}).get('count', 0) or 0)
                if count >= limit:
                    return False, retry_after
                txn.set(counter_ref, {
                    'key': key,
                    'count': count + 1,
                    'window_start': window_start,
                    'window_seconds': int(window_seconds),
                    'updated_at': now_ts,
                    'expires_at': window_start + (window_seconds * 3),
                }, merge=True)
                return True, 0

            return _txn(transaction)
        except Exception as exc:
            if self.logger is not None:
                self.logger.info(f"Rate limit counter unavailable, using in-memory window: {exc}")
            return None

    def check(self, key, limit, window_seconds):
        """Return ``(allowed, retry_after_seconds)`` for one request against ``key``."""
        now_ts = self.clock()
        firestore_result = self._check_firestore(key, limit, window_seconds, now_ts)
        if firestore_result is not None:
            return firestore_result

        with self._lock:
            self._sweep_locked(now_ts)
            self._windows[key] = window_seconds
            cutoff = now_ts - window_seconds
            kept = [ts for ts in self._events.get(key, []) if ts >= cutoff]
            if len(kept) >= limit:
                retry_after = max(1, int((kept[0] + window_seconds) - now_ts))
                self._events[key] = kept
                return False, retry_after
            kept.append(now_ts)
            self._events[key] = kept
        return True, 0


def build_rate_limited_response(message, retry_after):
    response = jsonify({
        'error': message,
        'retry_after_seconds': int(max(1, retry_after)),
    })
    response.status_code = 429
    response.headers['Retry-After'] = str(int(max(1, retry_after)))
    return response
