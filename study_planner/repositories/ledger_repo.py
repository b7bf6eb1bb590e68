"""Firestore accessors for the append-only credits ledger."""

import hashlib

from .query_utils import apply_where

COLLECTION = 'credits_ledger'


def entry_id_for_key(idempotency_key):
    return hashlib.sha256(str(idempotency_key).encode('utf-8')).hexdigest()


def keyed_doc_ref(db, idempotency_key):
    return db.collection(COLLECTION).document(entry_id_for_key(idempotency_key))


def new_doc_ref(db):
    return db.collection(COLLECTION).document()


def list_by_uid(db, uid, timeout=None):
    return list(apply_where(db.collection(COLLECTION), 'uid', '==', uid).stream(timeout=timeout))


def list_by_uid_recent(db, uid, limit, firestore_module, timeout=None):
    query = apply_where(db.collection(COLLECTION), 'uid', '==', uid).order_by(
        'sequence', direction=firestore_module.Query.DESCENDING
    ).limit(limit)
    return list(query.stream(timeout=timeout))
