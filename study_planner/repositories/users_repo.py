"""Firestore accessors for the users (account) collection."""

from .query_utils import apply_where

COLLECTION = 'users'


def doc_ref(db, uid):
    return db.collection(COLLECTION).document(uid)


def get_doc(db, uid, timeout=None):
    return doc_ref(db, uid).get(timeout=timeout)


def update_doc(db, uid, updates, timeout=None):
    return doc_ref(db, uid).update(updates, timeout=timeout)


def find_by_subscription_id(db, subscription_id, limit=1, timeout=None):
    query = apply_where(db.collection(COLLECTION), 'subscription_id', '==', subscription_id).limit(limit)
    return list(query.stream(timeout=timeout))


def stream_all(db):
    return db.collection(COLLECTION).stream()
