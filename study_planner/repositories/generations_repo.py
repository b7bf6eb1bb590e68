"""Firestore accessors for generated study plans."""

from .query_utils import apply_where

COLLECTION = 'generations'


def doc_ref(db, generation_id):
    return db.collection(COLLECTION).document(generation_id)


def create_doc_ref(db):
    return db.collection(COLLECTION).document()


def get_doc(db, generation_id, timeout=None):
    return doc_ref(db, generation_id).get(timeout=timeout)


def update_doc(db, generation_id, updates, timeout=None):
    return doc_ref(db, generation_id).update(updates, timeout=timeout)


def delete_doc(db, generation_id, timeout=None):
    return doc_ref(db, generation_id).delete(timeout=timeout)


def list_by_uid(db, uid, max_docs=500, timeout=None):
    return list(apply_where(db.collection(COLLECTION), 'uid', '==', uid).limit(max_docs).stream(timeout=timeout))
