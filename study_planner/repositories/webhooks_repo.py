"""Firestore accessors for processed webhook markers."""

COLLECTION = 'processed_webhooks'


def doc_ref(db, event_id):
    return db.collection(COLLECTION).document(event_id)


def exists(db, event_id, timeout=None):
    return doc_ref(db, event_id).get(timeout=timeout).exists


def mark_processed(db, event_id, payload, timeout=None):
    return doc_ref(db, event_id).set(payload, timeout=timeout)
