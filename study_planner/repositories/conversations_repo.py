"""Firestore accessors for saved tutor conversations, one document per user and generation."""

COLLECTION = 'conversations'


def conversation_id(uid, generation_id):
    return f"{uid}_{generation_id}"


def doc_ref(db, uid, generation_id):
    return db.collection(COLLECTION).document(conversation_id(uid, generation_id))


def get_doc(db, uid, generation_id, timeout=None):
    return doc_ref(db, uid, generation_id).get(timeout=timeout)


def set_doc(db, uid, generation_id, payload, merge=False, timeout=None):
    return doc_ref(db, uid, generation_id).set(payload, merge=merge, timeout=timeout)


def delete_doc(db, uid, generation_id, timeout=None):
    return doc_ref(db, uid, generation_id).delete(timeout=timeout)
