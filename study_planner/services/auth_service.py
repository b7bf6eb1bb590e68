"""Firebase ID token verification."""


def bearer_token(request):
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return ''
    return auth_header.split('Bearer ', 1)[1].strip()


def verify_firebase_token(request, auth_module, logger):
    """Return the decoded Firebase token dict, or None when invalid/missing."""
    token = bearer_token(request)
    if not token or auth_module is None:
        return None
    try:
        decoded = auth_module.verify_id_token(token)
    except Exception as exc:
        if logger is not None:
            logger.info(f"Token verification failed: {exc}")
        return None
    uid = (decoded or {}).get('uid') or (decoded or {}).get('user_id')
    if not uid:
        return None
    return {**decoded, 'uid': uid}
