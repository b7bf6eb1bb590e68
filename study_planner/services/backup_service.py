"""Best-effort local JSON copies of generated study plans.

Writes run on daemon threads and never raise into the request path; a failed
backup only produces a warning.
"""

import json
import os
import re
import threading

SAFE_PATH_PART_RE = re.compile(r'[^A-Za-z0-9_-]+')


def safe_path_part(value):
    return SAFE_PATH_PART_RE.sub('_', str(value or '')).strip('_')[:128]


def backup_path(root_dir, uid, generation_id):
    return os.path.join(root_dir, safe_path_part(uid), f"{safe_path_part(generation_id)}.json")


def write_plan_backup(root_dir, uid, generation_id, study_plan, logger=None):
    path = backup_path(root_dir, uid, generation_id)
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as handle:
            json.dump(study_plan, handle, indent=2, ensure_ascii=False)
        return True
    except (OSError, TypeError, ValueError) as exc:
        if logger is not None:
            logger.warning(f"Failed to save plan backup for user {uid} (non-critical): {exc}")
        return False


def save_plan_backup_async(root_dir, uid, generation_id, study_plan, logger=None):
    if not root_dir:
        return None
    thread = threading.Thread(
        target=write_plan_backup,
        args=(root_dir, uid, generation_id, study_plan, logger),
        daemon=True,
    )
    thread.start()
    return thread


def read_plan_backup(root_dir, uid, generation_id):
    if not root_dir:
        return None
    try:
        with open(backup_path(root_dir, uid, generation_id), 'r', encoding='utf-8') as handle:
            return json.load(handle)
    except (OSError, ValueError):
        return None


def remove_plan_backup(root_dir, uid, generation_id):
    if not root_dir:
        return False
    try:
        os.remove(backup_path(root_dir, uid, generation_id))
        return True
    except OSError:
        return False
