"""Shared Firestore query helpers.

Filters go through ``FieldFilter`` keywords, which newer SDK versions expect.
In-memory test doubles that only take positional filters raise TypeError on
the keyword form and get the positional call instead.
"""

from google.cloud.firestore_v1.base_query import FieldFilter


def apply_where(query, field_path, op_string, value):
    try:
        return query.where(filter=FieldFilter(field_path, op_string, value))
    except TypeError:
        return query.where(field_path, op_string, value)
