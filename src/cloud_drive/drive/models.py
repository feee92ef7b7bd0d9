"""Identifiers and JSON field names of drive nodes."""

from typing import NewType

# Opaque identifier assigned by the service to a file or folder
NodeId = NewType("NodeId", str)

# Node JSON field names
FIELD_ID = "id"
FIELD_NAME = "name"
FIELD_KIND = "kind"
FIELD_PARENTS = "parents"
FIELD_CONTENT_PROPERTIES = "contentProperties"
FIELD_MD5 = "md5"

# Listing JSON field names
FIELD_DATA = "data"
FIELD_COUNT = "count"
FIELD_NEXT_TOKEN = "nextToken"

# Conflict JSON field names
FIELD_INFO = "info"
FIELD_NODE_ID = "nodeId"

KIND_FILE = "FILE"
KIND_FOLDER = "FOLDER"

# Characters with special meaning in the service's filter grammar
FILTER_SPECIAL_CHARACTERS = frozenset("+-&|!(){}[]^'\"~*?:\\ ")


def escape_filter_value(value: str) -> str:
    """Backslash-escape ``value`` for use inside a ``field:value`` filter."""
    return "".join(f"\\{ch}" if ch in FILTER_SPECIAL_CHARACTERS else ch for ch in value)
