"""
Rewrites concrete request paths into templates so that calls to the same
logical endpoint compare equal.
"""
import re

ID_PLACEHOLDER = "{id}"
UPN_PLACEHOLDER = "{userPrincipalName}"

API_VERSIONS = {"v1.0", "beta"}

_SCHEME_HOST = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://[^/]*")
_UUID = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)
_EMAIL = re.compile(r"[A-Za-z0-9._%+'-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_USERS_SEGMENT = re.compile(r"(?i)(?<![A-Za-z])(users/)[^/]+")
_GROUPS_SEGMENT = re.compile(r"(?i)(?<![A-Za-z])(groups/)[^/]+")


def _strip_prefix(path: str) -> str:
    while True:
        stripped = _SCHEME_HOST.sub("", path).strip("/")
        head, _, rest = stripped.partition("/")
        if head.lower() in API_VERSIONS:
            stripped = rest.strip("/")
        if stripped == path:
            return path
        path = stripped


def normalize_path(raw_path: str | None) -> str:
    """
    Return the templated form of `raw_path`.

    The query string, scheme/host and API version prefix are dropped, then
    UUIDs, email addresses and the segments following `users/` and `groups/`
    are replaced by placeholders. Normalizing an already normalized path is
    a no-op.
    """
    if not raw_path:
        return ""

    path = raw_path.split("?", 1)[0].split("#", 1)[0]
    path = _strip_prefix(path)
    path = _UUID.sub(ID_PLACEHOLDER, path)
    path = _EMAIL.sub(UPN_PLACEHOLDER, path)
    path = _USERS_SEGMENT.sub(lambda m: m.group(1) + ID_PLACEHOLDER, path)
    path = _GROUPS_SEGMENT.sub(lambda m: m.group(1) + ID_PLACEHOLDER, path)
    return path


def split_segments(normalized_path: str) -> list[str]:
    """Non-empty path segments of an already normalized path."""
    return [s for s in normalized_path.split("/") if s]
