"""
In-memory index of the static permission -> endpoint dataset.
"""
import logging
from collections import defaultdict
from typing import Iterable

from src.models import PermissionMappingEntry
from src.services.normalizer import ID_PLACEHOLDER, normalize_path, split_segments

logger = logging.getLogger(__name__)

# Trailing segments that address the same resource as the template they follow
ODATA_SUFFIXES = {"$value", "$ref", "$count"}


class PermissionMappingTable:
    """
    Maps (method, normalized path) to the permissions that authorize it.

    The index is built once and never mutated, so a single instance can be
    shared by concurrent reconciliations. Templates are keyed by their
    lower-cased segments, which makes lookups independent of load order.
    """

    def __init__(self, entries: Iterable[PermissionMappingEntry]):
        index: dict[str, dict[tuple[str, ...], set[str]]] = defaultdict(
            lambda: defaultdict(set)
        )
        count = 0
        for entry in entries:
            key = self._key(normalize_path(entry.endpoint_path))
            index[entry.method.upper()][key].add(entry.permission_name)
            count += 1

        self._index: dict[str, dict[tuple[str, ...], frozenset[str]]] = {
            method: {key: frozenset(perms) for key, perms in templates.items()}
            for method, templates in index.items()
        }
        self._entry_count = count
        logger.info(
            f"Permission mapping table built: {count} entries, "
            f"{sum(len(t) for t in self._index.values())} templates"
        )

    @staticmethod
    def _key(normalized_path: str) -> tuple[str, ...]:
        return tuple(_canonical_segment(s) for s in split_segments(normalized_path))

    def lookup(self, method: str, normalized_path: str) -> frozenset[str]:
        """
        Permissions that could authorize the call; any one of them suffices.

        An exact template match wins. Otherwise the longest registered
        template that is a segment-wise prefix of the path is used, as long as
        the rest of the path only addresses items of that template (ids and
        OData suffixes). A call to `users/{id}/messages/{id}` is covered by
        `users/{id}/messages`; `users/{id}/contacts` is not covered by
        `users/{id}` and is left to inference.
        """
        templates = self._index.get((method or "").upper())
        if not templates:
            return frozenset()

        key = self._key(normalized_path)
        if not key:
            return templates.get((), frozenset())

        exact = templates.get(key)
        if exact:
            return exact

        for depth in range(len(key) - 1, 0, -1):
            if not all(_is_addressing_segment(s) for s in key[depth:]):
                break
            prefix_match = templates.get(key[:depth])
            if prefix_match:
                return prefix_match
        return frozenset()

    @property
    def permission_names(self) -> frozenset[str]:
        return frozenset(
            perm
            for templates in self._index.values()
            for perms in templates.values()
            for perm in perms
        )

    def __len__(self) -> int:
        return self._entry_count


def _canonical_segment(segment: str) -> str:
    # Named placeholders such as {site-id} compare equal to {id}
    if segment.startswith("{") and segment.endswith("}"):
        return ID_PLACEHOLDER
    return segment.lower()


def _is_addressing_segment(segment: str) -> bool:
    return segment == ID_PLACEHOLDER or segment in ODATA_SUFFIXES
