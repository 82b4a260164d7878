"""
Best-effort permission inference for calls the static mapping does not cover.

Inferred permissions follow the `{Resource}.{Read|ReadWrite}.All` naming
convention and are always reported as inferred, never as mapped.
"""
import logging
from dataclasses import dataclass
from typing import Callable

from src.services.normalizer import split_segments

logger = logging.getLogger(__name__)

READ = "Read"
READ_WRITE = "ReadWrite"

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# First path segment -> permission resource noun
RESOURCE_NOUNS: dict[str, str] = {
    "users": "User",
    "me": "User",
    "groups": "Group",
    "applications": "Application",
    "serviceprincipals": "Application",
    "devices": "Device",
    "directoryroles": "RoleManagement",
    "rolemanagement": "RoleManagement",
    "sites": "Sites",
    "drives": "Files",
    "teams": "Team",
    "chats": "Chat",
    "auditlogs": "AuditLog",
    "reports": "Reports",
    "security": "SecurityEvents",
    "policies": "Policy",
    "identity": "Policy",
    "organization": "Organization",
    "domains": "Domain",
    "directory": "Directory",
    "devicemanagement": "DeviceManagementManagedDevices",
    "planner": "Tasks",
    "places": "Place",
}


@dataclass(frozen=True)
class SubResourceRule:
    """A first-match-wins rule: when `matches` holds, use `noun`."""
    name: str
    matches: Callable[[str, list[str]], bool]
    noun: str
    secondary_noun: str | None = None


def _contains(*keywords: str) -> Callable[[str, list[str]], bool]:
    return lambda path, segments: any(k in path for k in keywords)


def _has_segment(*names: str) -> Callable[[str, list[str]], bool]:
    return lambda path, segments: any(s in names for s in segments)


_in_chat_or_team = _has_segment("chats", "teams", "channels")


def _mail(path: str, segments: list[str]) -> bool:
    # Chat and channel messages are not mailbox items
    if _in_chat_or_team(path, segments):
        return False
    return any(k in path for k in ("mailfolders", "sendmail", "messages", "mail"))


SUB_RESOURCE_RULES: tuple[SubResourceRule, ...] = (
    SubResourceRule("photo", _contains("photo"), "ProfilePhoto"),
    SubResourceRule("mail", _mail, "Mail"),
    SubResourceRule("chat", _has_segment("chats"), "Chat"),
    SubResourceRule("team", _has_segment("teams", "channels"), "Team"),
    SubResourceRule("calendar", _contains("calendar", "events"), "Calendars"),
    SubResourceRule("contacts", _contains("contacts"), "Contacts"),
    SubResourceRule("files", _contains("drive", "files"), "Files"),
    SubResourceRule(
        "membership", _contains("members", "owners"), "GroupMember", "Directory"
    ),
    SubResourceRule(
        "app_role_assignments",
        _contains("approleassignments", "app-role-assignments", "approleassignedto"),
        "AppRoleAssignment",
    ),
)


def operation_for(method: str) -> str:
    return READ_WRITE if (method or "").upper() in WRITE_METHODS else READ


def _derive_noun(segment: str) -> str:
    noun = segment[:1].upper() + segment[1:]
    if noun.endswith("s") and len(noun) > 1:
        noun = noun[:-1]
    return noun


def _is_inferable_segment(segment: str) -> bool:
    return bool(segment) and segment[0].isalpha()


class PermissionInferencer:
    """
    Derives a plausible permission from the path's resource and the method.

    Sub-resource rules are checked in order before the first-segment table.
    The inferencer holds no state, so `infer` always returns the same result
    for the same input.
    """

    def __init__(
        self,
        resource_nouns: dict[str, str] | None = None,
        rules: tuple[SubResourceRule, ...] = SUB_RESOURCE_RULES,
    ):
        self.resource_nouns = dict(resource_nouns or RESOURCE_NOUNS)
        self.rules = rules

    def match_rule(self, normalized_path: str) -> SubResourceRule | None:
        lowered = normalized_path.lower()
        segments = split_segments(lowered)
        for rule in self.rules:
            if rule.matches(lowered, segments):
                return rule
        return None

    def infer(self, method: str, normalized_path: str) -> frozenset[str]:
        segments = split_segments(normalized_path)
        if not segments or not _is_inferable_segment(segments[0]):
            return frozenset()

        operation = operation_for(method)
        rule = self.match_rule(normalized_path)
        if rule is not None:
            inferred = {f"{rule.noun}.{operation}.All"}
            if rule.secondary_noun:
                inferred.add(f"{rule.secondary_noun}.{operation}.All")
            return frozenset(inferred)

        resource_type = segments[0]
        noun = self.resource_nouns.get(resource_type.lower()) or _derive_noun(
            resource_type
        )
        return frozenset({f"{noun}.{operation}.All"})
