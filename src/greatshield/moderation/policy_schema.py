from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from ..errors import PolicyValidationError
from .models import ACTIONS, AI_ACTIONS, RULE_TYPES, SEVERITIES, BannedWord, BlockedUrl, ModerationRule, PolicyPack

MAX_PATTERN_LENGTH = 256

_INLINE_IGNORECASE = "(?i)"


@dataclass(frozen=True)
class PolicyIssue:
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


def normalize_pattern(pattern: str) -> str:
    """Drop a leading ``(?i)``; every pattern is compiled case-insensitive anyway."""
    while pattern.startswith(_INLINE_IGNORECASE):
        pattern = pattern[len(_INLINE_IGNORECASE):]
    return pattern


def compile_pattern(pattern: str) -> re.Pattern[str]:
    return re.compile(normalize_pattern(pattern), re.IGNORECASE)


def _check_pattern(issues: list[PolicyIssue], path: str, pattern: Any, is_regex: Any) -> None:
    if not isinstance(pattern, str) or not pattern:
        issues.append(PolicyIssue(path=path + ".pattern", message="pattern must be non-empty string"))
        return
    if not isinstance(is_regex, bool):
        issues.append(PolicyIssue(path=path + ".is_regex", message="is_regex must be boolean"))
        return
    if is_regex:
        if len(pattern) > MAX_PATTERN_LENGTH:
            issues.append(
                PolicyIssue(path=path + ".pattern", message=f"regex must be <= {MAX_PATTERN_LENGTH} chars")
            )
            return
        try:
            compile_pattern(pattern)
        except re.error as e:
            issues.append(PolicyIssue(path=path + ".pattern", message=f"invalid regex: {e}"))


def _check_action(issues: list[PolicyIssue], path: str, action: Any, allowed: tuple[str, ...]) -> None:
    if not isinstance(action, str) or action not in allowed:
        issues.append(PolicyIssue(path=path + ".action", message=f"action must be one of {', '.join(allowed)}"))


def validate_policy_document(doc: dict[str, Any]) -> list[PolicyIssue]:
    """Validate a policy pack document. Returns issues; empty means valid."""

    if not isinstance(doc, dict):
        return [PolicyIssue(path="$", message="policy must be an object")]

    issues: list[PolicyIssue] = []

    pack_id = doc.get("id")
    if pack_id is not None and (not isinstance(pack_id, int) or isinstance(pack_id, bool) or pack_id <= 0):
        issues.append(PolicyIssue(path="$.id", message="id must be a positive integer or null"))

    name = doc.get("name")
    if not isinstance(name, str) or not name.strip():
        issues.append(PolicyIssue(path="$.name", message="name must be non-empty string"))

    if not isinstance(doc.get("description", ""), str):
        issues.append(PolicyIssue(path="$.description", message="description must be string"))

    if not isinstance(doc.get("active", False), bool):
        issues.append(PolicyIssue(path="$.active", message="active must be boolean"))

    rules = doc.get("rules", [])
    if not isinstance(rules, list):
        issues.append(PolicyIssue(path="$.rules", message="rules must be a list"))
        rules = []
    for i, r in enumerate(rules):
        pfx = f"$.rules[{i}]"
        if not isinstance(r, dict):
            issues.append(PolicyIssue(path=pfx, message="rule must be an object"))
            continue
        if r.get("rule_type") not in RULE_TYPES:
            issues.append(PolicyIssue(path=pfx + ".rule_type", message=f"rule_type must be one of {', '.join(RULE_TYPES)}"))
        th = r.get("threshold")
        if isinstance(th, bool) or not isinstance(th, (int, float)) or not 0.0 <= float(th) <= 1.0:
            issues.append(PolicyIssue(path=pfx + ".threshold", message="threshold must be a number in [0, 1]"))
        _check_action(issues, pfx, r.get("action"), AI_ACTIONS)
        if not isinstance(r.get("enabled", True), bool):
            issues.append(PolicyIssue(path=pfx + ".enabled", message="enabled must be boolean"))

    words = doc.get("banned_words", [])
    if not isinstance(words, list):
        issues.append(PolicyIssue(path="$.banned_words", message="banned_words must be a list"))
        words = []
    for i, w in enumerate(words):
        pfx = f"$.banned_words[{i}]"
        if not isinstance(w, dict):
            issues.append(PolicyIssue(path=pfx, message="banned word must be an object"))
            continue
        _check_pattern(issues, pfx, w.get("pattern"), w.get("is_regex", False))
        if w.get("severity", "medium") not in SEVERITIES:
            issues.append(PolicyIssue(path=pfx + ".severity", message=f"severity must be one of {', '.join(SEVERITIES)}"))
        _check_action(issues, pfx, w.get("action", "mask"), ACTIONS)

    urls = doc.get("blocked_urls", [])
    if not isinstance(urls, list):
        issues.append(PolicyIssue(path="$.blocked_urls", message="blocked_urls must be a list"))
        urls = []
    for i, u in enumerate(urls):
        pfx = f"$.blocked_urls[{i}]"
        if not isinstance(u, dict):
            issues.append(PolicyIssue(path=pfx, message="blocked url must be an object"))
            continue
        _check_pattern(issues, pfx, u.get("pattern"), u.get("is_regex", False))
        if not isinstance(u.get("reason", ""), str):
            issues.append(PolicyIssue(path=pfx + ".reason", message="reason must be string"))
        _check_action(issues, pfx, u.get("action", "delete_warn"), ACTIONS)

    try:
        json.dumps(doc)
    except (TypeError, ValueError):
        issues.append(PolicyIssue(path="$", message="policy must be JSON serializable"))
    return issues


def build_policy_pack(doc: dict[str, Any]) -> PolicyPack:
    """Validate and convert a document. Raises ``PolicyValidationError``; never fills in bad fields."""
    issues = validate_policy_document(doc)
    if issues:
        raise PolicyValidationError(issues)

    return PolicyPack(
        id=int(doc.get("id") or 0),
        name=str(doc["name"]).strip(),
        active=bool(doc.get("active", False)),
        description=str(doc.get("description", "")),
        rules=tuple(
            ModerationRule(
                rule_type=r["rule_type"],
                threshold=float(r["threshold"]),
                action=r["action"],
                enabled=bool(r.get("enabled", True)),
                id=r.get("id"),
            )
            for r in doc.get("rules", [])
        ),
        banned_words=tuple(
            BannedWord(
                pattern=w["pattern"],
                is_regex=bool(w.get("is_regex", False)),
                severity=w.get("severity", "medium"),
                action=w.get("action", "mask"),
            )
            for w in doc.get("banned_words", [])
        ),
        blocked_urls=tuple(
            BlockedUrl(
                pattern=u["pattern"],
                is_regex=bool(u.get("is_regex", False)),
                reason=u.get("reason", ""),
                action=u.get("action", "delete_warn"),
            )
            for u in doc.get("blocked_urls", [])
        ),
    )


def pack_to_document(pack: PolicyPack) -> dict[str, Any]:
    return {
        "id": pack.id or None,
        "name": pack.name,
        "description": pack.description,
        "active": pack.active,
        "rules": [
            {"rule_type": r.rule_type, "threshold": r.threshold, "action": r.action, "enabled": r.enabled}
            for r in pack.rules
        ],
        "banned_words": [
            {"pattern": w.pattern, "is_regex": w.is_regex, "severity": w.severity, "action": w.action}
            for w in pack.banned_words
        ],
        "blocked_urls": [
            {"pattern": u.pattern, "is_regex": u.is_regex, "reason": u.reason, "action": u.action}
            for u in pack.blocked_urls
        ],
    }


_SLURS = r"(?i)\b(n[i*]+gg[e3a*]+r|f[a*]+gg[o*]+t)\b"
_SELF_HARM = r"(?i)\b(kill\s+yourself|kys)\b"
_IP_GRABBERS = r"(?i)https?://(?:www\.)?(grabify\.link|iplogger\.org)"


def default_policy_documents() -> list[dict[str, Any]]:
    """Seed packs: Strict (active), Balanced and Lenient."""

    def rules(tox: float, har: float, spam: float, groom: float, tox_action: str) -> list[dict[str, Any]]:
        return [
            {"rule_type": "toxicity", "threshold": tox, "action": tox_action, "enabled": True},
            {"rule_type": "harassment", "threshold": har, "action": "delete_warn", "enabled": True},
            {"rule_type": "spam", "threshold": spam, "action": "mask", "enabled": True},
            {"rule_type": "grooming", "threshold": groom, "action": "escalate", "enabled": True},
        ]

    return [
        {
            "name": "Strict Moderation",
            "description": "High-security moderation with low tolerance for violations",
            "active": True,
            "rules": rules(0.6, 0.5, 0.7, 0.3, "delete_warn"),
            "banned_words": [
                {"pattern": r"(?i)\b(f[u*]+ck|sh[i*]+t|damn|hell)\b", "is_regex": True, "severity": "low", "action": "mask"},
                {"pattern": r"(?i)\b(b[i*]+tch|wh[o*]+re|sl[u*]+t)\b", "is_regex": True, "severity": "medium", "action": "delete_warn"},
                {"pattern": _SLURS, "is_regex": True, "severity": "critical", "action": "escalate"},
                {"pattern": _SELF_HARM, "is_regex": True, "severity": "high", "action": "escalate"},
                {"pattern": r"(?i)\b(discord\.gg/|invite\.gg/)\w+", "is_regex": True, "severity": "medium", "action": "delete_warn"},
            ],
            "blocked_urls": [
                {
                    "pattern": r"(?i)https?://(?:www\.)?(bit\.ly|tinyurl\.com|t\.co)/",
                    "is_regex": True,
                    "reason": "URL shorteners often used for malicious links",
                    "action": "delete_warn",
                },
                {"pattern": _IP_GRABBERS, "is_regex": True, "reason": "IP grabbing services", "action": "escalate"},
                {
                    "pattern": r"(?i)https?://(?:www\.)?discord\.gg/(?!your-server-code)",
                    "is_regex": True,
                    "reason": "Unauthorized Discord invites",
                    "action": "delete_warn",
                },
            ],
        },
        {
            "name": "Balanced Moderation",
            "description": "Moderate approach balancing community freedom with safety",
            "active": False,
            "rules": rules(0.75, 0.7, 0.8, 0.4, "mask"),
            "banned_words": [
                {"pattern": _SLURS, "is_regex": True, "severity": "critical", "action": "escalate"},
                {"pattern": _SELF_HARM, "is_regex": True, "severity": "high", "action": "delete_warn"},
            ],
            "blocked_urls": [
                {"pattern": _IP_GRABBERS, "is_regex": True, "reason": "IP grabbing services", "action": "escalate"},
            ],
        },
        {
            "name": "Lenient Moderation",
            "description": "Light-touch moderation focusing only on severe violations",
            "active": False,
            "rules": rules(0.9, 0.85, 0.9, 0.5, "mask"),
            "banned_words": [
                {"pattern": _SLURS, "is_regex": True, "severity": "critical", "action": "delete_warn"},
                {"pattern": _SELF_HARM, "is_regex": True, "severity": "high", "action": "mask"},
            ],
            "blocked_urls": [
                {"pattern": _IP_GRABBERS, "is_regex": True, "reason": "IP grabbing services", "action": "delete_warn"},
            ],
        },
    ]
