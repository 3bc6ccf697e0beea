from __future__ import annotations

import hashlib
import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Optional

from ..errors import ConfigurationError
from ..interfaces import PolicyProvider
from .models import BannedWord, BlockedUrl, FastPassResult
from .policy_schema import compile_pattern

log = logging.getLogger("greatshield.fast_pass")

CAPS_MIN_LENGTH = 20
CAPS_RATIO = 0.7
MAX_EMOJI = 10
MAX_LENGTH = 2000
MAX_MENTIONS = 5
MAX_COMBINING = 50
REPEATED_WORD_MIN_LENGTH = 4
REPEATED_WORD_COUNT = 5

EMOJI_RE = re.compile(
    r"[\U0001F600-\U0001F64F\U0001F300-\U0001F5FF\U0001F680-\U0001F6FF\U0001F1E0-\U0001F1FF\u2600-\u26FF\u2700-\u27BF]"
)
COMBINING_RE = re.compile(r"[\u0300-\u036f\u1ab0-\u1aff\u1dc0-\u1dff\u20d0-\u20ff\ufe20-\ufe2f]")
REPEATED_CHAR_RE = re.compile(r"(.)\1{10,}")
ASCII_LETTER_RE = re.compile(r"[a-zA-Z]")
ASCII_UPPER_RE = re.compile(r"[A-Z]")

NOT_TRIGGERED = FastPassResult(triggered=False)


@dataclass(frozen=True)
class CompiledMatcher:
    pattern: str
    # None for literal patterns (case-insensitive substring match).
    regex: Optional[re.Pattern[str]]
    action: str
    severity: str
    reason: str

    def matches(self, content: str, lowered: str) -> bool:
        if self.regex is not None:
            return self.regex.search(content) is not None
        return self.pattern.lower() in lowered


@dataclass(frozen=True)
class CompiledRuleSet:
    """Immutable snapshot of a pack's fast-pass rules.

    The filter swaps whole snapshots on reload, so a check in flight always
    sees a single version.
    """

    pack_id: int
    fingerprint: str
    banned_words: tuple[CompiledMatcher, ...]
    blocked_urls: tuple[CompiledMatcher, ...]


def _fingerprint(words: list[BannedWord], urls: list[BlockedUrl]) -> str:
    h = hashlib.sha256(repr((words, urls)).encode("utf-8")).hexdigest()
    return h[:16]


def _compile(pattern: str, is_regex: bool) -> Optional[re.Pattern[str]]:
    if not is_regex:
        return None
    return compile_pattern(pattern)


def compile_rule_set(pack_id: int, words: list[BannedWord], urls: list[BlockedUrl]) -> CompiledRuleSet:
    compiled_words: list[CompiledMatcher] = []
    for w in words:
        try:
            regex = _compile(w.pattern, w.is_regex)
        except re.error as e:
            log.error("Invalid regex in banned words pattern=%r: %s", w.pattern, e)
            continue
        compiled_words.append(
            CompiledMatcher(
                pattern=w.pattern,
                regex=regex,
                action=w.action,
                severity=w.severity,
                reason=f"Banned word/phrase detected: {w.pattern}",
            )
        )

    compiled_urls: list[CompiledMatcher] = []
    for u in urls:
        try:
            regex = _compile(u.pattern, u.is_regex)
        except re.error as e:
            log.error("Invalid regex in blocked URLs pattern=%r: %s", u.pattern, e)
            continue
        compiled_urls.append(
            CompiledMatcher(
                pattern=u.pattern,
                regex=regex,
                action=u.action,
                severity="medium",
                reason=u.reason or f"Blocked URL pattern detected: {u.pattern}",
            )
        )

    return CompiledRuleSet(
        pack_id=pack_id,
        fingerprint=_fingerprint(words, urls),
        banned_words=tuple(compiled_words),
        blocked_urls=tuple(compiled_urls),
    )


def caps_ratio(content: str) -> float:
    letters = len(ASCII_LETTER_RE.findall(content))
    if letters == 0:
        return 0.0
    return len(ASCII_UPPER_RE.findall(content)) / letters


class FastPassFilter:
    """Deterministic policy-driven matcher that runs before any inference."""

    def __init__(self) -> None:
        self._policy: Optional[PolicyProvider] = None
        self._rules: Optional[CompiledRuleSet] = None

    @property
    def ready(self) -> bool:
        return self._rules is not None

    @property
    def rules(self) -> Optional[CompiledRuleSet]:
        return self._rules

    async def initialize(self, policy: PolicyProvider, pack_id: Optional[int]) -> None:
        if not pack_id:
            raise ConfigurationError("No active policy pack configured")
        self._policy = policy
        self._rules = await self._load(pack_id)
        log.info(
            "Fast pass filter initialized pack=%s banned_words=%d blocked_urls=%d",
            pack_id,
            len(self._rules.banned_words),
            len(self._rules.blocked_urls),
        )

    async def reload_rules(self) -> None:
        current = self._rules
        if current is None or self._policy is None:
            return
        rules = await self._load(current.pack_id)
        self._rules = rules
        log.info(
            "Fast pass filter rules reloaded pack=%s banned_words=%d blocked_urls=%d fingerprint=%s",
            rules.pack_id,
            len(rules.banned_words),
            len(rules.blocked_urls),
            rules.fingerprint,
        )

    async def _load(self, pack_id: int) -> CompiledRuleSet:
        assert self._policy is not None
        words = await self._policy.get_banned_words(pack_id)
        urls = await self._policy.get_blocked_urls(pack_id)
        return compile_rule_set(pack_id, list(words), list(urls))

    def check(self, content: Optional[str]) -> FastPassResult:
        text = content or ""
        rules = self._rules
        if rules is not None:
            lowered = text.lower()
            for kind, matchers in (("banned_word", rules.banned_words), ("blocked_url", rules.blocked_urls)):
                for m in matchers:
                    if m.matches(text, lowered):
                        return FastPassResult(
                            triggered=True,
                            rule_triggered=f"{kind}:{m.pattern}",
                            severity=m.severity,
                            action=m.action,
                            reason=m.reason,
                            confidence=1.0,
                        )

        return self._check_spam(text) or self._check_repetition(text) or NOT_TRIGGERED

    @staticmethod
    def _check_spam(content: str) -> Optional[FastPassResult]:
        ratio = caps_ratio(content)
        if len(content) > CAPS_MIN_LENGTH and ratio > CAPS_RATIO:
            return FastPassResult(
                True, "excessive_caps", "low", "mask", f"Excessive use of capital letters ({round(ratio * 100)}%)", 0.8
            )

        emoji = len(EMOJI_RE.findall(content))
        if emoji > MAX_EMOJI:
            return FastPassResult(True, "excessive_emoji", "low", "mask", f"Excessive emoji usage ({emoji} emojis)", 0.7)

        if len(content) > MAX_LENGTH:
            return FastPassResult(
                True, "excessive_length", "low", "mask", f"Message too long ({len(content)} characters)", 0.6
            )

        mentions = content.count("@")
        if mentions > MAX_MENTIONS:
            return FastPassResult(
                True, "excessive_mentions", "medium", "delete_warn", f"Excessive mentions ({mentions} mentions)", 0.8
            )

        if len(COMBINING_RE.findall(content)) > MAX_COMBINING:
            return FastPassResult(
                True, "zalgo_text", "medium", "delete_warn", "Potentially malicious text formatting (zalgo)", 0.9
            )
        return None

    @staticmethod
    def _check_repetition(content: str) -> Optional[FastPassResult]:
        if REPEATED_CHAR_RE.search(content):
            return FastPassResult(
                True, "repeated_characters", "low", "mask", "Excessive character repetition detected", 0.8
            )

        counts = Counter(w for w in content.lower().split() if len(w) >= REPEATED_WORD_MIN_LENGTH)
        for word, count in counts.items():
            if count >= REPEATED_WORD_COUNT:
                return FastPassResult(
                    True,
                    "repeated_words",
                    "low",
                    "mask",
                    f'Excessive word repetition: "{word}" repeated {count} times',
                    0.7,
                )
        return None
