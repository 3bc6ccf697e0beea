from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable

from .content_sanitizer import ContentSanitizer
from .models import ChatMessage, MessageAttachment, MessageAuthor, ValidationResult

log = logging.getLogger("greatshield.input_validator")

MAX_MESSAGE_LENGTH = 2000
MAX_USERNAME_LENGTH = 32
MAX_ATTACHMENT_BYTES = 50 * 1024 * 1024
MAX_ATTACHMENTS = 10
MAX_URLS = 5
MAX_URL_LENGTH = 2048

COUNTER_WINDOW_SECONDS = 60.0
USER_MESSAGES_PER_WINDOW = 30
CHANNEL_MESSAGES_PER_WINDOW = 100

INJECTION_PATTERNS = (
    re.compile(r"(\bUNION\s+SELECT\b|\bINSERT\s+INTO\b|\bDROP\s+TABLE\b|\bDELETE\s+FROM\b)", re.IGNORECASE),
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE),
    re.compile(r"[;&|`$(){}\[\]\\]"),
    re.compile(r"\.\./|\.\.\\"),
    re.compile(r"\x00"),
)

SUSPICIOUS_URL_PATTERNS = (
    re.compile(r"https?://\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}"),
    re.compile(r"(?:bit\.ly|tinyurl\.com|t\.co|goo\.gl|ow\.ly|short\.link)", re.IGNORECASE),
    re.compile(r"\.(?:tk|ml|ga|cf|click|download|exe|scr|bat|com\.exe)(?:\s|$|/)", re.IGNORECASE),
)

EXECUTABLE_QUERY_RE = re.compile(r"[?&](?:exec|eval|script|cmd)=", re.IGNORECASE)
URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
ZERO_WIDTH_RE = re.compile(r"[\u200b-\u200d\ufeff]")
SPECIAL_CHAR_RE = re.compile(r"[^\w\s]")
REPEATED_RUN_RE = re.compile(r"(.)\1{9,}")
TAG_RE = re.compile(r"<[^>]*>")
WHITESPACE_RE = re.compile(r"\s+")

DANGEROUS_EXTENSIONS = frozenset(
    {".exe", ".scr", ".bat", ".cmd", ".com", ".pif", ".jar", ".vbs", ".js", ".ps1", ".sh", ".php", ".asp", ".aspx"}
)


@dataclass
class _Counter:
    count: int
    started_at: float


class InputValidator:
    """Static structural risk scoring for a message, its author and attachments."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._user_counts: dict[int, _Counter] = {}
        self._channel_counts: dict[int, _Counter] = {}

    def validate(self, message: ChatMessage) -> ValidationResult:
        result = ValidationResult()
        try:
            content = message.content
            if content is None:
                result.flag("Message content is missing", "medium")
                content = ""

            self._check_structure(content, result)
            self._check_content(content, result)
            self._check_counters(message, result)
            self._check_urls(content, result)
            self._check_attachments(message.attachments, result)
            self._check_author(message.author, result)

            if result.is_valid:
                result.sanitized_content = self.shallow_sanitize(content)
        except Exception:
            log.exception("Validation failed for message %s", message.id)
            result.flag("Validation system error", "high", invalid=True)

        if result.risk_level in ("high", "critical"):
            log.warning(
                "High-risk message %s from user=%s channel=%s risk=%s errors=%s",
                message.id,
                message.author.id,
                message.channel_id,
                result.risk_level,
                result.errors,
            )
        return result

    def _check_structure(self, content: str, result: ValidationResult) -> None:
        if len(content) > MAX_MESSAGE_LENGTH:
            result.flag("Message exceeds maximum length", "medium")
        if 0 < len(content) < 3 and SPECIAL_CHAR_RE.search(content):
            result.flag("Suspicious short message with special characters", "medium")

    def _check_content(self, content: str, result: ValidationResult) -> None:
        if any(p.search(content) for p in INJECTION_PATTERNS):
            result.flag("Potential code injection detected", "critical", invalid=True)

        if not content:
            return

        special_ratio = len(SPECIAL_CHAR_RE.findall(content)) / len(content)
        if special_ratio > 0.5 and len(content) > 10:
            result.flag("Excessive special characters detected", "medium")

        if REPEATED_RUN_RE.search(content):
            result.flag("Repeated character spam detected", "medium")

        whitespace_ratio = sum(1 for c in content if c.isspace()) / len(content)
        if whitespace_ratio > 0.8 and len(content) > 20:
            result.flag("Excessive whitespace detected", "medium")

        if ZERO_WIDTH_RE.search(content):
            result.flag("Zero-width characters detected", "high")

    def _check_counters(self, message: ChatMessage, result: ValidationResult) -> None:
        # No await between read and write: atomic with respect to other messages.
        now = self._clock()
        if self._bump(self._user_counts, message.author.id, now) > USER_MESSAGES_PER_WINDOW:
            result.flag("User rate limit exceeded", "high")
        if self._bump(self._channel_counts, message.channel_id, now) > CHANNEL_MESSAGES_PER_WINDOW:
            result.flag("Channel rate limit exceeded", "medium")

    @staticmethod
    def _bump(counters: dict[int, _Counter], key: int, now: float) -> int:
        entry = counters.get(key)
        if entry is None or now - entry.started_at > COUNTER_WINDOW_SECONDS:
            entry = _Counter(count=0, started_at=now)
            counters[key] = entry
        entry.count += 1
        return entry.count

    def _check_urls(self, content: str, result: ValidationResult) -> None:
        urls = URL_RE.findall(content)
        for url in urls:
            if any(p.search(url) for p in SUSPICIOUS_URL_PATTERNS):
                result.flag(f"Suspicious URL detected: {url}", "high")
            if len(url) > MAX_URL_LENGTH:
                result.flag("Excessively long URL detected", "medium")
            if EXECUTABLE_QUERY_RE.search(url):
                result.flag("Suspicious URL parameters detected", "high")
        if len(urls) > MAX_URLS:
            result.flag("Excessive URL count detected", "medium")

    def _check_attachments(self, attachments: tuple[MessageAttachment, ...], result: ValidationResult) -> None:
        if not attachments:
            return
        if len(attachments) > MAX_ATTACHMENTS:
            result.flag("Excessive attachment count", "medium")
        for att in attachments:
            name = att.name or ""
            # Errors end up in public warnings and the mod log.
            shown = ContentSanitizer.sanitize_filename(name)
            if att.size > MAX_ATTACHMENT_BYTES:
                result.flag(f"Large attachment detected: {shown}", "medium")
            if "." in name and "." + name.lower().rsplit(".", 1)[1] in DANGEROUS_EXTENSIONS:
                result.flag(f"Dangerous file type: {shown}", "critical", invalid=True)
            if name.count(".") > 2:
                result.flag(f"Suspicious filename: {shown}", "high")

    def _check_author(self, author: MessageAuthor, result: ValidationResult) -> None:
        if len(author.username) > MAX_USERNAME_LENGTH:
            result.flag("Username exceeds maximum length", "medium")
        if ZERO_WIDTH_RE.search(author.username):
            result.flag("Suspicious characters in username", "high")
        if author.bot and not author.is_self:
            result.flag("Message from unverified bot account", "medium")

    @staticmethod
    def shallow_sanitize(content: str) -> str:
        sanitized = ZERO_WIDTH_RE.sub("", content)
        sanitized = WHITESPACE_RE.sub(" ", sanitized).strip()
        sanitized = TAG_RE.sub("", sanitized)
        if len(sanitized) > MAX_MESSAGE_LENGTH:
            sanitized = sanitized[:MAX_MESSAGE_LENGTH] + "..."
        return sanitized

    def cleanup_counters(self) -> int:
        now = self._clock()
        removed = 0
        for counters in (self._user_counts, self._channel_counts):
            for key in [k for k, v in counters.items() if now - v.started_at > COUNTER_WINDOW_SECONDS]:
                del counters[key]
                removed += 1
        return removed

    def counter_status(self) -> dict[str, int]:
        return {"user_count": len(self._user_counts), "channel_count": len(self._channel_counts)}
