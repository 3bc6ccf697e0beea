from __future__ import annotations

import html
import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlsplit

from .models import SanitizationResult

log = logging.getLogger("greatshield.content_sanitizer")

DANGEROUS_TAGS = (
    "script", "object", "embed", "form", "input", "textarea", "button", "link", "meta", "base",
    "iframe", "frame", "frameset", "applet", "style", "xml", "svg", "math",
)

DANGEROUS_ATTRIBUTES = (
    "onload", "onerror", "onclick", "onmouseover", "onfocus", "onblur", "onchange", "onsubmit",
    "onreset", "onselect", "onunload", "onkeypress", "onkeydown", "onkeyup", "onmousedown",
    "onmouseup", "javascript:", "vbscript:", "data:", "livescript:", "mocha:",
)

URL_SHORTENERS = frozenset(
    {"bit.ly", "tinyurl.com", "t.co", "goo.gl", "ow.ly", "short.link", "tiny.cc", "is.gd", "buff.ly", "adf.ly", "bl.ink", "cutt.ly"}
)

SQL_PATTERNS = (
    re.compile(r"(\bUNION\s+SELECT\b|\bINSERT\s+INTO\b|\bDROP\s+TABLE\b|\bDELETE\s+FROM\b)", re.IGNORECASE),
    re.compile(r"(\bOR\s+1\s*=\s*1\b|\bAND\s+1\s*=\s*1\b)", re.IGNORECASE),
    re.compile(r"(\bUPDATE\s+\w+\s+SET\b|\bCREATE\s+TABLE\b|\bALTER\s+TABLE\b)", re.IGNORECASE),
)

XSS_PATTERNS = (
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"<img[^>]+src[^>]*>", re.IGNORECASE),
    re.compile(r"<iframe[^>]*>.*?</iframe>", re.IGNORECASE),
)

SQL_MARKER = "[BLOCKED_SQL]"
XSS_MARKER = "[BLOCKED_XSS]"
TAG_MARKER = "[BLOCKED_TAG]"
INVALID_URL_MARKER = "[INVALID_URL]"

# Markers are skipped so the command-character pass cannot mangle them.
_COMMAND_CHARS_RE = re.compile(r"(\[BLOCKED_[A-Z]+(?::[^\]]*)?\]|\[INVALID_URL\])|[;&|`$(){}\[\]\\]")
_PATH_TRAVERSAL_RE = re.compile(r"\.\./|\.\.\\")
_ANY_TAG_RE = re.compile(r"<[^>]+>")
_TAG_NAME_RE = re.compile(r"</?([^\s>/]+)")
_ZERO_WIDTH_RE = re.compile(r"[\u200b-\u200d\ufeff]")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
_IPV4_RE = re.compile(r"\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}")
_EXEC_QUERY_RE = re.compile(r"[?&](?:exec|eval|script|cmd)=", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_REPEATED_RE = re.compile(r"(.)\1{5,}")
_SPECIAL_RE = re.compile(r"[^\w\s]")
_ESCAPABLE_RE = re.compile(r"[<>&\"']")
_EMERGENCY_DROP_RE = re.compile(r"[^\w\s\-.,!?]")
_FILENAME_RE = re.compile(r"[^a-zA-Z0-9.-]")

EMERGENCY_MAX_LENGTH = 500


@dataclass(frozen=True)
class SanitizerConfig:
    max_length: int = 2000
    allowed_domains: tuple[str, ...] = ()
    allowed_tags: tuple[str, ...] = ("b", "i", "u", "strong", "em")
    prevent_injection: bool = True
    strip_html_tags: bool = True
    normalize_unicode: bool = True
    remove_zero_width: bool = True
    sanitize_urls: bool = True
    block_shorteners: bool = True
    remove_excessive_whitespace: bool = True
    remove_repeated_chars: bool = True
    escape_special_chars: bool = True


class ContentSanitizer:
    """Deep, ordered rewrite of message content with a threat report.

    Stages run in a fixed order and each may rewrite the content and raise
    the risk level. If any stage fails the emergency sanitizer is used and
    the result is marked high risk.
    """

    def __init__(self, config: Optional[SanitizerConfig] = None) -> None:
        self.config = config or SanitizerConfig()

    def stages(self) -> list[tuple[str, Callable[[str, SanitizationResult], str]]]:
        return [
            ("injection", self._prevent_injection),
            ("html", self._sanitize_html),
            ("unicode", self._normalize_unicode),
            ("urls", self._sanitize_urls),
            ("spam", self._filter_spam),
            ("length", self._enforce_length),
            ("escape", self._final_escape),
        ]

    def sanitize(self, content: Optional[str], user_id: Optional[int] = None) -> SanitizationResult:
        original = content or ""
        result = SanitizationResult(original_content=original, sanitized_content=original)
        if not original.strip():
            return result

        try:
            text = original
            for _, stage in self.stages():
                text = stage(text, result)
            result.sanitized_content = text
        except Exception:
            log.exception("Content sanitization failed for user=%s", user_id)
            result.sanitized_content = self.emergency_sanitize(original)
            result.modifications_applied.append("Emergency sanitization applied due to error")
            result.escalate("high")
            return result

        if result.risk_level in ("high", "critical"):
            log.warning(
                "High-risk content sanitized user=%s risk=%s blocked=%s modifications=%s len=%d->%d",
                user_id,
                result.risk_level,
                result.blocked_elements,
                result.modifications_applied,
                len(result.original_content),
                len(result.sanitized_content),
            )
        return result

    def _prevent_injection(self, text: str, result: SanitizationResult) -> str:
        if not self.config.prevent_injection:
            return text
        modified = False

        for pattern in SQL_PATTERNS:
            if pattern.search(text):
                text = pattern.sub(SQL_MARKER, text)
                result.blocked_elements.append("SQL injection attempt")
                result.escalate("critical")
                modified = True

        for pattern in XSS_PATTERNS:
            if pattern.search(text):
                text = pattern.sub(XSS_MARKER, text)
                result.blocked_elements.append("XSS attempt")
                result.escalate("critical")
                modified = True

        stripped = _COMMAND_CHARS_RE.sub(lambda m: m.group(1) or "", text)
        if stripped != text:
            text = stripped
            result.blocked_elements.append("Command injection characters")
            result.escalate("high")
            modified = True

        if _PATH_TRAVERSAL_RE.search(text):
            text = _PATH_TRAVERSAL_RE.sub("", text)
            result.blocked_elements.append("Path traversal attempt")
            result.escalate("high")
            modified = True

        if modified:
            result.modifications_applied.append("Injection attack prevention")
        return text

    def _sanitize_html(self, text: str, result: SanitizationResult) -> str:
        modified = False

        for tag in DANGEROUS_TAGS:
            pattern = re.compile(rf"</?{tag}[^>]*>", re.IGNORECASE)
            if pattern.search(text):
                text = pattern.sub(TAG_MARKER, text)
                result.blocked_elements.append(f"Dangerous HTML tag: {tag}")
                result.escalate("high")
                modified = True

        for attr in DANGEROUS_ATTRIBUTES:
            pattern = re.compile(rf"{re.escape(attr)}[^>]*", re.IGNORECASE)
            if pattern.search(text):
                text = pattern.sub("", text)
                result.blocked_elements.append(f"Dangerous attribute: {attr}")
                result.escalate("high")
                modified = True

        if self.config.strip_html_tags:
            tags = _ANY_TAG_RE.findall(text)
            allowed = {t.lower() for t in self.config.allowed_tags}
            disallowed = False
            for tag in tags:
                m = _TAG_NAME_RE.match(tag)
                if m is None or m.group(1).lower() not in allowed:
                    disallowed = True
                    break
            if disallowed:
                text = _ANY_TAG_RE.sub("", text)
                result.modifications_applied.append("HTML tags removed")
                result.escalate("medium")
                modified = True

        if modified:
            result.modifications_applied.append("HTML sanitization")
        return text

    def _normalize_unicode(self, text: str, result: SanitizationResult) -> str:
        if self.config.remove_zero_width and _ZERO_WIDTH_RE.search(text):
            text = _ZERO_WIDTH_RE.sub("", text)
            result.modifications_applied.append("Zero-width characters removed")
            result.escalate("medium")

        if self.config.normalize_unicode:
            normalized = unicodedata.normalize("NFC", text)
            if normalized != text:
                text = normalized
                result.modifications_applied.append("Unicode normalized")

        if _CONTROL_RE.search(text):
            text = _CONTROL_RE.sub("", text)
            result.modifications_applied.append("Control characters removed")
            result.escalate("medium")
        return text

    def _sanitize_urls(self, text: str, result: SanitizationResult) -> str:
        if not self.config.sanitize_urls:
            return text

        for url in _URL_RE.findall(text):
            try:
                parts = urlsplit(url)
                host = (parts.hostname or "").lower()
                parts.port  # raises ValueError on a malformed port
                if not host:
                    raise ValueError("missing host")
            except ValueError:
                text = text.replace(url, INVALID_URL_MARKER, 1)
                result.blocked_elements.append("Invalid URL format")
                result.modifications_applied.append("Invalid URL removed")
                continue

            block_reason = ""
            if self.config.block_shorteners and host in URL_SHORTENERS:
                block_reason = "URL shortener"

            if self.config.allowed_domains:
                if not any(host == d or host.endswith("." + d) for d in self.config.allowed_domains):
                    block_reason = "Domain not in allowlist"

            if _IPV4_RE.search(host):
                block_reason = "IP-based URL"

            if _EXEC_QUERY_RE.search(url):
                block_reason = "Suspicious URL parameters"
                result.escalate("high")

            if block_reason:
                text = text.replace(url, f"[BLOCKED_URL: {block_reason}]", 1)
                result.blocked_elements.append(f"URL: {block_reason}")
                result.escalate("medium")
                result.modifications_applied.append("URL blocked")
        return text

    def _filter_spam(self, text: str, result: SanitizationResult) -> str:
        if self.config.remove_excessive_whitespace:
            before = len(text)
            text = _WHITESPACE_RE.sub(" ", text).strip()
            if len(text) < before * 0.7:
                result.modifications_applied.append("Excessive whitespace removed")
                result.escalate("medium")

        if self.config.remove_repeated_chars and _REPEATED_RE.search(text):
            text = _REPEATED_RE.sub(r"\1\1\1", text)
            result.modifications_applied.append("Repeated characters reduced")
            result.escalate("medium")

        if len(text) > 10 and len(_SPECIAL_RE.findall(text)) / len(text) > 0.6:
            result.escalate("medium")
            result.modifications_applied.append("High special character ratio detected")
        return text

    def _enforce_length(self, text: str, result: SanitizationResult) -> str:
        limit = self.config.max_length
        if len(text) > limit:
            text = text[:limit] + "..."
            result.modifications_applied.append(f"Content truncated to {limit} characters")
            result.escalate("medium")
        return text

    def _final_escape(self, text: str, result: SanitizationResult) -> str:
        if self.config.escape_special_chars and _ESCAPABLE_RE.search(text):
            # html.escape handles "&" first, so entities are never double-escaped.
            text = html.escape(text, quote=True)
            result.modifications_applied.append("Special characters escaped")

        if "\x00" in text:
            text = text.replace("\x00", "")
            result.modifications_applied.append("Null bytes removed")
            result.escalate("high")
        return text

    @staticmethod
    def emergency_sanitize(content: str) -> str:
        text = _ESCAPABLE_RE.sub("", content)
        text = _EMERGENCY_DROP_RE.sub("", text)
        text = _WHITESPACE_RE.sub(" ", text).strip()
        return text[:EMERGENCY_MAX_LENGTH]

    @staticmethod
    def sanitize_filename(filename: str) -> str:
        name = _FILENAME_RE.sub("_", filename)
        name = re.sub(r"\.+", ".", name)
        name = re.sub(r"_+", "_", name)
        return name[:255]
