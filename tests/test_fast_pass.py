from __future__ import annotations

import asyncio

import pytest

from greatshield.errors import ConfigurationError
from greatshield.moderation.fast_pass import FastPassFilter, caps_ratio, compile_rule_set
from greatshield.moderation.models import BannedWord, BlockedUrl
from greatshield.testing.fakes import FakePolicyProvider


def make_policy() -> FakePolicyProvider:
    return FakePolicyProvider(
        banned_words=[
            BannedWord("badword"),
            BannedWord(r"\bfoo+\b", is_regex=True, severity="high", action="delete_warn"),
        ],
        blocked_urls=[
            BlockedUrl(r"https?://grabify\.link", is_regex=True, reason="IP grabbing services", action="escalate"),
        ],
    )


def make_filter(policy=None) -> FastPassFilter:
    fp = FastPassFilter()
    asyncio.run(fp.initialize(policy or make_policy(), 1))
    return fp


def test_initialize_requires_a_pack():
    with pytest.raises(ConfigurationError, match="No active policy pack"):
        asyncio.run(FastPassFilter().initialize(make_policy(), None))


def test_literal_banned_word_matches_case_insensitively():
    hit = make_filter().check("this has a BadWord in it")

    assert hit.triggered
    assert hit.rule_triggered == "banned_word:badword"
    assert hit.action == "mask"
    assert hit.severity == "medium"
    assert hit.confidence == 1.0
    assert hit.reason == "Banned word/phrase detected: badword"


def test_regex_banned_word():
    hit = make_filter().check("well FOOOO to you")

    assert hit.rule_triggered == r"banned_word:\bfoo+\b"
    assert hit.action == "delete_warn"
    assert hit.severity == "high"


def test_blocked_url_uses_its_reason():
    hit = make_filter().check("click https://grabify.link/xyz for prizes")

    assert hit.rule_triggered == r"blocked_url:https?://grabify\.link"
    assert hit.action == "escalate"
    assert hit.reason == "IP grabbing services"


def test_clean_message_is_not_triggered():
    assert not make_filter().check("see you tomorrow at the meetup").triggered


def test_spam_heuristics_run_before_initialize():
    hit = FastPassFilter().check("THIS IS A VERY LOUD MESSAGE")

    assert hit.rule_triggered == "excessive_caps"
    assert hit.action == "mask"
    assert hit.reason == "Excessive use of capital letters (100%)"


def test_excessive_mentions():
    hit = make_filter().check("@a @b @c @d @e @f look")

    assert hit.rule_triggered == "excessive_mentions"
    assert hit.action == "delete_warn"


def test_excessive_emoji():
    hit = make_filter().check(chr(0x1F600) * 11)

    assert hit.rule_triggered == "excessive_emoji"


def test_zalgo_text():
    hit = make_filter().check("a" + chr(0x0301) * 60)

    assert hit.rule_triggered == "zalgo_text"
    assert hit.confidence == 0.9


def test_repeated_characters_and_words():
    fp = make_filter()

    assert fp.check("a" + "h" * 12).rule_triggered == "repeated_characters"
    words = fp.check("spam spam spam spam spam")
    assert words.rule_triggered == "repeated_words"
    assert words.reason == 'Excessive word repetition: "spam" repeated 5 times'


def test_short_words_do_not_count_as_repetition():
    assert not make_filter().check("no no no no no no").triggered


def test_invalid_regex_is_skipped():
    rules = compile_rule_set(1, [BannedWord("(unclosed", is_regex=True), BannedWord("ok")], [])

    assert [m.pattern for m in rules.banned_words] == ["ok"]


def test_reload_with_unchanged_rules_is_idempotent():
    policy = make_policy()
    fp = make_filter(policy)
    before = fp.rules

    asyncio.run(fp.reload_rules())

    assert fp.rules.fingerprint == before.fingerprint
    assert len(fp.rules.banned_words) == len(before.banned_words)
    assert len(fp.rules.blocked_urls) == len(before.blocked_urls)


def test_reload_picks_up_new_rules():
    policy = make_policy()
    fp = make_filter(policy)
    before = fp.rules.fingerprint
    assert not fp.check("buy cheapcoins today").triggered

    policy.banned_words.append(BannedWord("cheapcoins", action="delete_warn"))
    asyncio.run(fp.reload_rules())

    assert fp.rules.fingerprint != before
    assert fp.check("buy cheapcoins today").action == "delete_warn"


def test_caps_ratio_ignores_non_letters():
    assert caps_ratio("1234 !!") == 0.0
    assert caps_ratio("ABcd") == 0.5
