from __future__ import annotations

import asyncio

from greatshield.moderation.actions import (
    INSUFFICIENT_PERMISSIONS,
    RESTRICTION_ROLE_NAME,
    ModerationActions,
    mask_content,
)
from greatshield.moderation.models import NotificationOutcome
from greatshield.testing.fakes import FakePlatform, make_message


def run_action(actions, action, message=None, reason="rule broken", confidence=None):
    return asyncio.run(actions.execute(action, message or make_message(), reason, confidence))


def test_mask_content_keeps_first_and_last_letters():
    assert mask_content("hello there bad") == "h***o t***e bad"
    assert len(mask_content("word " * 200)) == 500


def test_none_is_a_successful_no_op():
    platform = FakePlatform()

    result = run_action(ModerationActions(platform), "none")

    assert result.success
    assert platform.calls == []


def test_unknown_action_is_rejected():
    result = run_action(ModerationActions(FakePlatform()), "explode")

    assert not result.success
    assert result.error == "Unknown action: explode"


def test_missing_capabilities_fail_before_any_side_effect():
    platform = FakePlatform(capable=False)

    result = run_action(ModerationActions(platform), "delete_warn")

    assert not result.success
    assert result.error == INSUFFICIENT_PERMISSIONS
    assert platform.deleted == []
    assert platform.notices == []


def test_shadowban_checks_guild_scope():
    platform = FakePlatform()

    run_action(ModerationActions(platform), "shadowban")

    scope, caps = platform.calls[0][1]
    assert scope == "guild"
    assert "manage_roles" in caps


def test_mask_deletes_and_reposts_masked_content():
    platform = FakePlatform()

    result = run_action(ModerationActions(platform), "mask", make_message("hello there friend"))

    assert result.success
    assert platform.deleted == [1]
    channel_id, notice = platform.notices[0]
    assert channel_id == 20
    assert notice.title == "Content Masked"
    assert ("Original Content (Masked)", "h***o t***e f****d", False) in notice.fields


def test_delete_warn_reports_direct_message_outcome():
    delivered = run_action(ModerationActions(FakePlatform()), "delete_warn")
    suppressed = run_action(ModerationActions(FakePlatform(dm_open=False)), "delete_warn")
    failed = run_action(ModerationActions(FakePlatform(fail_on={"send_direct"})), "delete_warn")

    assert delivered.notification is NotificationOutcome.DELIVERED
    assert suppressed.notification is NotificationOutcome.SUPPRESSED
    assert failed.notification is NotificationOutcome.FAILED
    # The DM is best effort; the action itself still succeeded.
    assert suppressed.success and failed.success


def test_platform_failure_becomes_a_failed_result():
    platform = FakePlatform(fail_on={"delete_message"})

    result = run_action(ModerationActions(platform), "mask")

    assert not result.success
    assert result.error == "Failed to execute mask: delete_message failed"


def test_shadowban_reuses_the_restriction_role():
    platform = FakePlatform()
    actions = ModerationActions(platform)

    first = run_action(actions, "shadowban", make_message(id=1))
    second = run_action(actions, "shadowban", make_message(id=2, user_id=31))

    assert first.success and second.success
    role_id = platform.roles[(10, RESTRICTION_ROLE_NAME)]
    assert platform.assigned == [(10, 30, role_id), (10, 31, role_id)]
    assert platform.deleted == [1, 2]


def test_escalate_mentions_at_most_three_moderators():
    platform = FakePlatform()
    actions = ModerationActions(platform)

    async def run():
        result = await actions.execute("escalate", make_message(), "grooming risk", 0.92)
        pending = actions.pending_expiries
        await actions.shutdown()
        return result, pending

    result, pending = asyncio.run(run())

    assert result.success
    assert result.notification is NotificationOutcome.DELIVERED
    _, notice = platform.notices[0]
    assert tuple(notice.mentions) == (901, 902, 903)
    assert ("Confidence", "92.0%", True) in notice.fields
    assert pending == 1
    assert actions.pending_expiries == 0


def test_escalate_without_moderators_is_suppressed():
    platform = FakePlatform(moderators=[])

    result = run_action(ModerationActions(platform, escalation_expiry_seconds=0), "escalate")

    assert result.success
    assert result.notification is NotificationOutcome.SUPPRESSED
    assert platform.notices[0][1].mentions == ()


def test_escalation_alert_is_removed_after_expiry():
    platform = FakePlatform()
    actions = ModerationActions(platform, escalation_expiry_seconds=0.01)

    async def run():
        await actions.execute("escalate", make_message(), "needs review")
        await asyncio.sleep(0.1)

    asyncio.run(run())

    assert platform.deleted_sent == [(20, 5001)]


def test_warn_replies_in_channel():
    platform = FakePlatform()

    result = run_action(ModerationActions(platform), "warn", reason="slow down")

    assert result.success
    assert platform.texts == [(20, "<@30>, warning: slow down")]
    assert platform.deleted == []


def test_timeout_and_temporary_ban_durations():
    platform = FakePlatform()
    actions = ModerationActions(platform, temp_mute_minutes=10, temp_ban_hours=2)

    run_action(actions, "timeout")
    run_action(actions, "ban_temp")

    assert platform.timeouts == [(10, 30, 600), (10, 30, 7200)]
