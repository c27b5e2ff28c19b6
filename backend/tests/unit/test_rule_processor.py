"""
Unit tests for notifications/rule_processor.py

Tests the select -> dedup -> render -> send -> record flow, completion flags,
metrics, and failure isolation between recipients and rules.
"""

import unittest
from datetime import datetime, timezone
from unittest.mock import ANY, patch

from models.notification import (
    EmailTemplate,
    MetricType,
    NotificationRule,
    Recipient,
    RuleRunStats,
)
from notifications.recipient_selector import RecipientSelectionError
from notifications.rule_processor import (
    build_entity_bundle,
    fetch_active_rules,
    notify_recipient,
    process_rules,
)
from shared.config import PipelineConfig
from tests.fixtures.mock_helpers import (
    create_mock_response,
    create_mock_send_result,
    create_mock_supabase,
)
from tests.fixtures.notification_factory import (
    create_test_lease,
    create_test_profile,
    create_test_rule,
    create_test_template,
    create_test_vehicle,
)

NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
CONFIG = PipelineConfig(from_email="Rentals <noreply@example.com>")


def make_rule(**kwargs) -> NotificationRule:
    return NotificationRule.model_validate(create_test_rule(**kwargs))


def make_recipient(**kwargs) -> Recipient:
    return Recipient.model_validate(create_test_profile(**kwargs))


def inserted_rows(mock_supabase):
    return [call.args[0] for call in mock_supabase.insert.call_args_list]


@patch("notifications.rule_processor.opt_out_enabled", return_value=False)
@patch("notifications.rule_processor.increment_metric")
@patch("notifications.rule_processor.log_notification_error")
@patch("notifications.rule_processor.already_notified", return_value=False)
@patch("notifications.rule_processor.send_email")
@patch("builtins.print")
class TestNotifyRecipient(unittest.TestCase):
    """Tests for notify_recipient()"""

    def setUp(self):
        self.template = EmailTemplate.model_validate(
            create_test_template(
                subject="Welcome {{customer.full_name}}",
                content="<p>Hi {{customer.full_name}}, enjoy the {{vehicle.make}}.</p>",
            )
        )
        vehicle = create_test_vehicle(make="Nissan")
        lease = create_test_lease(lease_id="l1", customer_id="p1", vehicle=vehicle)
        lease.pop("vehicle")
        self.recipient = make_recipient(
            profile_id="p1", full_name="Sara Ahmed", lease=lease, vehicle=vehicle
        )

    def test_success_logs_flags_and_counts(
        self, mock_print, mock_send, mock_dedup, mock_log, mock_metric, mock_opt
    ):
        mock_send.return_value = create_mock_send_result(email_id="email_1")
        mock_supabase = create_mock_supabase()
        rule = make_rule(rule_id="r1", trigger_type="welcome")
        stats = RuleRunStats()

        notify_recipient(
            mock_supabase, rule, self.template, self.recipient, NOW, CONFIG, stats
        )

        self.assertEqual(stats.sent, 1)
        row = inserted_rows(mock_supabase)[0]
        self.assertEqual(row["status"], "sent")
        self.assertEqual(row["message_id"], "email_1")
        self.assertEqual(row["rule_id"], "r1")
        self.assertEqual(row["recipient_id"], "p1")
        mock_supabase.update.assert_called_once_with({"welcome_email_sent": True})
        mock_supabase.eq.assert_any_call("id", "p1")
        mock_metric.assert_called_once_with(mock_supabase, MetricType.SUCCESSFUL_SENT)

    def test_log_write_failure_keeps_delivered_send(
        self, mock_print, mock_send, mock_dedup, mock_log, mock_metric, mock_opt
    ):
        """A delivered email stays sent, flagged and counted when logging fails"""
        mock_send.return_value = create_mock_send_result(email_id="email_1")
        mock_supabase = create_mock_supabase()
        mock_supabase.insert.side_effect = RuntimeError("logs table unavailable")
        stats = RuleRunStats()

        notify_recipient(
            mock_supabase,
            make_rule(rule_id="r1", trigger_type="welcome"),
            self.template,
            self.recipient,
            NOW,
            CONFIG,
            stats,
        )

        mock_send.assert_called_once()
        self.assertEqual(stats.sent, 1)
        self.assertEqual(stats.failed, 0)
        mock_supabase.update.assert_called_once_with({"welcome_email_sent": True})
        mock_metric.assert_called_once_with(mock_supabase, MetricType.SUCCESSFUL_SENT)
        self.assertEqual(mock_log.call_args[1]["error_type"], "sending")
        self.assertEqual(mock_log.call_args[1]["context"]["message_id"], "email_1")

    def test_renders_subject_and_body(
        self, mock_print, mock_send, mock_dedup, mock_log, mock_metric, mock_opt
    ):
        mock_send.return_value = create_mock_send_result()
        rule = make_rule(trigger_type="legal_notice")

        notify_recipient(
            create_mock_supabase(), rule, self.template, self.recipient, NOW, CONFIG, RuleRunStats()
        )

        mock_send.assert_called_once_with(
            self.recipient.email,
            "Welcome Sara Ahmed",
            "<p>Hi Sara Ahmed, enjoy the Nissan.</p>",
            attachments=[],
            from_email="Rentals <noreply@example.com>",
            timeout_seconds=30.0,
        )

    def test_failure_logged_without_flag(
        self, mock_print, mock_send, mock_dedup, mock_log, mock_metric, mock_opt
    ):
        mock_send.return_value = create_mock_send_result(success=False, error="bounced")
        mock_supabase = create_mock_supabase()
        stats = RuleRunStats()

        notify_recipient(
            mock_supabase, make_rule(), self.template, self.recipient, NOW, CONFIG, stats
        )

        self.assertEqual(stats.failed, 1)
        row = inserted_rows(mock_supabase)[0]
        self.assertEqual(row["status"], "failed")
        self.assertEqual(row["error_message"], "bounced")
        mock_supabase.update.assert_not_called()
        mock_metric.assert_called_once_with(mock_supabase, MetricType.FAILED_SENT)

    def test_deduplicated_recipient_skipped(
        self, mock_print, mock_send, mock_dedup, mock_log, mock_metric, mock_opt
    ):
        mock_dedup.return_value = True
        mock_supabase = create_mock_supabase()
        stats = RuleRunStats()

        notify_recipient(
            mock_supabase, make_rule(), self.template, self.recipient, NOW, CONFIG, stats
        )

        self.assertEqual(stats.skipped, 1)
        mock_send.assert_not_called()
        mock_supabase.insert.assert_not_called()

    def test_contract_confirmation_flags_lease(
        self, mock_print, mock_send, mock_dedup, mock_log, mock_metric, mock_opt
    ):
        mock_send.return_value = create_mock_send_result()
        mock_supabase = create_mock_supabase()
        rule = make_rule(trigger_type="contract_confirmation")

        notify_recipient(
            mock_supabase, rule, self.template, self.recipient, NOW, CONFIG, RuleRunStats()
        )

        mock_supabase.update.assert_called_once_with({"confirmation_email_sent": True})
        mock_supabase.eq.assert_any_call("id", "l1")

    def test_reminders_have_no_completion_flag(
        self, mock_print, mock_send, mock_dedup, mock_log, mock_metric, mock_opt
    ):
        mock_send.return_value = create_mock_send_result()
        mock_supabase = create_mock_supabase()
        rule = make_rule(trigger_type="payment_reminder", timing_type="before", timing_value=3)

        notify_recipient(
            mock_supabase, rule, self.template, self.recipient, NOW, CONFIG, RuleRunStats()
        )

        mock_supabase.update.assert_not_called()

    @patch("notifications.rule_processor.resolve_attachments")
    def test_attachment_failure_sends_without(
        self, mock_attach, mock_print, mock_send, mock_dedup, mock_log, mock_metric, mock_opt
    ):
        mock_attach.side_effect = KeyError("id")
        mock_send.return_value = create_mock_send_result()
        stats = RuleRunStats()

        notify_recipient(
            create_mock_supabase(),
            make_rule(trigger_type="legal_notice"),
            self.template,
            self.recipient,
            NOW,
            CONFIG,
            stats,
        )

        self.assertEqual(mock_send.call_args.kwargs["attachments"], [])
        self.assertEqual(stats.sent, 1)
        self.assertEqual(mock_log.call_args[1]["error_type"], "attachments")

    @patch("notifications.rule_processor.build_opt_out_url", return_value="https://app/opt-out?token=t")
    def test_opt_out_footer_when_enabled(
        self, mock_url, mock_print, mock_send, mock_dedup, mock_log, mock_metric, mock_opt
    ):
        mock_opt.return_value = True
        mock_send.return_value = create_mock_send_result()

        notify_recipient(
            create_mock_supabase(), make_rule(), self.template, self.recipient, NOW, CONFIG, RuleRunStats()
        )

        html = mock_send.call_args.args[2]
        self.assertIn("https://app/opt-out?token=t", html)

    def test_dry_run_sends_nothing(
        self, mock_print, mock_send, mock_dedup, mock_log, mock_metric, mock_opt
    ):
        mock_supabase = create_mock_supabase()

        notify_recipient(
            mock_supabase, make_rule(), self.template, self.recipient, NOW, CONFIG, RuleRunStats(), dry_run=True
        )

        mock_send.assert_not_called()
        mock_supabase.insert.assert_not_called()
        mock_metric.assert_not_called()


class TestBuildEntityBundle(unittest.TestCase):
    """Tests for build_entity_bundle()"""

    def test_uses_attached_lease_without_query(self):
        lease = create_test_lease(customer_id="p1")
        vehicle = lease.pop("vehicle")
        recipient = make_recipient(profile_id="p1", lease=lease, vehicle=vehicle)
        mock_supabase = create_mock_supabase()

        bundle = build_entity_bundle(mock_supabase, recipient)

        mock_supabase.table.assert_not_called()
        self.assertEqual(bundle["agreement"]["agreement_number"], "AGR-1001")
        self.assertEqual(bundle["vehicle"]["make"], "Toyota")
        self.assertEqual(bundle["customer"]["full_name"], recipient.full_name)

    def test_loads_latest_lease_when_missing(self):
        lease = create_test_lease(customer_id="p1", agreement_number="AGR-2002")
        mock_supabase = create_mock_supabase([lease])

        bundle = build_entity_bundle(mock_supabase, make_recipient(profile_id="p1"))

        mock_supabase.eq.assert_called_with("customer_id", "p1")
        mock_supabase.order.assert_called_with("start_date", desc=True)
        self.assertEqual(bundle["agreement"]["agreement_number"], "AGR-2002")
        self.assertEqual(bundle["vehicle"]["license_plate"], "QA-1234")

    @patch("notifications.rule_processor.log_notification_error")
    def test_lookup_failure_leaves_empty_fields(self, mock_log):
        mock_supabase = create_mock_supabase()
        mock_supabase.execute.side_effect = Exception("timeout")

        bundle = build_entity_bundle(mock_supabase, make_recipient(profile_id="p1"))

        self.assertIsNone(bundle["agreement"]["agreement_number"])
        self.assertIsNone(bundle["vehicle"]["make"])
        mock_log.assert_called_once()


class TestFetchActiveRules(unittest.TestCase):
    """Tests for fetch_active_rules()"""

    @patch("notifications.rule_processor.log_notification_error")
    @patch("builtins.print")
    def test_invalid_rows_skipped(self, mock_print, mock_log):
        good = create_test_rule(rule_id="good")
        bad = create_test_rule(rule_id="bad", trigger_type="birthday")
        mock_supabase = create_mock_supabase([good, bad])

        rules = fetch_active_rules(mock_supabase)

        self.assertEqual([r.id for r in rules], ["good"])
        self.assertIsNotNone(rules[0].template)
        mock_supabase.eq.assert_called_once_with("is_active", True)
        mock_log.assert_called_once()


@patch("notifications.rule_processor.log_notification_error")
@patch("notifications.rule_processor.notify_recipient")
@patch("notifications.rule_processor.select_recipients")
@patch("notifications.rule_processor.fetch_active_rules")
@patch("builtins.print")
class TestProcessRules(unittest.TestCase):
    """Tests for process_rules() orchestration and isolation"""

    def test_processes_every_rule(
        self, mock_print, mock_rules, mock_select, mock_notify, mock_log
    ):
        mock_rules.return_value = [make_rule(rule_id="a"), make_rule(rule_id="b")]
        mock_select.return_value = [make_recipient(profile_id="p1")]

        stats = process_rules(now=NOW, config=CONFIG, supabase=create_mock_supabase())

        self.assertEqual(stats.processed, 2)
        self.assertEqual(mock_notify.call_count, 2)

    def test_selection_failure_isolated_to_rule(
        self, mock_print, mock_rules, mock_select, mock_notify, mock_log
    ):
        """A data error for rule A does not stop rule B"""
        rule_a = make_rule(rule_id="a", trigger_type="late_payment")
        rule_b = make_rule(rule_id="b", trigger_type="welcome")
        mock_rules.return_value = [rule_a, rule_b]

        def _select(supabase, rule, now, config):
            if rule.id == "a":
                raise RecipientSelectionError("a", "late_payment", Exception("boom"))
            return [make_recipient(profile_id="p1")]

        mock_select.side_effect = _select

        stats = process_rules(now=NOW, config=CONFIG, supabase=create_mock_supabase())

        self.assertEqual(stats.rules_failed, 1)
        self.assertEqual(stats.processed, 1)
        mock_notify.assert_called_once()
        self.assertIs(mock_notify.call_args.args[1], rule_b)
        self.assertEqual(mock_log.call_args[1]["context"]["rule_id"], "a")

    def test_recipient_failure_isolated(
        self, mock_print, mock_rules, mock_select, mock_notify, mock_log
    ):
        """An exception for one recipient does not stop the others"""
        mock_rules.return_value = [make_rule()]
        mock_select.return_value = [
            make_recipient(profile_id="p1"),
            make_recipient(profile_id="p2"),
        ]
        mock_notify.side_effect = [Exception("insert failed"), None]

        stats = process_rules(now=NOW, config=CONFIG, supabase=create_mock_supabase())

        self.assertEqual(mock_notify.call_count, 2)
        self.assertEqual(stats.failed, 1)
        self.assertEqual(stats.processed, 1)

    def test_missing_template_fetched(
        self, mock_print, mock_rules, mock_select, mock_notify, mock_log
    ):
        rule = make_rule(email_templates=None)
        self.assertIsNone(rule.template)
        mock_rules.return_value = [rule]
        mock_select.return_value = [make_recipient()]
        template = create_test_template(template_id=rule.template_id)
        mock_supabase = create_mock_supabase([template])

        process_rules(now=NOW, config=CONFIG, supabase=mock_supabase)

        passed_template = mock_notify.call_args.args[2]
        self.assertEqual(passed_template.id, rule.template_id)

    def test_template_not_found_fails_rule(
        self, mock_print, mock_rules, mock_select, mock_notify, mock_log
    ):
        mock_rules.return_value = [make_rule(email_templates=None)]

        stats = process_rules(now=NOW, config=CONFIG, supabase=create_mock_supabase([]))

        self.assertEqual(stats.rules_failed, 1)
        mock_select.assert_not_called()

    def test_rule_load_failure_returns_empty_stats(
        self, mock_print, mock_rules, mock_select, mock_notify, mock_log
    ):
        mock_rules.side_effect = Exception("database unavailable")

        stats = process_rules(now=NOW, config=CONFIG, supabase=create_mock_supabase())

        self.assertEqual(stats, RuleRunStats())
        mock_log.assert_called_once_with(error_type="selection", error_message=ANY)


if __name__ == "__main__":
    unittest.main()
