"""
Unit tests for notifications/attachments.py
"""

import unittest

from models.notification import Recipient, TriggerType
from notifications.attachments import resolve_attachments
from tests.fixtures.notification_factory import (
    create_test_lease,
    create_test_profile,
    create_test_schedule,
)


def decode(attachment):
    return bytes(attachment["content"]).decode("utf-8")


class TestResolveAttachments(unittest.TestCase):
    """Tests for resolve_attachments()"""

    def test_contract_pdf_linked_by_url(self):
        lease = create_test_lease(contract_document_url="https://files.example.com/agr.pdf")
        recipient = Recipient.model_validate(create_test_profile(lease=lease))

        result = resolve_attachments(TriggerType.CONTRACT_CONFIRMATION, recipient)

        self.assertEqual(
            result,
            [{"filename": "contract-AGR-1001.pdf", "path": "https://files.example.com/agr.pdf"}],
        )

    def test_contract_without_document(self):
        recipient = Recipient.model_validate(create_test_profile(lease=create_test_lease()))

        self.assertEqual(resolve_attachments(TriggerType.CONTRACT_CONFIRMATION, recipient), [])

    def test_payment_schedule_csv(self):
        schedules = [
            create_test_schedule("l1", due_date="2026-10-20", amount=1500, status="pending"),
            create_test_schedule("l1", due_date="2026-11-20", amount=1500, status="pending"),
        ]
        recipient = Recipient.model_validate(create_test_profile(payment_schedules=schedules))

        result = resolve_attachments(TriggerType.PAYMENT_REMINDER, recipient)

        self.assertEqual(len(result), 1)
        self.assertEqual(result[0]["filename"], "payment-schedule.csv")
        lines = decode(result[0]).splitlines()
        self.assertEqual(lines[0], "due_date,amount,status")
        self.assertEqual(lines[1], "2026-10-20,1500,pending")
        self.assertEqual(len(lines), 3)

    def test_late_payment_uses_schedule_csv(self):
        recipient = Recipient.model_validate(
            create_test_profile(payment_schedules=[create_test_schedule("l1")])
        )

        result = resolve_attachments(TriggerType.LATE_PAYMENT, recipient)

        self.assertEqual(result[0]["filename"], "payment-schedule.csv")

    def test_legal_case_summary(self):
        case = {
            "id": "case1",
            "case_number": "LC-77",
            "case_type": "unpaid_rent",
            "status": "pending_reminder",
            "amount_owed": 3000,
            "description": None,
        }
        recipient = Recipient.model_validate(create_test_profile(legal_case=case))

        result = resolve_attachments(TriggerType.LEGAL_NOTICE, recipient)

        self.assertEqual(result[0]["filename"], "legal-case-LC-77.txt")
        text = decode(result[0])
        self.assertIn("Legal case LC-77", text)
        self.assertIn("Amount owed: 3000", text)
        self.assertNotIn("Description", text)

    def test_triggers_without_attachments(self):
        recipient = Recipient.model_validate(create_test_profile(lease=create_test_lease()))

        self.assertEqual(resolve_attachments(TriggerType.WELCOME, recipient), [])
        self.assertEqual(resolve_attachments(TriggerType.INSURANCE_RENEWAL, recipient), [])


if __name__ == "__main__":
    unittest.main()
