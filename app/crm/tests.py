"""
Tests for CRM models.

Run with:
    python manage.py test crm --settings=web.settings.test
"""
from datetime import date

from django.test import TestCase

from crm.models import CustomField, CustomObject, CustomRecord, Organization


class CustomRecordTestCase(TestCase):
    """Test field values stored by api_name on custom records."""

    def setUp(self):
        self.organization = Organization.objects.create(name='Happy Tails')
        self.volunteers = CustomObject.objects.create(
            organization=self.organization,
            name='Volunteer',
            api_name='volunteers'
        )
        CustomField.objects.create(custom_object=self.volunteers, name='Email', api_name='email')
        CustomField.objects.create(
            custom_object=self.volunteers,
            name='Start date',
            api_name='start_date',
            field_type='date'
        )
        self.record = CustomRecord.objects.create(custom_object=self.volunteers, name='Alex')

    def test_external_id_is_generated(self):
        other = CustomRecord.objects.create(custom_object=self.volunteers, name='Sam')

        self.assertTrue(self.record.external_id)
        self.assertNotEqual(self.record.external_id, other.external_id)
        self.assertEqual(self.record.organization, self.organization)

    def test_set_and_read_values(self):
        self.assertTrue(self.record.set_field_value('email', 'alex@example.org'))
        self.assertTrue(self.record.set_field_value('email', 'alex@example.com'))

        self.assertEqual(self.record.field_value('email'), 'alex@example.com')
        self.assertEqual(self.record.values.count(), 1)
        self.assertEqual(self.record.field_values(), {'email': 'alex@example.com', 'start_date': None})

    def test_unknown_field_is_a_noop(self):
        """Test that writing an undefined field returns False and stores nothing."""
        self.assertFalse(self.record.set_field_value('phone', '555-0100'))
        self.assertIsNone(self.record.field_value('phone'))
        self.assertFalse(self.record.values.exists())

    def test_unsaved_record(self):
        record = CustomRecord(custom_object=self.volunteers, name='Unsaved')

        self.assertFalse(record.set_field_value('email', 'x@example.org'))
        self.assertIsNone(record.field_value('email'))

    def test_set_many_values(self):
        results = self.record.set_field_values({
            'email': 'alex@example.org',
            'start_date': date(2024, 3, 1),
            'shoe_size': 42,
        })

        self.assertEqual(results, {'email': True, 'start_date': True, 'shoe_size': False})
        # Dates are stored in their JSON form
        self.assertEqual(self.record.field_value('start_date'), '2024-03-01')
