"""
CRM record storage.

Statically-schemed shelter entities (Pet, Task, Event) and the dynamically
schemed custom objects whose fields live in attribute/value rows.
"""
import secrets
from typing import Any, Dict, Optional

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models, transaction


def generate_external_id() -> str:
    """Web-safe, URL-friendly identifier for custom records."""
    return secrets.token_urlsafe(12).rstrip('=')


class Organization(models.Model):
    """A shelter tenant. Every record and flow belongs to one."""

    name = models.CharField(max_length=255, verbose_name="Organization name")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name']
        verbose_name = "Organization"
        verbose_name_plural = "Organizations"

    def __str__(self):
        return self.name


class Pet(models.Model):

    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name='pets'
    )
    name = models.CharField(max_length=255, verbose_name="Name")
    status = models.CharField(max_length=50, blank=True, default='')
    species = models.CharField(max_length=50, blank=True, default='')
    breed = models.CharField(max_length=255, blank=True, default='')
    color = models.CharField(max_length=255, blank=True, default='')
    sex = models.CharField(max_length=20, blank=True, default='')
    date_of_birth = models.DateField(blank=True, null=True)
    weight_lbs = models.DecimalField(max_digits=6, decimal_places=2, blank=True, null=True)
    location = models.CharField(max_length=255, blank=True, default='')
    description = models.TextField(blank=True, default='')
    entered_shelter = models.DateField(blank=True, null=True)
    left_shelter = models.DateField(blank=True, null=True)
    microchip = models.CharField(max_length=100, blank=True, default='')
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Pet"
        verbose_name_plural = "Pets"

    def __str__(self):
        return self.name


class Task(models.Model):

    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name='tasks'
    )
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    status = models.CharField(max_length=50, blank=True, default='')
    due_date = models.DateField(blank=True, null=True)
    priority = models.CharField(max_length=20, blank=True, default='')
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Task"
        verbose_name_plural = "Tasks"

    def __str__(self):
        return self.title


class Event(models.Model):

    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name='events'
    )
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    start_time = models.DateTimeField()
    end_time = models.DateTimeField(blank=True, null=True)
    location = models.CharField(max_length=255, blank=True, default='')
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Event"
        verbose_name_plural = "Events"

    def __str__(self):
        return self.title


class CustomObject(models.Model):
    """Tenant-defined object type (e.g. 'donations')."""

    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name='custom_objects'
    )
    name = models.CharField(max_length=255)
    api_name = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Identifier used by flows (e.g., 'donations')"
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        verbose_name = "Custom Object"
        verbose_name_plural = "Custom Objects"
        unique_together = [['organization', 'api_name']]

    def __str__(self):
        return f"{self.name} ({self.api_name})"


class CustomField(models.Model):

    FIELD_TYPE_CHOICES = [
        ('text', 'Text'),
        ('textarea', 'Text Area'),
        ('number', 'Number'),
        ('date', 'Date'),
        ('datetime', 'Date/Time'),
        ('checkbox', 'Checkbox'),
        ('picklist', 'Picklist'),
    ]

    custom_object = models.ForeignKey(
        CustomObject,
        on_delete=models.CASCADE,
        related_name='custom_fields'
    )
    name = models.CharField(max_length=255)
    api_name = models.CharField(max_length=100)
    field_type = models.CharField(max_length=20, choices=FIELD_TYPE_CHOICES, default='text')
    required = models.BooleanField(default=False)

    class Meta:
        verbose_name = "Custom Field"
        verbose_name_plural = "Custom Fields"
        unique_together = [['custom_object', 'api_name']]

    def __str__(self):
        return f"{self.custom_object.api_name}.{self.api_name}"


class CustomRecord(models.Model):
    """
    A row of a custom object.

    Field values are stored in CustomFieldValue rows keyed by the field
    definition, so reads and writes go through the field's api_name.
    """

    custom_object = models.ForeignKey(
        CustomObject,
        on_delete=models.CASCADE,
        related_name='custom_records'
    )
    name = models.CharField(max_length=255)
    external_id = models.CharField(
        max_length=32,
        unique=True,
        default=generate_external_id
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Custom Record"
        verbose_name_plural = "Custom Records"

    def __str__(self):
        return self.name

    @property
    def organization(self):
        return self.custom_object.organization

    def get_field(self, field_api_name: str) -> Optional[CustomField]:
        return self.custom_object.custom_fields.filter(api_name=field_api_name).first()

    def field_value(self, field_api_name: str) -> Any:
        field = self.get_field(field_api_name)
        if field is None or self.pk is None:
            return None

        value_row = self.values.filter(custom_field=field).first()
        return value_row.value if value_row else None

    def set_field_value(self, field_api_name: str, value: Any) -> bool:
        """Write one field value. Unknown fields are a no-op returning False."""
        field = self.get_field(field_api_name)
        if field is None or self.pk is None:
            return False

        CustomFieldValue.objects.update_or_create(
            custom_record=self,
            custom_field=field,
            defaults={'value': value}
        )
        return True

    def field_values(self) -> Dict[str, Any]:
        stored = {
            row.custom_field.api_name: row.value
            for row in self.values.select_related('custom_field')
        }
        return {
            field.api_name: stored.get(field.api_name)
            for field in self.custom_object.custom_fields.all()
        }

    def set_field_values(self, values: Dict[str, Any]) -> Dict[str, bool]:
        with transaction.atomic():
            return {
                api_name: self.set_field_value(api_name, value)
                for api_name, value in values.items()
            }


class CustomFieldValue(models.Model):

    custom_record = models.ForeignKey(
        CustomRecord,
        on_delete=models.CASCADE,
        related_name='values'
    )
    custom_field = models.ForeignKey(
        CustomField,
        on_delete=models.CASCADE,
        related_name='values'
    )
    value = models.JSONField(null=True, blank=True, encoder=DjangoJSONEncoder)

    class Meta:
        verbose_name = "Custom Field Value"
        verbose_name_plural = "Custom Field Values"
        unique_together = [['custom_record', 'custom_field']]

    def __str__(self):
        return f"{self.custom_field.api_name}={self.value!r}"
