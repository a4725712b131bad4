"""
Uniform field access over CRM records.

Flows read and write fields by api_name without caring whether a record is a
statically-schemed model (Pet, Task, Event) or a CustomRecord whose fields
live in CustomFieldValue rows. Object api_names ('pets', 'donations', ...)
resolve to an ObjectType that can find, build and match records.
"""
import logging
from typing import Any, Dict, Optional

from django.apps import apps
from django.core.exceptions import FieldDoesNotExist, ValidationError
from django.db import transaction

from crm.models import CustomObject, CustomRecord
from flow_engine.conf import get_setting

logger = logging.getLogger(__name__)


class RecordAccessor:
    """Get/set/save/delete capability over one model instance."""

    def __init__(self, instance):
        self.instance = instance

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.instance._meta.label}#{self.pk}>"

    @property
    def pk(self):
        return self.instance.pk

    @property
    def label(self) -> str:
        return self.instance._meta.label

    def get_field(self, field_api_name: str) -> Any:
        raise NotImplementedError

    def set_field(self, field_api_name: str, value: Any) -> bool:
        raise NotImplementedError

    def set_fields(self, values: Dict[str, Any]) -> Dict[str, bool]:
        return {name: self.set_field(name, value) for name, value in values.items()}

    def save(self) -> bool:
        self.instance.full_clean()
        self.instance.save()
        return True

    def delete(self) -> bool:
        self.instance.delete()
        return True


class StaticRecordAccessor(RecordAccessor):
    """Accessor for models with a fixed schema; only concrete fields are exposed."""

    # Tenant relation; records never move between organizations
    TENANT_FIELD = 'organization'

    def _model_field(self, field_api_name: str):
        try:
            return self.instance._meta.get_field(field_api_name)
        except FieldDoesNotExist:
            return None

    def get_field(self, field_api_name: str) -> Any:
        field = self._model_field(field_api_name)
        if field is None or not field.concrete:
            return None
        return getattr(self.instance, field_api_name)

    def set_field(self, field_api_name: str, value: Any) -> bool:
        field = self._model_field(field_api_name)
        if field is None or not field.concrete or field.primary_key or field.name == self.TENANT_FIELD:
            logger.debug(f"{self.label} has no writable field '{field_api_name}'")
            return False
        setattr(self.instance, field_api_name, value)
        return True


class DynamicRecordAccessor(RecordAccessor):
    """
    Accessor for CustomRecord.

    Writes are checked against the object's field definitions and buffered
    until save(), which persists the record and its value rows together.
    """

    COLUMN_FIELDS = ('id', 'name', 'external_id')

    def __init__(self, instance: CustomRecord):
        super().__init__(instance)
        self.pending: Dict[str, Any] = {}

    def get_field(self, field_api_name: str) -> Any:
        if field_api_name in self.pending:
            return self.pending[field_api_name]
        if field_api_name in self.COLUMN_FIELDS:
            return getattr(self.instance, field_api_name)
        return self.instance.field_value(field_api_name)

    def set_field(self, field_api_name: str, value: Any) -> bool:
        if field_api_name in self.COLUMN_FIELDS:
            if field_api_name != 'name':
                return False
            self.instance.name = value
            return True

        if self.instance.get_field(field_api_name) is None:
            logger.debug(
                f"Custom object '{self.instance.custom_object.api_name}' "
                f"has no field '{field_api_name}'"
            )
            return False

        self.pending[field_api_name] = value
        return True

    def save(self) -> bool:
        with transaction.atomic():
            super().save()
            for field_api_name, value in self.pending.items():
                self.instance.set_field_value(field_api_name, value)
        self.pending.clear()
        return True


def accessor_for(instance) -> Optional[RecordAccessor]:
    """Wrap a model instance in the accessor matching its storage."""
    if instance is None or isinstance(instance, RecordAccessor):
        return instance
    if isinstance(instance, CustomRecord):
        return DynamicRecordAccessor(instance)
    return StaticRecordAccessor(instance)


class ObjectType:
    """An object api_name resolved for one organization."""

    api_name = None

    def matches(self, record) -> bool:
        raise NotImplementedError

    def find(self, record_id) -> Optional[RecordAccessor]:
        raise NotImplementedError

    def build(self) -> RecordAccessor:
        raise NotImplementedError

    def _lookup(self, queryset, record_id):
        if record_id in (None, ''):
            return None
        try:
            return queryset.filter(pk=record_id).first()
        except (ValueError, TypeError, ValidationError) as e:
            logger.warning(f"Invalid {self.api_name} record id {record_id!r}: {e}")
            return None


class StandardObjectType(ObjectType):

    def __init__(self, api_name: str, model, organization):
        self.api_name = api_name
        self.model = model
        self.organization = organization

    def matches(self, record) -> bool:
        return isinstance(record, self.model)

    def find(self, record_id) -> Optional[RecordAccessor]:
        queryset = self.model._default_manager.filter(organization=self.organization)
        return accessor_for(self._lookup(queryset, record_id))

    def build(self) -> RecordAccessor:
        return StaticRecordAccessor(self.model(organization=self.organization))


class CustomObjectType(ObjectType):

    def __init__(self, custom_object: CustomObject):
        self.api_name = custom_object.api_name
        self.custom_object = custom_object

    def matches(self, record) -> bool:
        return (
            isinstance(record, CustomRecord)
            and record.custom_object.api_name == self.api_name
        )

    def find(self, record_id) -> Optional[RecordAccessor]:
        return accessor_for(self._lookup(self.custom_object.custom_records.all(), record_id))

    def build(self) -> RecordAccessor:
        return DynamicRecordAccessor(CustomRecord(custom_object=self.custom_object))


def standard_object_models() -> Dict[str, Any]:
    """Map standard object api_names to their model classes."""
    return {
        api_name: apps.get_model(label)
        for api_name, label in get_setting('STANDARD_OBJECTS').items()
    }


def object_type_for(organization, object_api_name: Optional[str]) -> Optional[ObjectType]:
    """Resolve an object api_name for an organization, or None if unknown."""
    if not object_api_name:
        return None

    model = standard_object_models().get(object_api_name)
    if model is not None:
        return StandardObjectType(object_api_name, model, organization)

    custom_object = CustomObject.objects.filter(
        organization=organization,
        api_name=object_api_name
    ).first()
    if custom_object is None:
        return None
    return CustomObjectType(custom_object)


def object_api_name_of(record) -> Optional[str]:
    """The object api_name a record instance belongs to."""
    if isinstance(record, RecordAccessor):
        record = record.instance
    if isinstance(record, CustomRecord):
        return record.custom_object.api_name
    for api_name, model in standard_object_models().items():
        if isinstance(record, model):
            return api_name
    return None
