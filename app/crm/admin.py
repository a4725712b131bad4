from django.contrib import admin

from .models import (
    Organization,
    Pet,
    Task,
    Event,
    CustomObject,
    CustomField,
    CustomRecord,
    CustomFieldValue,
)


@admin.register(Organization)
class OrganizationAdmin(admin.ModelAdmin):
    list_display = ["name", "created_at"]
    search_fields = ["name"]


@admin.register(Pet)
class PetAdmin(admin.ModelAdmin):
    list_display = ["name", "species", "status", "organization"]
    list_filter = ["status", "species", "organization"]
    search_fields = ["name", "microchip"]


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ["title", "status", "priority", "due_date", "organization"]
    list_filter = ["status", "priority"]
    search_fields = ["title"]


@admin.register(Event)
class EventAdmin(admin.ModelAdmin):
    list_display = ["title", "start_time", "location", "organization"]
    search_fields = ["title"]


class CustomFieldInline(admin.TabularInline):
    model = CustomField
    extra = 0


@admin.register(CustomObject)
class CustomObjectAdmin(admin.ModelAdmin):
    list_display = ["name", "api_name", "organization", "is_active"]
    list_filter = ["is_active", "organization"]
    inlines = [CustomFieldInline]


class CustomFieldValueInline(admin.TabularInline):
    model = CustomFieldValue
    extra = 0


@admin.register(CustomRecord)
class CustomRecordAdmin(admin.ModelAdmin):
    list_display = ["name", "custom_object", "external_id", "updated_at"]
    list_filter = ["custom_object"]
    search_fields = ["name", "external_id"]
    readonly_fields = ["external_id", "created_at", "updated_at"]
    inlines = [CustomFieldValueInline]
