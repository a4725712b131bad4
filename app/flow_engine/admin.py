"""
Django admin interface for flow engine.
"""
from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html, format_html_join

from .models import Flow, FlowBlock, FlowExecution, FlowExecutionLog, FlowJob
from .utils import visualize_flow


STATUS_COLORS = {
    'pending': 'gray',
    'queued': 'lightblue',
    'running': 'blue',
    'completed': 'green',
    'failed': 'red',
    'cancelled': 'orange',
}


def status_badge_html(status):
    color = STATUS_COLORS.get(status, 'gray')
    return format_html(
        '<span style="background-color: {}; color: white; padding: 3px 8px; border-radius: 3px;">{}</span>',
        color,
        status.upper()
    )


class FlowBlockInline(admin.TabularInline):
    model = FlowBlock
    extra = 0
    fields = ['position', 'block_type', 'name', 'config_data']


@admin.register(Flow)
class FlowAdmin(admin.ModelAdmin):
    list_display = ['name', 'organization', 'active', 'block_count', 'updated_at']
    list_filter = ['active', 'organization']
    search_fields = ['name', 'description']
    readonly_fields = ['created_at', 'updated_at', 'graph_visualization']
    inlines = [FlowBlockInline]

    fieldsets = [
        ('Basic Information', {
            'fields': ['organization', 'name', 'description', 'active']
        }),
        ('Graph', {
            'fields': ['connections_data', 'graph_visualization']
        }),
        ('Metadata', {
            'fields': ['created_at', 'updated_at']
        })
    ]

    def block_count(self, obj):
        return obj.blocks.count()
    block_count.short_description = 'Blocks'

    def graph_visualization(self, obj):
        """Display a simple text visualization of the flow graph."""
        if obj.pk is None:
            return '-'
        return format_html(
            '<div style="font-family: monospace; white-space: pre;">{}</div>',
            visualize_flow(obj)
        )
    graph_visualization.short_description = 'Graph Visualization'


@admin.register(FlowJob)
class FlowJobAdmin(admin.ModelAdmin):
    list_display = [
        'id',
        'flow_link',
        'organization',
        'status_badge',
        'retry_count',
        'trigger_display',
        'created_at',
        'duration_display'
    ]
    list_filter = ['status', 'flow', 'organization', 'created_at']
    search_fields = ['id', 'job_id', 'flow__name']
    readonly_fields = [
        'job_id',
        'created_at',
        'updated_at',
        'started_at',
        'completed_at',
        'duration_display'
    ]

    fieldsets = [
        ('Job Information', {
            'fields': ['flow', 'organization', 'status', 'job_id', 'retry_count']
        }),
        ('Trigger', {
            'fields': ['trigger_record_type', 'trigger_record_id', 'trigger_data']
        }),
        ('Error Information', {
            'fields': ['error_message'],
            'classes': ['collapse']
        }),
        ('Timestamps', {
            'fields': ['created_at', 'updated_at', 'started_at', 'completed_at', 'duration_display']
        })
    ]

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('flow', 'organization', 'trigger_record_type')

    def flow_link(self, obj):
        url = reverse('admin:flow_engine_flow_change', args=[obj.flow_id])
        return format_html('<a href="{}">{}</a>', url, obj.flow.name)
    flow_link.short_description = 'Flow'

    def status_badge(self, obj):
        return status_badge_html(obj.status)
    status_badge.short_description = 'Status'

    def trigger_display(self, obj):
        if obj.trigger_record_type is None:
            return '-'
        return f'{obj.trigger_record_type.model} #{obj.trigger_record_id}'
    trigger_display.short_description = 'Trigger Record'

    def duration_display(self, obj):
        if obj.duration:
            return f'{obj.duration:.2f}s'
        return '-'
    duration_display.short_description = 'Duration'


class FlowExecutionLogInline(admin.TabularInline):
    model = FlowExecutionLog
    extra = 0
    can_delete = False
    fields = ['timestamp', 'level', 'block_kind', 'block_id', 'message', 'context']
    readonly_fields = fields


@admin.register(FlowExecution)
class FlowExecutionAdmin(admin.ModelAdmin):
    list_display = [
        'id',
        'flow',
        'execution_type',
        'status_badge',
        'attempts',
        'started_at',
        'duration_display'
    ]
    list_filter = ['status', 'execution_type', 'flow']
    search_fields = ['id', 'flow__name']
    readonly_fields = [
        'flow',
        'flow_job',
        'user',
        'execution_type',
        'status',
        'attempts',
        'input_data',
        'output_data',
        'error_data',
        'backtrace_display',
        'started_at',
        'completed_at',
        'duration_display'
    ]
    inlines = [FlowExecutionLogInline]

    def status_badge(self, obj):
        return status_badge_html(obj.status)
    status_badge.short_description = 'Status'

    def duration_display(self, obj):
        if obj.duration:
            return f'{obj.duration:.2f}s'
        return '-'
    duration_display.short_description = 'Duration'

    def backtrace_display(self, obj):
        frames = (obj.error_data or {}).get('backtrace') or []
        if not frames:
            return '-'
        return format_html(
            '<div style="font-family: monospace; white-space: pre;">{}</div>',
            format_html_join('\n', '{}', ((frame,) for frame in frames))
        )
    backtrace_display.short_description = 'Backtrace'
