"""
Flow Engine Models

Flows (block graphs authored per organization), the FlowJob queue record with
its status state machine, and the FlowExecution audit trail.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from django.contrib.contenttypes.fields import GenericForeignKey
from django.contrib.contenttypes.models import ContentType
from django.core.exceptions import ValidationError
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.utils import timezone

from flow_engine.exceptions import InvalidJobTransition


class BlockKind(models.TextChoices):
    TRIGGER = 'trigger', 'Trigger'
    DECISION = 'decision', 'Decision'
    ASSIGNMENT = 'assignment', 'Assignment'
    CREATE_RECORD = 'create_record', 'Create Record'
    UPDATE_RECORD = 'update_record', 'Update Record'
    DELETE_RECORD = 'delete_record', 'Delete Record'
    EMAIL = 'email', 'Email'
    NOTIFICATION = 'notification', 'Notification'
    WAIT = 'wait', 'Wait'
    LOOP = 'loop', 'Loop'
    SCREEN = 'screen', 'Screen'
    API_CALL = 'api_call', 'API Call'


@dataclass(frozen=True)
class Connection:
    """A directed, optionally labeled edge between two blocks of a flow."""

    source: int
    target: int
    label: Optional[str] = None
    # Whether the stored dict carried a label key, even a null one
    has_label_key: bool = field(default=False, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Connection':
        return cls(
            source=data['from'],
            target=data['to'],
            label=data.get('label'),
            has_label_key='label' in data
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {'from': self.source, 'to': self.target}
        if self.label is not None or self.has_label_key:
            data['label'] = self.label
        return data

    @property
    def is_labeled(self) -> bool:
        return bool(self.label)


class FlowQuerySet(models.QuerySet):

    def active(self):
        return self.filter(active=True)

    def with_trigger(self):
        return self.filter(blocks__block_type=BlockKind.TRIGGER).distinct()


class Flow(models.Model):
    """
    An automation authored for one organization.

    Blocks are FlowBlock rows; the edges between them are kept as a JSON list
    of ``{'from': block_id, 'to': block_id, 'label': optional}`` dicts.
    """

    organization = models.ForeignKey(
        'crm.Organization',
        on_delete=models.CASCADE,
        related_name='flows'
    )
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Inactive flows are never matched by record triggers"
    )
    connections_data = models.JSONField(
        default=list,
        blank=True,
        help_text="Graph edges: [{'from': id, 'to': id, 'label': ...}]"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = FlowQuerySet.as_manager()

    class Meta:
        verbose_name = "Flow"
        verbose_name_plural = "Flows"
        ordering = ['name']
        indexes = [
            models.Index(fields=['organization', 'active'], name='flow_org_active_idx'),
        ]

    def __str__(self):
        return self.name

    @property
    def connections(self) -> List[Connection]:
        return [Connection.from_dict(item) for item in (self.connections_data or [])]

    def trigger_block(self) -> Optional['FlowBlock']:
        return self.blocks.filter(block_type=BlockKind.TRIGGER).first()

    def clean(self):
        """Validate connection endpoints and the single-trigger rule."""
        super().clean()
        if self.pk is None:
            return

        block_ids = set(self.blocks.values_list('id', flat=True))
        for item in self.connections_data or []:
            if 'from' not in item or 'to' not in item:
                raise ValidationError("Every connection needs 'from' and 'to'")
            if item['from'] not in block_ids or item['to'] not in block_ids:
                raise ValidationError(
                    f"Connection {item['from']} -> {item['to']} references a block "
                    f"outside flow '{self.name}'"
                )

        if self.blocks.filter(block_type=BlockKind.TRIGGER).count() > 1:
            raise ValidationError("A flow can have at most one trigger block")


class FlowBlock(models.Model):
    """A typed node of a flow graph with kind-specific JSON config."""

    flow = models.ForeignKey(
        Flow,
        on_delete=models.CASCADE,
        related_name='blocks'
    )
    block_type = models.CharField(
        max_length=30,
        choices=BlockKind.choices,
        db_index=True
    )
    name = models.CharField(max_length=255, blank=True, default='')
    config_data = models.JSONField(default=dict, blank=True)
    position = models.PositiveIntegerField(default=0)

    class Meta:
        verbose_name = "Flow Block"
        verbose_name_plural = "Flow Blocks"
        ordering = ['position', 'id']

    def __str__(self):
        return f"{self.block_type} ({self.name or self.pk})"

    @property
    def kind(self) -> str:
        return self.block_type

    @property
    def config(self) -> Dict[str, Any]:
        return self.config_data or {}

    def clean(self):
        super().clean()
        if self.block_type == BlockKind.TRIGGER:
            others = FlowBlock.objects.filter(
                flow_id=self.flow_id,
                block_type=BlockKind.TRIGGER
            ).exclude(pk=self.pk)
            if others.exists():
                raise ValidationError("A flow can have at most one trigger block")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.pk,
            'kind': self.block_type,
            'name': self.name,
            'config': self.config,
        }


class FlowJobQuerySet(models.QuerySet):

    def recent(self):
        return self.order_by('-created_at')

    def by_organization(self, organization):
        return self.filter(organization=organization)

    def with_status(self, status):
        return self.filter(status=status)


class FlowJob(models.Model):
    """
    One queued unit of asynchronous flow execution.

    Status only moves forward through TRANSITIONS. The single exception is
    failed -> running, used when the queue re-attempts the same job.
    """

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        QUEUED = 'queued', 'Queued'
        RUNNING = 'running', 'Running'
        COMPLETED = 'completed', 'Completed'
        FAILED = 'failed', 'Failed'
        CANCELLED = 'cancelled', 'Cancelled'

    TRANSITIONS = {
        'pending': {'queued', 'running', 'cancelled'},
        'queued': {'running', 'cancelled'},
        'running': {'completed', 'failed', 'cancelled'},
        'failed': {'running'},
        'completed': set(),
        'cancelled': set(),
    }

    flow = models.ForeignKey(
        Flow,
        on_delete=models.CASCADE,
        related_name='jobs'
    )
    organization = models.ForeignKey(
        'crm.Organization',
        on_delete=models.CASCADE,
        related_name='flow_jobs'
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True
    )
    job_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        db_index=True,
        help_text="Celery task id of the queued unit of work"
    )
    error_message = models.TextField(blank=True, null=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    retry_count = models.IntegerField(default=0)

    # What record triggered this flow
    trigger_record_type = models.ForeignKey(
        ContentType,
        on_delete=models.SET_NULL,
        null=True,
        blank=True
    )
    trigger_record_id = models.BigIntegerField(null=True, blank=True)
    trigger_record = GenericForeignKey('trigger_record_type', 'trigger_record_id')
    trigger_data = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = FlowJobQuerySet.as_manager()

    class Meta:
        verbose_name = "Flow Job"
        verbose_name_plural = "Flow Jobs"
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['flow', 'status'], name='flowjob_flow_status_idx'),
            models.Index(fields=['organization', 'created_at'], name='flowjob_org_created_idx'),
            models.Index(fields=['trigger_record_type', 'trigger_record_id'], name='flowjob_trigger_idx'),
        ]

    def __str__(self):
        return f"{self.flow.name} job #{self.pk} ({self.status})"

    @property
    def duration(self) -> Optional[float]:
        """Run duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def is_pending(self) -> bool:
        return self.status == self.Status.PENDING

    @property
    def is_queued(self) -> bool:
        return self.status == self.Status.QUEUED

    @property
    def is_running(self) -> bool:
        return self.status == self.Status.RUNNING

    @property
    def is_completed(self) -> bool:
        return self.status == self.Status.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == self.Status.FAILED

    @property
    def is_cancelled(self) -> bool:
        return self.status == self.Status.CANCELLED

    def can_transition_to(self, status: str) -> bool:
        return str(status) in self.TRANSITIONS.get(str(self.status), set())

    def transition_to(self, status: str, **fields):
        """Move to ``status`` and persist it with any extra ``fields``."""
        if not self.can_transition_to(status):
            raise InvalidJobTransition(self.pk, self.status, status)

        self.status = status
        for name, value in fields.items():
            setattr(self, name, value)
        self.save(update_fields=['status', 'updated_at', *fields.keys()])

    def mark_as_running(self):
        self.transition_to(self.Status.RUNNING, started_at=timezone.now())

    def mark_as_completed(self):
        self.transition_to(self.Status.COMPLETED, completed_at=timezone.now())

    def mark_as_failed(self, error_message: str):
        self.transition_to(
            self.Status.FAILED,
            error_message=error_message,
            completed_at=timezone.now()
        )

    def mark_as_cancelled(self):
        self.transition_to(self.Status.CANCELLED, completed_at=timezone.now())

    def increment_retry(self):
        self.retry_count = models.F('retry_count') + 1
        self.save(update_fields=['retry_count', 'updated_at'])
        self.refresh_from_db(fields=['retry_count'])

    def to_dict(self) -> Dict[str, Any]:
        record_type = self.trigger_record_type
        return {
            'id': self.pk,
            'flow_id': self.flow_id,
            'organization_id': self.organization_id,
            'status': self.status,
            'job_id': self.job_id,
            'error_message': self.error_message,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'retry_count': self.retry_count,
            'trigger_record_type': f"{record_type.app_label}.{record_type.model}" if record_type else None,
            'trigger_record_id': self.trigger_record_id,
            'trigger_data': self.trigger_data,
        }


class FlowExecution(models.Model):
    """
    Audit row for one flow run.

    Created as ``running`` when a run starts and finished once with either
    output data or structured error data.
    """

    EXECUTION_TYPE_CHOICES = [
        ('trigger', 'Trigger'),
        ('manual', 'Manual'),
    ]

    STATUS_CHOICES = [
        ('running', 'Running'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
    ]

    flow = models.ForeignKey(
        Flow,
        on_delete=models.CASCADE,
        related_name='executions'
    )
    flow_job = models.OneToOneField(
        FlowJob,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='execution'
    )
    user = models.ForeignKey(
        'auth.User',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='flow_executions'
    )
    execution_type = models.CharField(
        max_length=20,
        choices=EXECUTION_TYPE_CHOICES,
        default='trigger'
    )
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='running',
        db_index=True
    )
    attempts = models.IntegerField(default=1)

    input_data = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    output_data = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    error_data = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)

    started_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        verbose_name = "Flow Execution"
        verbose_name_plural = "Flow Executions"
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['flow', 'status'], name='flowexec_flow_status_idx'),
            models.Index(fields=['execution_type', 'created_at'], name='flowexec_type_created_idx'),
        ]

    def __str__(self):
        return f"{self.flow.name} - {self.execution_type} execution ({self.status})"

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def mark_completed(self, output_data: Dict[str, Any]):
        self.status = 'completed'
        self.completed_at = timezone.now()
        self.output_data = output_data
        self.save(update_fields=['status', 'completed_at', 'output_data'])

    def mark_failed(self, error_data: Dict[str, Any]):
        self.status = 'failed'
        self.completed_at = timezone.now()
        self.error_data = error_data
        self.save(update_fields=['status', 'completed_at', 'error_data'])

    def restart(self):
        """Reopen the row for a queue re-attempt of the same job."""
        self.status = 'running'
        self.attempts = models.F('attempts') + 1
        self.started_at = timezone.now()
        self.completed_at = None
        self.output_data = {}
        self.error_data = {}
        self.save(update_fields=[
            'status', 'attempts', 'started_at', 'completed_at', 'output_data', 'error_data'
        ])
        self.refresh_from_db(fields=['attempts'])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.pk,
            'flow_id': self.flow_id,
            'flow_job_id': self.flow_job_id,
            'execution_type': self.execution_type,
            'status': self.status,
            'attempts': self.attempts,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'input_data': self.input_data,
            'output_data': self.output_data,
            'error_data': self.error_data,
        }


class FlowExecutionLog(models.Model):
    """
    Per-block log rows of a flow execution (structured logging).
    """

    LOG_LEVEL_CHOICES = [
        ('DEBUG', 'Debug'),
        ('INFO', 'Info'),
        ('WARNING', 'Warning'),
        ('ERROR', 'Error'),
    ]

    execution = models.ForeignKey(
        FlowExecution,
        on_delete=models.CASCADE,
        related_name='logs'
    )
    block_id = models.BigIntegerField(null=True, blank=True)
    block_kind = models.CharField(max_length=30, blank=True, default='')

    level = models.CharField(max_length=10, choices=LOG_LEVEL_CHOICES, default='INFO')
    message = models.TextField()
    context = models.JSONField(
        default=dict,
        blank=True,
        encoder=DjangoJSONEncoder,
        help_text="Additional context data for the log entry"
    )

    timestamp = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        verbose_name = "Flow Execution Log"
        verbose_name_plural = "Flow Execution Logs"
        ordering = ['timestamp', 'id']
        indexes = [
            models.Index(fields=['execution', 'timestamp'], name='flowlog_exec_ts_idx'),
        ]

    def __str__(self):
        return f"[{self.level}] {self.block_kind or 'flow'}: {self.message[:50]}"
