"""
Trigger evaluation.

Decides which of an organization's flows a mutated record starts, and queues
one FlowJob per matching flow.
"""
import logging
from typing import List

from django.contrib.contenttypes.models import ContentType
from django.db import transaction
from django.utils import timezone

from flow_engine.models import Flow, FlowJob
from flow_engine.schemas import TriggerConfig
from flow_engine.services.accessors import accessor_for, object_type_for
from flow_engine.services.conditions import evaluate_all
from flow_engine.services.lifecycle import JobLifecycle

logger = logging.getLogger(__name__)


class FlowTriggerService:
    """
    Matches records against flow trigger blocks.
    """

    def __init__(self, lifecycle: JobLifecycle = None):
        self.lifecycle = lifecycle or JobLifecycle()

    def candidate_flows(self, organization):
        """Active flows of the organization that have a trigger block."""
        return Flow.objects.active().with_trigger().filter(
            organization=organization
        ).select_related('organization')

    def check_and_trigger(self, record, organization) -> List[FlowJob]:
        """
        Create and queue a FlowJob for every flow whose trigger fires.

        A failure while evaluating one flow is logged and does not stop the
        evaluation of the others. Each flow is matched inside its own
        savepoint so a database error only rolls back that flow.
        """
        jobs = []

        for flow in self.candidate_flows(organization):
            try:
                with transaction.atomic():
                    flow_job = self.match_flow(flow, record, organization)
                if flow_job is None:
                    continue

                self.lifecycle.enqueue(flow_job)
                jobs.append(flow_job)
            except Exception as e:
                logger.error(
                    f"Trigger evaluation failed for flow {flow.pk} ({flow.name}) "
                    f"on {record._meta.label} #{record.pk}: {e}",
                    exc_info=True
                )

        return jobs

    def match_flow(self, flow, record, organization):
        """The pending FlowJob created when the flow's trigger fires, else None."""
        trigger_block = flow.trigger_block()
        if trigger_block is None:
            return None

        if not self.evaluate_trigger(trigger_block, record, organization):
            return None

        return self.create_flow_job(flow, record, organization)

    def evaluate_trigger(self, trigger_block, record, organization) -> bool:
        """
        True when the record is of the trigger's object type and every
        trigger condition passes (no conditions means always).
        """
        config = TriggerConfig.model_validate(trigger_block.config)

        object_type = object_type_for(organization, config.object_api_name)
        if object_type is None or not object_type.matches(record):
            return False

        if not config.conditions:
            return True

        return evaluate_all(config.conditions, record=accessor_for(record))

    def create_flow_job(self, flow, record, organization) -> FlowJob:
        record_type = ContentType.objects.get_for_model(record)

        flow_job = FlowJob.objects.create(
            flow=flow,
            organization=organization,
            status=FlowJob.Status.PENDING,
            trigger_record_type=record_type,
            trigger_record_id=record.pk,
            trigger_data={
                'record_id': record.pk,
                'record_type': record._meta.label,
                'triggered_at': timezone.now(),
            }
        )

        logger.info(
            f"Flow '{flow.name}' triggered by {record._meta.label} #{record.pk} "
            f"(job {flow_job.pk})"
        )

        return flow_job


def on_record_mutated(record, organization) -> List[FlowJob]:
    """Entry point called whenever a record is created or updated."""
    return FlowTriggerService().check_and_trigger(record, organization)
