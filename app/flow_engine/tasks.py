"""
Celery tasks for flow execution.
"""
import logging

from celery import shared_task

from flow_engine.conf import get_setting
from flow_engine.models import FlowJob
from flow_engine.services.lifecycle import JobLifecycle

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    max_retries=get_setting('MAX_ATTEMPTS') - 1,
    retry_backoff=True,
    retry_backoff_max=get_setting('RETRY_BACKOFF_MAX'),
)
def execute_flow_job_task(self, flow_job_id: int):
    """
    Execute one attempt of a FlowJob.

    Any exception is recorded on the job and re-raised, and Celery retries
    with exponential backoff until the attempts are used up. Every attempt
    runs the whole flow again from its trigger block.

    Args:
        flow_job_id: ID of the FlowJob to execute
    """
    try:
        flow_job = FlowJob.objects.select_related('flow', 'flow__organization').get(id=flow_job_id)
    except FlowJob.DoesNotExist:
        logger.error(f"FlowJob {flow_job_id} not found")
        return None

    if not flow_job.can_transition_to(FlowJob.Status.RUNNING):
        logger.warning(f"Skipping flow job {flow_job_id} in status '{flow_job.status}'")
        return {
            'flow_job_id': flow_job_id,
            'status': flow_job.status,
            'skipped': True
        }

    if self.request.retries:
        flow_job.increment_retry()

    result = JobLifecycle().run(flow_job, queue_job_id=self.request.id)

    return {
        'flow_job_id': flow_job_id,
        'status': flow_job.status,
        'success': result.get('success', False)
    }
