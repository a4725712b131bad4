"""
FlowJob lifecycle.

Queues FlowJobs on Celery and moves them through their status state machine
while the worker runs the flow, recording the outcome on both the job and its
FlowExecution audit row.
"""
import logging
import traceback
from typing import Any, Dict, List, Optional

from django.utils import timezone

from flow_engine.conf import get_setting
from flow_engine.models import FlowExecution, FlowJob
from flow_engine.services.interpreter import FlowInterpreter

logger = logging.getLogger(__name__)


def backtrace(exc: BaseException, limit: int) -> List[str]:
    """The innermost ``limit`` frames of an exception's traceback."""
    frames = traceback.extract_tb(exc.__traceback__)[-limit:] if limit else []
    return [f'File "{f.filename}", line {f.lineno}, in {f.name}' for f in frames]


def format_error(exc: BaseException, limit: Optional[int] = None) -> str:
    """``Class: message`` followed by a truncated backtrace."""
    if limit is None:
        limit = get_setting('JOB_ERROR_BACKTRACE_LIMIT')
    lines = [f"{type(exc).__name__}: {exc}"]
    lines.extend(backtrace(exc, limit))
    return "\n".join(lines)


def error_payload(exc: BaseException, limit: Optional[int] = None) -> Dict[str, Any]:
    """Structured error data for a FlowExecution."""
    if limit is None:
        limit = get_setting('EXECUTION_ERROR_BACKTRACE_LIMIT')
    return {
        'message': str(exc),
        'class': type(exc).__name__,
        'backtrace': backtrace(exc, limit),
    }


class JobLifecycle:
    """
    Status bookkeeping for FlowJobs around one queued execution attempt.
    """

    def enqueue(self, flow_job: FlowJob) -> Optional[str]:
        """
        Submit the job to Celery and mark it queued.

        Returns the Celery task id when the result handle exposes one.
        """
        from flow_engine.tasks import execute_flow_job_task

        result = execute_flow_job_task.delay(flow_job.pk)
        queue_job_id = getattr(result, 'id', None)

        # A worker may already have picked the job up
        updated = FlowJob.objects.filter(
            pk=flow_job.pk,
            status=FlowJob.Status.PENDING
        ).update(
            status=FlowJob.Status.QUEUED,
            job_id=queue_job_id,
            updated_at=timezone.now()
        )
        flow_job.refresh_from_db(fields=['status', 'job_id'])

        if updated:
            logger.info(f"Queued flow job {flow_job.pk} as task {queue_job_id}")
        return queue_job_id

    def mark_running(self, flow_job: FlowJob, queue_job_id: str = None):
        fields = {'started_at': timezone.now()}
        if queue_job_id:
            fields['job_id'] = queue_job_id
        flow_job.transition_to(FlowJob.Status.RUNNING, **fields)

    def mark_completed(self, flow_job: FlowJob, execution: FlowExecution, result: Dict[str, Any]):
        flow_job.mark_as_completed()
        execution.mark_completed(result)
        logger.info(f"Flow job {flow_job.pk} completed")

    def mark_failed(self, flow_job: FlowJob, execution: Optional[FlowExecution], exc: BaseException):
        if execution is not None:
            execution.mark_failed(error_payload(exc))

        # The job may have been cancelled while the flow was running
        flow_job.refresh_from_db(fields=['status'])
        if not flow_job.can_transition_to(FlowJob.Status.FAILED):
            logger.warning(
                f"Flow job {flow_job.pk} is '{flow_job.status}', not recording failure: "
                f"{type(exc).__name__}: {exc}"
            )
            return

        flow_job.mark_as_failed(format_error(exc))
        logger.error(f"Flow job {flow_job.pk} failed: {type(exc).__name__}: {exc}")

    def start_execution(self, flow_job: FlowJob) -> FlowExecution:
        """
        The job's FlowExecution row, created on the first attempt and
        reopened on later ones.
        """
        execution = FlowExecution.objects.filter(flow_job=flow_job).first()
        if execution is not None:
            execution.restart()
            return execution

        trigger_data = flow_job.trigger_data or {}
        return FlowExecution.objects.create(
            flow=flow_job.flow,
            flow_job=flow_job,
            user=None,
            execution_type='trigger',
            status='running',
            started_at=timezone.now(),
            input_data={
                'trigger_record_type': trigger_data.get('record_type'),
                'trigger_record_id': flow_job.trigger_record_id,
                'trigger_data': trigger_data,
            }
        )

    def load_trigger_record(self, flow_job: FlowJob):
        """The record that triggered the job, or None when it is gone."""
        if flow_job.trigger_record_type_id is None or flow_job.trigger_record_id is None:
            return None

        try:
            model = flow_job.trigger_record_type.model_class()
            record = model._default_manager.filter(pk=flow_job.trigger_record_id).first()
        except Exception as e:
            logger.warning(f"Could not load trigger record for flow job {flow_job.pk}: {e}")
            return None

        if record is None:
            logger.warning(
                f"Trigger record {flow_job.trigger_record_type} #{flow_job.trigger_record_id} "
                f"no longer exists (flow job {flow_job.pk})"
            )
        return record

    def run(self, flow_job: FlowJob, queue_job_id: str = None) -> Dict[str, Any]:
        """
        Execute one attempt of a FlowJob.

        Failures are recorded on the job and its execution, then re-raised so
        the queue can retry.
        """
        self.mark_running(flow_job, queue_job_id=queue_job_id)
        execution = None

        try:
            execution = self.start_execution(flow_job)
            trigger_record = self.load_trigger_record(flow_job)
            result = FlowInterpreter(flow_job.flow, execution, trigger_record).execute()
        except Exception as e:
            self.mark_failed(flow_job, execution, e)
            raise

        self.mark_completed(flow_job, execution, result)
        return result
