"""
Management command to check flow job status.
"""
from django.core.management.base import BaseCommand, CommandError

from flow_engine.models import FlowJob
from flow_engine.utils import latest_execution_for_job


class Command(BaseCommand):
    help = 'Check the status of a flow job'

    def add_arguments(self, parser):
        parser.add_argument(
            'flow_job_id',
            type=int,
            help='ID of the flow job'
        )
        parser.add_argument(
            '--logs',
            action='store_true',
            help='Show the execution log entries'
        )

    def handle(self, *args, **options):
        flow_job_id = options['flow_job_id']

        try:
            flow_job = FlowJob.objects.select_related('flow', 'organization').get(id=flow_job_id)
        except FlowJob.DoesNotExist:
            raise CommandError(f'Flow job {flow_job_id} does not exist')

        self.stdout.write(self.style.SUCCESS(f'\n=== Flow Job {flow_job.id} ==='))
        self.stdout.write(f'Flow: {flow_job.flow.name}')
        self.stdout.write(f'Organization: {flow_job.organization.name}')
        self.stdout.write(f'Status: {flow_job.status}')
        self.stdout.write(f'Queue Job ID: {flow_job.job_id or "-"}')
        self.stdout.write(f'Retries: {flow_job.retry_count}')
        if flow_job.trigger_record_type_id:
            self.stdout.write(
                f'Trigger: {flow_job.trigger_record_type.app_label}.{flow_job.trigger_record_type.model} '
                f'#{flow_job.trigger_record_id}'
            )
        self.stdout.write(f'Created: {flow_job.created_at}')

        if flow_job.started_at:
            self.stdout.write(f'Started: {flow_job.started_at}')

        if flow_job.completed_at:
            self.stdout.write(f'Completed: {flow_job.completed_at}')
            if flow_job.duration:
                self.stdout.write(f'Duration: {flow_job.duration:.2f}s')

        if flow_job.error_message:
            self.stdout.write(self.style.ERROR(f'\nError: {flow_job.error_message}'))

        execution = latest_execution_for_job(flow_job)
        if execution is None:
            self.stdout.write('\nNo execution recorded')
            return

        self.stdout.write('\n=== Execution ===')
        self.stdout.write(f'Execution: {execution.id}')
        self.stdout.write(f'Status: {execution.status}')
        self.stdout.write(f'Attempts: {execution.attempts}')
        output = execution.output_data or {}
        if 'blocks_executed' in output:
            self.stdout.write(f'Blocks executed: {output["blocks_executed"]}')

        if not options['logs']:
            return

        self.stdout.write('\n=== Logs ===')
        for entry in execution.logs.order_by('timestamp', 'id'):
            level_style = {
                'error': self.style.ERROR,
                'warning': self.style.WARNING,
            }.get(entry.level.lower(), lambda x: x)

            block = f' [{entry.block_kind} {entry.block_id}]' if entry.block_id else ''
            self.stdout.write(f'  {level_style(entry.level)}{block} {entry.message[:200]}')
