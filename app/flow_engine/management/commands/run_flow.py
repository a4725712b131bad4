"""
Management command to run a flow manually.
"""
import json

from django.apps import apps
from django.core.management.base import BaseCommand, CommandError

from flow_engine.models import Flow
from flow_engine.services.runner import execute_flow


class Command(BaseCommand):
    help = 'Run a flow synchronously, optionally bound to a trigger record'

    def add_arguments(self, parser):
        parser.add_argument(
            'flow_id',
            type=int,
            help='ID of the flow to run'
        )
        parser.add_argument(
            '--record-type',
            type=str,
            help='Model label of the trigger record, e.g. crm.Pet'
        )
        parser.add_argument(
            '--record-id',
            type=int,
            help='Primary key of the trigger record'
        )
        parser.add_argument(
            '--var',
            action='append',
            default=[],
            metavar='NAME=VALUE',
            help='Initial variable binding; VALUE is parsed as JSON when possible'
        )

    def handle(self, *args, **options):
        flow_id = options['flow_id']

        try:
            flow = Flow.objects.select_related('organization').get(id=flow_id)
        except Flow.DoesNotExist:
            raise CommandError(f'Flow {flow_id} does not exist')

        record = self.load_record(options['record_type'], options['record_id'])
        variables = self.parse_variables(options['var'])

        try:
            result = execute_flow(flow, trigger_record=record, variables=variables)
        except Exception as e:
            raise CommandError(f'Flow {flow_id} failed: {type(e).__name__}: {e}')

        if not result.get('success'):
            self.stdout.write(self.style.WARNING(result.get('message', 'Flow did not run')))
            return

        self.stdout.write(
            self.style.SUCCESS(
                f'Flow "{flow.name}" completed: {result["blocks_executed"]} blocks executed'
            )
        )
        for action in result.get('actions', []):
            self.stdout.write(f'  action: {action["kind"]} (block {action["block_id"]})')
        if result.get('variables'):
            self.stdout.write(f'Variables: {json.dumps(result["variables"], default=str)}')

    def load_record(self, record_type, record_id):
        if not record_type and record_id is None:
            return None
        if not record_type or record_id is None:
            raise CommandError('--record-type and --record-id must be given together')

        try:
            model = apps.get_model(record_type)
        except (LookupError, ValueError):
            raise CommandError(f'Unknown record type {record_type}')

        try:
            return model._default_manager.get(pk=record_id)
        except model.DoesNotExist:
            raise CommandError(f'{record_type} {record_id} does not exist')

    def parse_variables(self, pairs):
        variables = {}
        for pair in pairs:
            name, sep, raw = pair.partition('=')
            if not sep or not name:
                raise CommandError(f'Invalid --var {pair!r}, expected NAME=VALUE')
            try:
                variables[name] = json.loads(raw)
            except json.JSONDecodeError:
                variables[name] = raw
        return variables
