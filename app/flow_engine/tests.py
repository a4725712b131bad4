"""
Tests for flow engine.

Run with:
    python manage.py test flow_engine --settings=web.settings.test
"""
from datetime import date
from io import StringIO
from unittest.mock import MagicMock, patch

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.core.management import CommandError, call_command
from django.test import TestCase, override_settings

from crm.models import CustomField, CustomObject, CustomRecord, Organization, Pet, Task
from flow_engine.exceptions import FlowCycleError, FlowDepthExceeded, InvalidJobTransition
from flow_engine.models import BlockKind, Connection, Flow, FlowBlock, FlowExecution, FlowJob
from flow_engine.services.accessors import (
    DynamicRecordAccessor,
    StaticRecordAccessor,
    accessor_for,
    object_type_for,
)
from flow_engine.services.conditions import evaluate_condition, resolve_value
from flow_engine.services.context import ExecutionContext
from flow_engine.services.interpreter import FlowInterpreter
from flow_engine.services.lifecycle import JobLifecycle, error_payload, format_error
from flow_engine.services.runner import execute_flow
from flow_engine.services.triggers import FlowTriggerService
from flow_engine.signals import action_requested
from flow_engine.tasks import execute_flow_job_task
from flow_engine.utils import get_flow_job_statistics, latest_execution_for_job, visualize_flow


def add_block(flow, kind, config=None, name=''):
    return FlowBlock.objects.create(
        flow=flow,
        block_type=kind,
        name=name,
        config_data=config or {},
        position=flow.blocks.count()
    )


def connect(flow, *edges):
    """Set the flow's connections from (source, target[, label]) tuples."""
    data = []
    for edge in edges:
        connection = {'from': edge[0].pk, 'to': edge[1].pk}
        if len(edge) > 2:
            connection['label'] = edge[2]
        data.append(connection)
    flow.connections_data = data
    flow.save(update_fields=['connections_data'])


def assign(variable, value):
    return {'assignments': [{'variable': variable, 'value': value}]}


class ConditionTestCase(TestCase):
    """Test value resolution and condition operators."""

    def setUp(self):
        self.organization = Organization.objects.create(name='Happy Tails')
        self.pet = Pet.objects.create(
            organization=self.organization,
            name='Biscuit',
            status='available',
            breed='Labrador Retriever',
            entered_shelter=date(2024, 1, 10)
        )
        self.record = accessor_for(self.pet)

    def test_resolve_variable_reference(self):
        """Test that $name resolves to the variable and unknown names stay literal."""
        context = ExecutionContext(variables={'count': 5})

        self.assertEqual(resolve_value('$count', context), 5)
        self.assertEqual(resolve_value('$missing', context), '$missing')
        self.assertEqual(resolve_value('plain', context), 'plain')
        self.assertEqual(resolve_value(7, context), 7)

    def test_resolution_is_single_level(self):
        """Test that a resolved value is not resolved again."""
        context = ExecutionContext(variables={'a': '$b', 'b': 1})

        self.assertEqual(resolve_value('$a', context), '$b')

    def test_equals_is_type_sensitive(self):
        """Test that equals does not coerce between strings and numbers."""
        context = ExecutionContext(variables={'x': 5})

        self.assertTrue(evaluate_condition({'field': 'x', 'operator': 'equals', 'value': 5}, context))
        self.assertFalse(evaluate_condition({'field': 'x', 'operator': 'equals', 'value': '5'}, context))
        self.assertTrue(evaluate_condition({'field': 'x', 'operator': 'not_equals', 'value': '5'}, context))

    def test_equals_with_variable_reference(self):
        """Test that comparing with a reference equals comparing with its value."""
        context = ExecutionContext(variables={'wanted': 'available'})

        by_reference = evaluate_condition(
            {'field': 'status', 'operator': 'equals', 'value': '$wanted'}, context, self.record
        )
        by_literal = evaluate_condition(
            {'field': 'status', 'operator': 'equals', 'value': 'available'}, context, self.record
        )
        self.assertTrue(by_reference)
        self.assertEqual(by_reference, by_literal)

    def test_numeric_comparison(self):
        context = ExecutionContext(variables={'x': 5})

        self.assertTrue(evaluate_condition({'field': 'x', 'operator': 'greater_than', 'value': 3}, context))
        self.assertFalse(evaluate_condition({'field': 'x', 'operator': 'less_than', 'value': 3}, context))
        self.assertTrue(evaluate_condition({'field': 'x', 'operator': 'greater_than_or_equal', 'value': 5}, context))
        self.assertTrue(evaluate_condition({'field': 'x', 'operator': 'less_than_or_equal', 'value': 5.5}, context))

    def test_mixed_operands_compare_as_strings(self):
        """Test that a number against a string falls back to lexical order."""
        context = ExecutionContext(variables={'x': 9})

        self.assertTrue(evaluate_condition({'field': 'x', 'operator': 'greater_than', 'value': '10'}, context))

    def test_date_comparison(self):
        """Test that date fields compare against ISO strings as dates."""
        self.assertTrue(evaluate_condition(
            {'field': 'entered_shelter', 'operator': 'greater_than', 'value': '2024-01-01'},
            record=self.record
        ))
        self.assertFalse(evaluate_condition(
            {'field': 'entered_shelter', 'operator': 'greater_than', 'value': '2024-02-01T00:00:00'},
            record=self.record
        ))

    def test_uncomparable_date_fails_closed(self):
        self.assertFalse(evaluate_condition(
            {'field': 'entered_shelter', 'operator': 'less_than', 'value': 'someday'},
            record=self.record
        ))

    def test_text_operators_ignore_case(self):
        for operator, value, expected in [
            ('contains', 'labrador', True),
            ('not_contains', 'poodle', True),
            ('starts_with', 'LAB', True),
            ('ends_with', 'retriever', True),
            ('starts_with', 'retriever', False),
        ]:
            with self.subTest(operator=operator, value=value):
                self.assertEqual(
                    evaluate_condition({'field': 'breed', 'operator': operator, 'value': value}, record=self.record),
                    expected
                )

    def test_blank_checks(self):
        context = ExecutionContext(variables={'none': None, 'empty': '', 'spaces': '  ', 'text': 'x'})

        for field in ['none', 'empty', 'spaces', 'undefined']:
            with self.subTest(field=field):
                self.assertTrue(evaluate_condition({'field': field, 'operator': 'is_empty'}, context))
        self.assertTrue(evaluate_condition({'field': 'text', 'operator': 'is_not_empty'}, context))

    def test_unknown_operator_fails_closed(self):
        """Test that unknown operators and malformed conditions are false."""
        self.assertFalse(evaluate_condition(
            {'field': 'status', 'operator': 'roughly', 'value': 'available'}, record=self.record
        ))
        self.assertFalse(evaluate_condition({'operator': 'equals', 'value': 'x'}, record=self.record))
        self.assertFalse(evaluate_condition('not a condition', record=self.record))

    def test_record_takes_precedence_over_variables(self):
        """Test that variables are only read when no record is bound."""
        context = ExecutionContext(trigger_record=self.record, variables={'status': 'adopted'})

        self.assertTrue(evaluate_condition({'field': 'status', 'operator': 'equals', 'value': 'available'}, context))


class RecordAccessorTestCase(TestCase):
    """Test static and dynamic record accessors."""

    def setUp(self):
        self.organization = Organization.objects.create(name='Happy Tails')
        self.other_organization = Organization.objects.create(name='Paws Place')
        self.pet = Pet.objects.create(organization=self.organization, name='Biscuit')

        self.donations = CustomObject.objects.create(
            organization=self.organization,
            name='Donation',
            api_name='donations'
        )
        CustomField.objects.create(
            custom_object=self.donations,
            name='Amount',
            api_name='amount',
            field_type='number'
        )
        self.donation = CustomRecord.objects.create(custom_object=self.donations, name='Spring gift')

    def test_accessor_for_picks_variant(self):
        self.assertIsInstance(accessor_for(self.pet), StaticRecordAccessor)
        self.assertIsInstance(accessor_for(self.donation), DynamicRecordAccessor)
        self.assertIsNone(accessor_for(None))

    def test_static_unknown_field(self):
        """Test that unknown fields read None and refuse writes."""
        record = accessor_for(self.pet)

        self.assertIsNone(record.get_field('favourite_toy'))
        self.assertFalse(record.set_field('favourite_toy', 'ball'))
        self.assertFalse(record.set_field('id', 99))
        self.assertTrue(record.set_field('status', 'adopted'))
        record.save()

        self.pet.refresh_from_db()
        self.assertEqual(self.pet.status, 'adopted')

    def test_static_organization_is_not_writable(self):
        """Test that a record cannot be moved to another organization."""
        record = accessor_for(self.pet)

        self.assertFalse(record.set_field('organization_id', self.other_organization.pk))
        self.assertFalse(record.set_field('organization', self.other_organization))
        record.save()

        self.pet.refresh_from_db()
        self.assertEqual(self.pet.organization, self.organization)

    def test_dynamic_write_is_buffered_until_save(self):
        record = accessor_for(self.donation)

        self.assertTrue(record.set_field('amount', 250))
        self.assertFalse(record.set_field('currency', 'EUR'))
        self.assertEqual(record.get_field('amount'), 250)
        self.assertIsNone(self.donation.field_value('amount'))

        record.save()

        self.assertEqual(self.donation.field_value('amount'), 250)
        self.assertEqual(record.get_field('amount'), 250)

    def test_dynamic_column_fields(self):
        record = accessor_for(self.donation)

        self.assertEqual(record.get_field('name'), 'Spring gift')
        self.assertEqual(record.get_field('external_id'), self.donation.external_id)
        self.assertFalse(record.set_field('external_id', 'abc'))
        self.assertTrue(record.set_field('name', 'Summer gift'))

    def test_object_type_resolution(self):
        self.assertIsNone(object_type_for(self.organization, 'unicorns'))
        self.assertIsNone(object_type_for(self.organization, None))
        self.assertTrue(object_type_for(self.organization, 'pets').matches(self.pet))
        self.assertTrue(object_type_for(self.organization, 'donations').matches(self.donation))
        self.assertFalse(object_type_for(self.organization, 'tasks').matches(self.pet))
        # Custom objects are per organization
        self.assertIsNone(object_type_for(self.other_organization, 'donations'))

    def test_find_is_scoped_to_organization(self):
        pets = object_type_for(self.organization, 'pets')
        other_pets = object_type_for(self.other_organization, 'pets')

        self.assertEqual(pets.find(self.pet.pk).pk, self.pet.pk)
        self.assertIsNone(other_pets.find(self.pet.pk))
        self.assertIsNone(pets.find('not-an-id'))
        self.assertIsNone(pets.find(None))


class FlowModelTestCase(TestCase):
    """Test Flow, FlowBlock and FlowJob models."""

    def setUp(self):
        self.organization = Organization.objects.create(name='Happy Tails')
        self.flow = Flow.objects.create(organization=self.organization, name='Intake')
        self.trigger = add_block(self.flow, BlockKind.TRIGGER, {'objectApiName': 'pets'})
        self.email = add_block(self.flow, BlockKind.EMAIL, {'to': 'staff@example.org'})

    def test_connection_dict_shape(self):
        """Test that the label key is only written when set."""
        self.assertEqual(Connection(1, 2).to_dict(), {'from': 1, 'to': 2})
        self.assertEqual(Connection(1, 2, 'yes').to_dict(), {'from': 1, 'to': 2, 'label': 'yes'})
        self.assertEqual(Connection.from_dict({'from': 1, 'to': 2}), Connection(1, 2))

    def test_connection_keeps_explicit_null_label(self):
        """Test that a stored null label survives a load and dump."""
        data = {'from': 1, 'to': 2, 'label': None}
        connection = Connection.from_dict(data)

        self.assertEqual(connection.to_dict(), data)
        self.assertFalse(connection.is_labeled)
        self.assertEqual(connection, Connection(1, 2))

    def test_block_dict_shape(self):
        self.assertEqual(
            self.email.to_dict(),
            {'id': self.email.pk, 'kind': 'email', 'name': '', 'config': {'to': 'staff@example.org'}}
        )

    def test_connections_must_stay_inside_flow(self):
        other_flow = Flow.objects.create(organization=self.organization, name='Other')
        stranger = add_block(other_flow, BlockKind.EMAIL)

        connect(self.flow, (self.trigger, self.email))
        self.flow.full_clean()

        connect(self.flow, (self.trigger, stranger))
        with self.assertRaises(ValidationError):
            self.flow.full_clean()

    def test_single_trigger_block(self):
        second = FlowBlock(flow=self.flow, block_type=BlockKind.TRIGGER, config_data={'objectApiName': 'tasks'})

        with self.assertRaises(ValidationError):
            second.full_clean()

    def test_job_transitions_only_move_forward(self):
        """Test that backward status changes are rejected."""
        job = FlowJob.objects.create(flow=self.flow, organization=self.organization)

        job.transition_to(FlowJob.Status.QUEUED)
        with self.assertRaises(InvalidJobTransition):
            job.transition_to(FlowJob.Status.PENDING)

        job.mark_as_running()
        job.mark_as_completed()
        self.assertTrue(job.is_completed)
        self.assertIsNotNone(job.duration)

        for status in [FlowJob.Status.RUNNING, FlowJob.Status.FAILED, FlowJob.Status.QUEUED]:
            with self.subTest(status=status):
                with self.assertRaises(InvalidJobTransition):
                    job.transition_to(status)

        job.refresh_from_db()
        self.assertEqual(job.status, FlowJob.Status.COMPLETED)

    def test_job_to_dict(self):
        pet = Pet.objects.create(organization=self.organization, name='Biscuit')
        job = FlowJob.objects.create(
            flow=self.flow,
            organization=self.organization,
            trigger_record=pet,
            trigger_data={'record_id': pet.pk}
        )

        data = job.to_dict()
        self.assertEqual(data['status'], 'pending')
        self.assertEqual(data['trigger_record_type'], 'crm.pet')
        self.assertEqual(data['trigger_record_id'], pet.pk)
        self.assertEqual(job.trigger_record, pet)


class FlowInterpreterTestCase(TestCase):
    """Test graph traversal and block handlers."""

    def setUp(self):
        self.organization = Organization.objects.create(name='Happy Tails')
        self.pet = Pet.objects.create(organization=self.organization, name='Biscuit', status='available')
        self.flow = Flow.objects.create(organization=self.organization, name='Adoption')
        self.trigger = add_block(self.flow, BlockKind.TRIGGER, {'objectApiName': 'pets', 'conditions': []})

    def test_no_trigger_block(self):
        """Test that a flow without a trigger returns a failure result."""
        flow = Flow.objects.create(organization=self.organization, name='Empty')
        add_block(flow, BlockKind.EMAIL)

        result = FlowInterpreter(flow).execute()

        self.assertEqual(result, {'success': False, 'message': 'No trigger block found'})

    def test_decision_follows_first_matching_outcome(self):
        """Test that only the first matching outcome's label path runs."""
        decision = add_block(self.flow, BlockKind.DECISION, {'outcomes': [
            {'label': 'A', 'conditions': [{'field': 'status', 'operator': 'equals', 'value': 'available'}]},
            {'label': 'B', 'conditions': []},
        ]})
        branch_a = add_block(self.flow, BlockKind.ASSIGNMENT, assign('branch_a', True))
        branch_b = add_block(self.flow, BlockKind.ASSIGNMENT, assign('branch_b', True))
        default = add_block(self.flow, BlockKind.ASSIGNMENT, assign('default', True))
        connect(
            self.flow,
            (self.trigger, decision),
            (decision, branch_a, 'A'),
            (decision, branch_b, 'B'),
            (decision, default),
        )

        result = FlowInterpreter(self.flow, trigger_record=self.pet).execute()

        self.assertTrue(result['success'])
        self.assertEqual(result['variables'], {'branch_a': True})
        self.assertEqual(result['blocks_executed'], 3)

    def test_decision_without_match_takes_unlabeled_path(self):
        decision = add_block(self.flow, BlockKind.DECISION, {'outcomes': [
            {'label': 'A', 'conditions': [{'field': 'status', 'operator': 'equals', 'value': 'adopted'}]},
        ]})
        branch_a = add_block(self.flow, BlockKind.ASSIGNMENT, assign('branch_a', True))
        default = add_block(self.flow, BlockKind.ASSIGNMENT, assign('default', True))
        connect(
            self.flow,
            (self.trigger, decision),
            (decision, branch_a, 'A'),
            (decision, default),
        )

        result = FlowInterpreter(self.flow, trigger_record=self.pet).execute()

        self.assertEqual(result['variables'], {'default': True})

    def test_null_lists_in_config_are_empty(self):
        """Test that null conditions, assignments and mappings act like empty ones."""
        decision = add_block(self.flow, BlockKind.DECISION, {'outcomes': [
            {'label': 'A', 'conditions': None},
        ]})
        branch_a = add_block(self.flow, BlockKind.ASSIGNMENT, assign('branch_a', True))
        nothing = add_block(self.flow, BlockKind.ASSIGNMENT, {'assignments': None})
        update = add_block(self.flow, BlockKind.UPDATE_RECORD, {
            'objectApiName': 'pets',
            'recordId': self.pet.pk,
            'fieldMappings': None,
        })
        connect(
            self.flow,
            (self.trigger, decision),
            (decision, branch_a, 'A'),
            (branch_a, nothing),
            (nothing, update),
        )

        result = FlowInterpreter(self.flow, trigger_record=self.pet).execute()

        self.assertTrue(result['success'])
        self.assertEqual(result['variables'], {'branch_a': True})
        self.assertEqual(result['blocks_executed'], 5)

    def test_decision_without_outcomes(self):
        decision = add_block(self.flow, BlockKind.DECISION, {'outcomes': None})
        default = add_block(self.flow, BlockKind.ASSIGNMENT, assign('default', True))
        connect(self.flow, (self.trigger, decision), (decision, default))

        result = FlowInterpreter(self.flow, trigger_record=self.pet).execute()

        self.assertEqual(result['variables'], {'default': True})

    def test_update_missing_record_continues(self):
        """Test that updating a missing record is a no-op and traversal continues."""
        update = add_block(self.flow, BlockKind.UPDATE_RECORD, {
            'objectApiName': 'pets',
            'recordId': 999999,
            'fieldMappings': {'status': 'adopted'},
        })
        after = add_block(self.flow, BlockKind.ASSIGNMENT, assign('reached', True))
        connect(self.flow, (self.trigger, update), (update, after))

        result = FlowInterpreter(self.flow, trigger_record=self.pet).execute()

        self.assertTrue(result['success'])
        self.assertEqual(result['variables'], {'reached': True})
        self.pet.refresh_from_db()
        self.assertEqual(self.pet.status, 'available')

    def test_variables_feed_later_conditions(self):
        """Test that an assigned variable is readable when no record is bound."""
        assignment = add_block(self.flow, BlockKind.ASSIGNMENT, assign('x', 5))
        decision = add_block(self.flow, BlockKind.DECISION, {'outcomes': [
            {'label': 'big', 'conditions': [{'field': 'x', 'operator': 'greater_than', 'value': 3}]},
        ]})
        big = add_block(self.flow, BlockKind.ASSIGNMENT, assign('size', 'big'))
        connect(self.flow, (self.trigger, assignment), (assignment, decision), (decision, big, 'big'))

        result = FlowInterpreter(self.flow).execute()

        self.assertEqual(result['variables'], {'x': 5, 'size': 'big'})

    def test_leaf_block_ends_run_quietly(self):
        """Test that a block without outgoing connections ends the run without warnings."""
        api_call = add_block(self.flow, BlockKind.API_CALL, {'url': 'https://example.org/hook'})
        add_block(self.flow, BlockKind.EMAIL)
        connect(self.flow, (self.trigger, api_call))

        with self.assertNoLogs('flow_engine', level='WARNING'):
            result = FlowInterpreter(self.flow, trigger_record=self.pet).execute()

        self.assertTrue(result['success'])
        self.assertEqual(result['blocks_executed'], 2)
        self.assertEqual([a['kind'] for a in result['actions']], ['api_call'])

    def test_unknown_block_kind_is_skipped(self):
        mystery = add_block(self.flow, 'teleport')
        after = add_block(self.flow, BlockKind.ASSIGNMENT, assign('reached', True))
        connect(self.flow, (self.trigger, mystery), (mystery, after))

        with self.assertLogs('flow_engine', level='WARNING') as logs:
            result = FlowInterpreter(self.flow).execute()

        self.assertTrue(any('teleport' in line for line in logs.output))
        self.assertEqual(result['variables'], {'reached': True})

    def test_cycle_is_detected(self):
        first = add_block(self.flow, BlockKind.ASSIGNMENT, assign('a', 1))
        second = add_block(self.flow, BlockKind.ASSIGNMENT, assign('b', 2))
        connect(self.flow, (self.trigger, first), (first, second), (second, first))

        with self.assertRaises(FlowCycleError) as raised:
            FlowInterpreter(self.flow).execute()

        self.assertEqual(raised.exception.block_id, first.pk)

    def test_diamond_is_not_a_cycle(self):
        """Test that a block reached by two paths runs once per path."""
        left = add_block(self.flow, BlockKind.ASSIGNMENT, assign('left', True))
        right = add_block(self.flow, BlockKind.ASSIGNMENT, assign('right', True))
        join = add_block(self.flow, BlockKind.NOTIFICATION, {'message': 'joined'})
        connect(
            self.flow,
            (self.trigger, left),
            (self.trigger, right),
            (left, join),
            (right, join),
        )

        result = FlowInterpreter(self.flow).execute()

        self.assertEqual(result['blocks_executed'], 5)
        self.assertEqual(len(result['actions']), 2)

    @override_settings(FLOW_ENGINE={'MAX_TRAVERSAL_DEPTH': 2})
    def test_depth_limit(self):
        first = add_block(self.flow, BlockKind.ASSIGNMENT, assign('a', 1))
        second = add_block(self.flow, BlockKind.ASSIGNMENT, assign('b', 2))
        connect(self.flow, (self.trigger, first), (first, second))

        with self.assertRaises(FlowDepthExceeded):
            FlowInterpreter(self.flow).execute()

    def test_create_record_resolves_variables(self):
        assignment = add_block(self.flow, BlockKind.ASSIGNMENT, assign('petName', 'Pepper'))
        create = add_block(self.flow, BlockKind.CREATE_RECORD, {
            'objectApiName': 'pets',
            'fieldMappings': {'name': '$petName', 'status': 'intake', 'favourite_toy': 'ball'},
        })
        connect(self.flow, (self.trigger, assignment), (assignment, create))

        FlowInterpreter(self.flow).execute()

        created = Pet.objects.get(name='Pepper')
        self.assertEqual(created.organization, self.organization)
        self.assertEqual(created.status, 'intake')

    def test_field_mappings_cannot_change_organization(self):
        """Test that created and updated records stay in the flow's organization."""
        other = Organization.objects.create(name='Paws Place')
        create = add_block(self.flow, BlockKind.CREATE_RECORD, {
            'objectApiName': 'pets',
            'fieldMappings': {'name': 'Pepper', 'organization_id': other.pk},
        })
        update = add_block(self.flow, BlockKind.UPDATE_RECORD, {
            'objectApiName': 'pets',
            'recordId': self.pet.pk,
            'fieldMappings': {'organization_id': other.pk, 'status': 'adopted'},
        })
        connect(self.flow, (self.trigger, create), (create, update))

        result = FlowInterpreter(self.flow, trigger_record=self.pet).execute()

        self.assertTrue(result['success'])
        self.assertEqual(Pet.objects.get(name='Pepper').organization, self.organization)
        self.pet.refresh_from_db()
        self.assertEqual(self.pet.organization, self.organization)
        self.assertEqual(self.pet.status, 'adopted')
        self.assertFalse(Pet.objects.filter(organization=other).exists())

    def test_create_unknown_object_continues(self):
        create = add_block(self.flow, BlockKind.CREATE_RECORD, {'objectApiName': 'unicorns'})
        after = add_block(self.flow, BlockKind.ASSIGNMENT, assign('reached', True))
        connect(self.flow, (self.trigger, create), (create, after))

        result = FlowInterpreter(self.flow).execute()

        self.assertEqual(result['variables'], {'reached': True})

    def test_create_custom_record(self):
        donations = CustomObject.objects.create(
            organization=self.organization,
            name='Donation',
            api_name='donations'
        )
        CustomField.objects.create(custom_object=donations, name='Amount', api_name='amount', field_type='number')
        create = add_block(self.flow, BlockKind.CREATE_RECORD, {
            'objectApiName': 'donations',
            'fieldMappings': {'name': 'Gift', 'amount': 50, 'currency': 'EUR'},
        })
        connect(self.flow, (self.trigger, create))

        FlowInterpreter(self.flow).execute()

        record = CustomRecord.objects.get(custom_object=donations)
        self.assertEqual(record.name, 'Gift')
        self.assertEqual(record.field_values(), {'amount': 50})

    def test_update_record_from_variable(self):
        assignment = add_block(self.flow, BlockKind.ASSIGNMENT, assign('petId', self.pet.pk))
        update = add_block(self.flow, BlockKind.UPDATE_RECORD, {
            'objectApiName': 'pets',
            'recordId': '$petId',
            'fieldMappings': {'status': 'adopted'},
        })
        connect(self.flow, (self.trigger, assignment), (assignment, update))

        FlowInterpreter(self.flow).execute()

        self.pet.refresh_from_db()
        self.assertEqual(self.pet.status, 'adopted')

    def test_delete_record(self):
        delete = add_block(self.flow, BlockKind.DELETE_RECORD, {'objectApiName': 'pets', 'recordId': self.pet.pk})
        missing = add_block(self.flow, BlockKind.DELETE_RECORD, {'objectApiName': 'pets', 'recordId': 999999})
        connect(self.flow, (self.trigger, delete), (delete, missing))

        result = FlowInterpreter(self.flow).execute()

        self.assertTrue(result['success'])
        self.assertFalse(Pet.objects.filter(pk=self.pet.pk).exists())

    def test_rerun_repeats_record_creation(self):
        """Test that running a flow again repeats its side effects (handlers are not idempotent)."""
        create = add_block(self.flow, BlockKind.CREATE_RECORD, {
            'objectApiName': 'tasks',
            'fieldMappings': {'title': 'Vet check'},
        })
        connect(self.flow, (self.trigger, create))

        FlowInterpreter(self.flow).execute()
        FlowInterpreter(self.flow).execute()

        self.assertEqual(Task.objects.filter(title='Vet check').count(), 2)

    def test_delegated_block_sends_action_requested(self):
        received = []

        def handler(sender, kind, block, config, context, **kwargs):
            received.append((kind, block.pk, config))

        action_requested.connect(handler)
        self.addCleanup(action_requested.disconnect, handler)

        email = add_block(self.flow, BlockKind.EMAIL, {'to': 'adopter@example.org'})
        wait = add_block(self.flow, BlockKind.WAIT, {'waitTime': 3600})
        connect(self.flow, (self.trigger, email), (email, wait))

        result = FlowInterpreter(self.flow).execute()

        self.assertEqual(received, [('email', email.pk, {'to': 'adopter@example.org'})])
        self.assertEqual([a['kind'] for a in result['actions']], ['email', 'wait'])

    def test_execution_log_rows(self):
        execution = FlowExecution.objects.create(flow=self.flow, execution_type='manual')
        after = add_block(self.flow, BlockKind.ASSIGNMENT, assign('x', 1))
        connect(self.flow, (self.trigger, after))

        FlowInterpreter(self.flow, execution=execution).execute()

        self.assertEqual(
            list(execution.logs.values_list('block_id', flat=True)),
            [self.trigger.pk, after.pk]
        )


@patch.object(execute_flow_job_task, 'delay', return_value=MagicMock(id='task-1'))
class FlowTriggerTestCase(TestCase):
    """Test trigger evaluation on record saves."""

    def setUp(self):
        self.organization = Organization.objects.create(name='Happy Tails')
        self.flow = Flow.objects.create(organization=self.organization, name='New pet')
        add_block(self.flow, BlockKind.TRIGGER, {'objectApiName': 'pets', 'conditions': []})

    def test_new_pet_queues_one_job(self, mock_delay):
        """Test that creating a pet creates exactly one queued job."""
        with self.captureOnCommitCallbacks(execute=True):
            pet = Pet.objects.create(organization=self.organization, name='Biscuit')

        job = FlowJob.objects.get()
        self.assertEqual(job.flow, self.flow)
        self.assertEqual(job.status, FlowJob.Status.QUEUED)
        self.assertEqual(job.job_id, 'task-1')
        self.assertEqual(job.trigger_record, pet)
        self.assertEqual(job.trigger_data['record_id'], pet.pk)
        self.assertEqual(job.trigger_data['record_type'], 'crm.Pet')
        self.assertIn('triggered_at', job.trigger_data)
        mock_delay.assert_called_once_with(job.pk)

    def test_conditions_must_all_pass(self, mock_delay):
        flow = Flow.objects.create(organization=self.organization, name='Available dogs')
        add_block(flow, BlockKind.TRIGGER, {'objectApiName': 'pets', 'conditions': [
            {'field': 'status', 'operator': 'equals', 'value': 'available'},
            {'field': 'species', 'operator': 'equals', 'value': 'dog'},
        ]})

        with self.captureOnCommitCallbacks(execute=True):
            Pet.objects.create(organization=self.organization, name='Biscuit', status='available', species='cat')
            Pet.objects.create(organization=self.organization, name='Rex', status='available', species='dog')

        self.assertEqual(FlowJob.objects.filter(flow=flow).count(), 1)
        self.assertEqual(FlowJob.objects.filter(flow=self.flow).count(), 2)

    def test_other_object_type_does_not_fire(self, mock_delay):
        with self.captureOnCommitCallbacks(execute=True):
            Task.objects.create(organization=self.organization, title='Clean kennels')

        self.assertFalse(FlowJob.objects.exists())

    def test_inactive_flow_and_other_organization(self, mock_delay):
        self.flow.active = False
        self.flow.save()
        other = Organization.objects.create(name='Paws Place')

        with self.captureOnCommitCallbacks(execute=True):
            Pet.objects.create(organization=self.organization, name='Biscuit')
            Pet.objects.create(organization=other, name='Rex')

        self.assertFalse(FlowJob.objects.exists())

    def test_trigger_without_object_never_fires(self, mock_delay):
        flow = Flow.objects.create(organization=self.organization, name='Misconfigured')
        add_block(flow, BlockKind.TRIGGER, {'conditions': []})
        pet = Pet.objects.create(organization=self.organization, name='Biscuit')

        jobs = FlowTriggerService().check_and_trigger(pet, self.organization)

        self.assertEqual([job.flow for job in jobs], [self.flow])

    def test_errors_are_isolated_per_flow(self, mock_delay):
        """Test that one flow failing to evaluate does not stop the others."""
        broken = Flow.objects.create(organization=self.organization, name='A broken flow')
        add_block(broken, BlockKind.TRIGGER, {'objectApiName': 'pets', 'conditions': []})
        pet = Pet.objects.create(organization=self.organization, name='Biscuit')
        service = FlowTriggerService()
        original = service.evaluate_trigger

        def evaluate(trigger_block, record, organization):
            if trigger_block.flow_id == broken.pk:
                raise RuntimeError('bad config')
            return original(trigger_block, record, organization)

        with patch.object(service, 'evaluate_trigger', side_effect=evaluate):
            with self.assertLogs('flow_engine', level='ERROR'):
                jobs = service.check_and_trigger(pet, self.organization)

        self.assertEqual([job.flow for job in jobs], [self.flow])

    def test_database_error_in_one_flow_is_rolled_back(self, mock_delay):
        """Test that a failed query in one flow leaves the transaction usable for the next."""
        broken = Flow.objects.create(organization=self.organization, name='A broken flow')
        add_block(broken, BlockKind.TRIGGER, {'objectApiName': 'pets', 'conditions': []})
        CustomObject.objects.create(organization=self.organization, name='Donation', api_name='donations')
        pet = Pet.objects.create(organization=self.organization, name='Biscuit')
        service = FlowTriggerService()
        original = service.evaluate_trigger

        def evaluate(trigger_block, record, organization):
            if trigger_block.flow_id == broken.pk:
                # Duplicate api_name violates the per-organization unique constraint
                CustomObject.objects.create(organization=organization, name='Gift', api_name='donations')
            return original(trigger_block, record, organization)

        with patch.object(service, 'evaluate_trigger', side_effect=evaluate):
            with self.assertLogs('flow_engine', level='ERROR'):
                jobs = service.check_and_trigger(pet, self.organization)

        self.assertEqual([job.flow for job in jobs], [self.flow])
        self.assertEqual(FlowJob.objects.get().flow, self.flow)
        self.assertEqual(CustomObject.objects.filter(api_name='donations').count(), 1)

    def test_null_trigger_conditions_always_fire(self, mock_delay):
        """Test that a null condition list behaves like an empty one."""
        flow = Flow.objects.create(organization=self.organization, name='Null conditions')
        add_block(flow, BlockKind.TRIGGER, {'objectApiName': 'pets', 'conditions': None})

        with self.captureOnCommitCallbacks(execute=True):
            Pet.objects.create(organization=self.organization, name='Biscuit')

        job = FlowJob.objects.get(flow=flow)
        self.assertEqual(job.status, FlowJob.Status.QUEUED)

    def test_custom_record_trigger_sees_field_values(self, mock_delay):
        """Test that custom field values saved with the record are visible to conditions."""
        donations = CustomObject.objects.create(
            organization=self.organization,
            name='Donation',
            api_name='donations'
        )
        CustomField.objects.create(custom_object=donations, name='Amount', api_name='amount', field_type='number')
        flow = Flow.objects.create(organization=self.organization, name='Big gifts')
        add_block(flow, BlockKind.TRIGGER, {'objectApiName': 'donations', 'conditions': [
            {'field': 'amount', 'operator': 'greater_than', 'value': 100},
        ]})

        with self.captureOnCommitCallbacks(execute=True):
            big = CustomRecord.objects.create(custom_object=donations, name='Big')
            big.set_field_value('amount', 250)
            small = CustomRecord.objects.create(custom_object=donations, name='Small')
            small.set_field_value('amount', 20)

        job = FlowJob.objects.get(flow=flow)
        self.assertEqual(job.trigger_record, big)
        self.assertEqual(job.trigger_data['record_type'], 'crm.CustomRecord')


class JobLifecycleTestCase(TestCase):
    """Test queueing, execution attempts and retries of flow jobs."""

    def setUp(self):
        self.organization = Organization.objects.create(name='Happy Tails')
        self.pet = Pet.objects.create(organization=self.organization, name='Biscuit')
        self.flow = Flow.objects.create(organization=self.organization, name='Welcome')
        self.trigger = add_block(self.flow, BlockKind.TRIGGER, {'objectApiName': 'pets'})
        self.assignment = add_block(self.flow, BlockKind.ASSIGNMENT, assign('welcomed', True))
        connect(self.flow, (self.trigger, self.assignment))
        self.job = FlowJob.objects.create(
            flow=self.flow,
            organization=self.organization,
            trigger_record=self.pet,
            trigger_data={'record_id': self.pet.pk, 'record_type': 'crm.Pet'}
        )

    def test_enqueue_marks_job_queued(self):
        with patch.object(execute_flow_job_task, 'delay', return_value=MagicMock(id='task-9')):
            queue_job_id = JobLifecycle().enqueue(self.job)

        self.assertEqual(queue_job_id, 'task-9')
        self.assertEqual(self.job.status, FlowJob.Status.QUEUED)
        self.assertEqual(self.job.job_id, 'task-9')

    def test_enqueue_tolerates_missing_handle(self):
        with patch.object(execute_flow_job_task, 'delay', return_value=None):
            queue_job_id = JobLifecycle().enqueue(self.job)

        self.assertIsNone(queue_job_id)
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, FlowJob.Status.QUEUED)

    def test_eager_enqueue_does_not_move_backward(self):
        """Test that a job finished before enqueue returns stays completed."""
        JobLifecycle().enqueue(self.job)

        self.job.refresh_from_db()
        self.assertEqual(self.job.status, FlowJob.Status.COMPLETED)

    def test_successful_run(self):
        result = execute_flow_job_task.apply(args=[self.job.pk], throw=False)

        self.assertTrue(result.successful())
        self.assertEqual(result.result['status'], 'completed')
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, FlowJob.Status.COMPLETED)
        self.assertIsNotNone(self.job.started_at)
        self.assertIsNotNone(self.job.completed_at)

        execution = latest_execution_for_job(self.job)
        self.assertEqual(execution.status, 'completed')
        self.assertEqual(execution.execution_type, 'trigger')
        self.assertEqual(execution.input_data['trigger_record_id'], self.pet.pk)
        self.assertEqual(execution.output_data['variables'], {'welcomed': True})

    @patch('flow_engine.services.lifecycle.FlowInterpreter')
    def test_retries_exhausted(self, mock_interpreter):
        """Test that three failed attempts leave one failed job and one failed execution."""
        mock_interpreter.return_value.execute.side_effect = RuntimeError('boom')

        result = execute_flow_job_task.apply(args=[self.job.pk], throw=False)

        self.assertTrue(result.failed())
        self.assertEqual(mock_interpreter.call_count, 3)

        self.job.refresh_from_db()
        self.assertEqual(self.job.status, FlowJob.Status.FAILED)
        self.assertEqual(self.job.retry_count, 2)
        self.assertTrue(self.job.error_message.startswith('RuntimeError: boom'))

        executions = FlowExecution.objects.filter(flow_job=self.job)
        self.assertEqual(executions.count(), 1)
        execution = executions.get()
        self.assertEqual(execution.status, 'failed')
        self.assertEqual(execution.attempts, 3)
        self.assertEqual(execution.error_data['class'], 'RuntimeError')
        self.assertEqual(execution.error_data['message'], 'boom')
        self.assertTrue(execution.error_data['backtrace'])

    @patch('flow_engine.services.lifecycle.FlowInterpreter')
    def test_retry_recovers(self, mock_interpreter):
        mock_interpreter.return_value.execute.side_effect = [
            RuntimeError('flaky'),
            {'success': True, 'blocks_executed': 2},
        ]

        result = execute_flow_job_task.apply(args=[self.job.pk], throw=False)

        self.assertTrue(result.successful())
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, FlowJob.Status.COMPLETED)
        self.assertEqual(self.job.retry_count, 1)

        execution = self.job.execution
        self.assertEqual(execution.status, 'completed')
        self.assertEqual(execution.attempts, 2)
        self.assertEqual(execution.error_data, {})
        self.assertEqual(execution.output_data, {'success': True, 'blocks_executed': 2})

    def test_restart_clears_previous_attempt(self):
        """Test that reopening an execution drops the earlier attempt's output and error."""
        lifecycle = JobLifecycle()
        execution = lifecycle.start_execution(self.job)
        execution.mark_failed({'class': 'RuntimeError', 'message': 'flaky', 'backtrace': []})

        reopened = lifecycle.start_execution(self.job)
        reopened.refresh_from_db()

        self.assertEqual(reopened.pk, execution.pk)
        self.assertEqual(reopened.status, 'running')
        self.assertEqual(reopened.error_data, {})
        self.assertEqual(reopened.output_data, {})

    def test_failure_after_cancellation(self):
        """Test that an execution error is still recorded when the job was cancelled mid-run."""
        lifecycle = JobLifecycle()
        lifecycle.mark_running(self.job)
        execution = lifecycle.start_execution(self.job)
        FlowJob.objects.get(pk=self.job.pk).mark_as_cancelled()

        with self.assertLogs('flow_engine', level='WARNING'):
            lifecycle.mark_failed(self.job, execution, RuntimeError('boom'))

        execution.refresh_from_db()
        self.assertEqual(execution.status, 'failed')
        self.assertEqual(execution.error_data['class'], 'RuntimeError')
        self.assertEqual(execution.error_data['message'], 'boom')
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, FlowJob.Status.CANCELLED)
        self.assertFalse(self.job.error_message)

    def test_finished_job_is_skipped(self):
        self.job.transition_to(FlowJob.Status.CANCELLED)

        result = execute_flow_job_task.apply(args=[self.job.pk], throw=False)

        self.assertTrue(result.result['skipped'])
        self.assertFalse(FlowExecution.objects.exists())

    def test_missing_job(self):
        result = execute_flow_job_task.apply(args=[999999], throw=False)

        self.assertIsNone(result.result)

    def test_missing_trigger_record_runs_without_record(self):
        self.pet.delete()

        with self.assertLogs('flow_engine', level='WARNING'):
            execute_flow_job_task.apply(args=[self.job.pk], throw=False)

        self.job.refresh_from_db()
        self.assertEqual(self.job.status, FlowJob.Status.COMPLETED)

    def test_error_formatting(self):
        def fail():
            raise ValueError('bad value')

        try:
            fail()
        except ValueError as e:
            error = e

        message = format_error(error)
        self.assertEqual(message.splitlines()[0], 'ValueError: bad value')
        self.assertLessEqual(len(message.splitlines()), 11)

        payload = error_payload(error, limit=1)
        self.assertEqual(payload['class'], 'ValueError')
        self.assertEqual(len(payload['backtrace']), 1)
        self.assertIn('in fail', payload['backtrace'][0])


class ManualExecutionTestCase(TestCase):
    """Test manual runs, utilities and management commands."""

    def setUp(self):
        self.organization = Organization.objects.create(name='Happy Tails')
        self.user = User.objects.create_user(username='staff', password='secret')
        self.pet = Pet.objects.create(organization=self.organization, name='Biscuit', status='available')
        self.flow = Flow.objects.create(organization=self.organization, name='Check-in')
        self.trigger = add_block(self.flow, BlockKind.TRIGGER, {'objectApiName': 'pets'}, name='Start')
        self.update = add_block(self.flow, BlockKind.UPDATE_RECORD, {
            'objectApiName': 'pets',
            'recordId': '$petId',
            'fieldMappings': {'status': 'checked-in'},
        }, name='Check in')
        connect(self.flow, (self.trigger, self.update))

    def test_execute_flow(self):
        result = execute_flow(self.flow, trigger_record=self.pet, user=self.user, variables={'petId': self.pet.pk})

        self.assertTrue(result['success'])
        self.pet.refresh_from_db()
        self.assertEqual(self.pet.status, 'checked-in')

        execution = FlowExecution.objects.get()
        self.assertEqual(execution.execution_type, 'manual')
        self.assertEqual(execution.status, 'completed')
        self.assertEqual(execution.user, self.user)
        self.assertEqual(execution.input_data['object_api_name'], 'pets')
        self.assertFalse(FlowJob.objects.exists())

    def test_execute_flow_failure(self):
        connect(self.flow, (self.trigger, self.update), (self.update, self.trigger))

        with self.assertRaises(FlowCycleError):
            execute_flow(self.flow)

        execution = FlowExecution.objects.get()
        self.assertEqual(execution.status, 'failed')
        self.assertEqual(execution.error_data['class'], 'FlowCycleError')

    def test_flow_job_statistics(self):
        FlowJob.objects.create(flow=self.flow, organization=self.organization)
        failed = FlowJob.objects.create(flow=self.flow, organization=self.organization, status=FlowJob.Status.FAILED)
        failed.increment_retry()
        other = Organization.objects.create(name='Paws Place')
        other_flow = Flow.objects.create(organization=other, name='Other')
        FlowJob.objects.create(flow=other_flow, organization=other)

        stats = get_flow_job_statistics(self.organization)

        self.assertEqual(stats['total'], 2)
        self.assertEqual(stats['pending'], 1)
        self.assertEqual(stats['failed'], 1)
        self.assertEqual(stats['retried'], 1)
        self.assertEqual(stats['last_24h'], 2)
        self.assertEqual(stats['active_flows'], 1)
        self.assertIsNone(stats['avg_duration_seconds'])
        self.assertEqual(get_flow_job_statistics()['total'], 3)

    def test_visualize_flow(self):
        text = visualize_flow(self.flow)

        self.assertIn('Flow: Check-in', text)
        self.assertIn('Start (trigger)', text)
        self.assertIn('Check in (update_record)', text)

    def test_run_flow_command(self):
        out = StringIO()

        call_command(
            'run_flow', str(self.flow.pk),
            '--record-type', 'crm.Pet',
            '--record-id', str(self.pet.pk),
            '--var', f'petId={self.pet.pk}',
            stdout=out
        )

        self.assertIn('completed: 2 blocks executed', out.getvalue())
        self.pet.refresh_from_db()
        self.assertEqual(self.pet.status, 'checked-in')

    def test_run_flow_command_errors(self):
        with self.assertRaises(CommandError):
            call_command('run_flow', '999999')
        with self.assertRaises(CommandError):
            call_command('run_flow', str(self.flow.pk), '--record-type', 'crm.Pet')
        with self.assertRaises(CommandError):
            call_command('run_flow', str(self.flow.pk), '--var', 'novalue')

    def test_flow_job_status_command(self):
        job = FlowJob.objects.create(flow=self.flow, organization=self.organization, trigger_record=self.pet)
        execute_flow_job_task.apply(args=[job.pk], throw=False)
        out = StringIO()

        call_command('flow_job_status', str(job.pk), '--logs', stdout=out)

        output = out.getvalue()
        self.assertIn(f'Flow Job {job.pk}', output)
        self.assertIn('Status: completed', output)
        self.assertIn('Attempts: 1', output)

        with self.assertRaises(CommandError):
            call_command('flow_job_status', '999999')
