"""
Flow graph interpreter.

Walks a flow's blocks from its trigger block, dispatching each block to the
handler registered for its kind and following the connections the handler
selects. Traversal is synchronous and depth-first; a run ends when no
connection is left to follow.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from django.db import transaction
from django.utils import timezone

from flow_engine.conf import get_setting
from flow_engine.exceptions import FlowCycleError, FlowDepthExceeded
from flow_engine.models import BlockKind, Connection, FlowBlock, FlowExecutionLog
from flow_engine.schemas import (
    AssignmentConfig,
    DecisionConfig,
    RecordConfig,
    WaitConfig,
)
from flow_engine.services.accessors import accessor_for, object_type_for
from flow_engine.services.conditions import evaluate_all, resolve_value
from flow_engine.services.context import ExecutionContext
from flow_engine.signals import action_requested

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Traverse:
    """Which outgoing connections to follow after a block ran."""

    label: Optional[str] = None
    stop: bool = False


CONTINUE = Traverse()
STOP = Traverse(stop=True)

BlockHandler = Callable[['FlowInterpreter', FlowBlock, ExecutionContext], Traverse]

BLOCK_HANDLERS: Dict[str, BlockHandler] = {}


def block_handler(*kinds: str):
    """Register a function as the handler for one or more block kinds."""
    def decorator(func: BlockHandler) -> BlockHandler:
        for kind in kinds:
            BLOCK_HANDLERS[getattr(kind, 'value', kind)] = func
        return func
    return decorator


class FlowInterpreter:
    """
    Executes one run of a flow.

    Args:
        flow: Flow to run
        execution: FlowExecution receiving per-block log rows (optional)
        trigger_record: Record that started the run, if any
        variables: Initial variable bindings
    """

    def __init__(self, flow, execution=None, trigger_record=None, variables=None):
        self.flow = flow
        self.execution = execution
        self.context = ExecutionContext(
            organization=flow.organization,
            trigger_record=accessor_for(trigger_record),
            variables=dict(variables or {}),
        )
        self.blocks: Dict[str, FlowBlock] = {}
        self.connections: List[Connection] = []
        self.blocks_executed = 0
        self._path: List[Any] = []
        self._max_depth = get_setting('MAX_TRAVERSAL_DEPTH')

    def execute(self) -> Dict[str, Any]:
        """
        Run the flow from its trigger block.

        Returns a failure result (without raising) when the flow has no
        trigger block. Errors raised by blocks propagate to the caller.
        """
        self.blocks = {str(block.pk): block for block in self.flow.blocks.all()}
        self.connections = self.flow.connections

        trigger_block = next(
            (b for b in self.blocks.values() if b.block_type == BlockKind.TRIGGER),
            None
        )
        if trigger_block is None:
            logger.warning(f"Flow {self.flow.pk} ({self.flow.name}) has no trigger block")
            return {'success': False, 'message': 'No trigger block found'}

        try:
            if get_setting('ATOMIC_RUNS'):
                with transaction.atomic():
                    self.execute_block(trigger_block)
            else:
                self.execute_block(trigger_block)
        except Exception as e:
            logger.error(f"Flow execution error in '{self.flow.name}': {e}", exc_info=True)
            raise

        return {
            'success': True,
            'completed_at': timezone.now(),
            'blocks_executed': self.blocks_executed,
            'actions': self.context.actions,
            'variables': self.context.variables,
        }

    def execute_block(self, block: FlowBlock):
        if block.pk in self._path:
            raise FlowCycleError(block.pk, self._path)
        if len(self._path) >= self._max_depth:
            raise FlowDepthExceeded(
                f"Flow {self.flow.pk} exceeded {self._max_depth} nested blocks at block {block.pk}"
            )

        self._path.append(block.pk)
        try:
            logger.info(f"Executing block: {block.block_type} ({block.name})")
            self.blocks_executed += 1

            handler = BLOCK_HANDLERS.get(block.block_type)
            if handler is None:
                logger.warning(f"Unknown block type: {block.block_type}")
                self.log('WARNING', f'Unknown block type: {block.block_type}', block)
                directive = CONTINUE
            else:
                self.log('INFO', f'Executing {block.block_type} block', block)
                directive = handler(self, block, self.context)

            if not directive.stop:
                self.execute_next_blocks(block, label=directive.label)
        finally:
            self._path.pop()

    def next_connections(self, block: FlowBlock, label: Optional[str] = None) -> List[Connection]:
        """
        Outgoing connections of ``block``: unlabeled ones when ``label`` is
        None, otherwise those carrying exactly ``label``.
        """
        block_id = str(block.pk)
        outgoing = [c for c in self.connections if str(c.source) == block_id]
        if label is None:
            return [c for c in outgoing if not c.is_labeled]
        return [c for c in outgoing if c.label == label]

    def execute_next_blocks(self, block: FlowBlock, label: Optional[str] = None):
        for connection in self.next_connections(block, label):
            next_block = self.blocks.get(str(connection.target))
            if next_block is None:
                logger.warning(
                    f"Connection {block.pk} -> {connection.target} points outside flow {self.flow.pk}"
                )
                continue
            self.execute_block(next_block)

    def log(self, level: str, message: str, block: Optional[FlowBlock] = None, **context):
        """Create a log entry for the current execution."""
        if self.execution is None:
            return
        FlowExecutionLog.objects.create(
            execution=self.execution,
            block_id=block.pk if block else None,
            block_kind=block.block_type if block else '',
            level=level,
            message=message,
            context=context
        )


def apply_field_mappings(record, field_mappings: Dict[str, Any], context: ExecutionContext):
    """Resolve and write each mapped value through the record accessor."""
    for field_api_name, value in field_mappings.items():
        if not record.set_field(field_api_name, resolve_value(value, context)):
            logger.info(f"Skipped unknown field '{field_api_name}' on {record.label}")


@block_handler(BlockKind.TRIGGER, BlockKind.SCREEN)
def pass_through(run, block, context):
    # Screens collect manual input; automated runs go straight past them
    return CONTINUE


@block_handler(BlockKind.DECISION)
def execute_decision_block(run, block, context):
    config = DecisionConfig.model_validate(block.config)

    for outcome in config.outcomes:
        if evaluate_all(outcome.conditions, context):
            run.log('INFO', f"Decision matched outcome '{outcome.label}'", block, outcome=outcome.label)
            return Traverse(label=outcome.label) if outcome.label else STOP

    # No outcome matched: default (unlabeled) path
    return CONTINUE


@block_handler(BlockKind.ASSIGNMENT)
def execute_assignment_block(run, block, context):
    config = AssignmentConfig.model_validate(block.config)

    for assignment in config.assignments:
        context.variables[assignment.variable] = resolve_value(assignment.value, context)
    return CONTINUE


@block_handler(BlockKind.CREATE_RECORD)
def execute_create_record_block(run, block, context):
    config = RecordConfig.model_validate(block.config)
    object_api_name = resolve_value(config.object_api_name, context)

    object_type = object_type_for(context.organization, object_api_name)
    if object_type is None:
        logger.warning(f"create_record block {block.pk}: unknown object '{object_api_name}'")
        run.log('WARNING', f"Unknown object '{object_api_name}'", block)
        return CONTINUE

    record = object_type.build()
    apply_field_mappings(record, config.field_mappings, context)
    record.save()

    run.log('INFO', f'Created {object_api_name} record {record.pk}', block, record_id=record.pk)
    return CONTINUE


@block_handler(BlockKind.UPDATE_RECORD)
def execute_update_record_block(run, block, context):
    config = RecordConfig.model_validate(block.config)
    object_api_name = resolve_value(config.object_api_name, context)
    record_id = resolve_value(config.record_id, context)

    object_type = object_type_for(context.organization, object_api_name)
    record = object_type.find(record_id) if object_type else None
    if record is None:
        logger.info(f"update_record block {block.pk}: {object_api_name} record {record_id!r} not found")
        run.log('INFO', 'Target record not found, nothing updated', block, record_id=record_id)
        return CONTINUE

    apply_field_mappings(record, config.field_mappings, context)
    record.save()

    run.log('INFO', f'Updated {object_api_name} record {record.pk}', block, record_id=record.pk)
    return CONTINUE


@block_handler(BlockKind.DELETE_RECORD)
def execute_delete_record_block(run, block, context):
    config = RecordConfig.model_validate(block.config)
    object_api_name = resolve_value(config.object_api_name, context)
    record_id = resolve_value(config.record_id, context)

    object_type = object_type_for(context.organization, object_api_name)
    record = object_type.find(record_id) if object_type else None
    if record is None:
        logger.info(f"delete_record block {block.pk}: {object_api_name} record {record_id!r} not found")
        run.log('INFO', 'Target record not found, nothing deleted', block, record_id=record_id)
        return CONTINUE

    record.delete()

    run.log('INFO', f'Deleted {object_api_name} record {record_id}', block, record_id=record_id)
    return CONTINUE


@block_handler(BlockKind.EMAIL, BlockKind.NOTIFICATION, BlockKind.API_CALL, BlockKind.LOOP)
def execute_delegated_block(run, block, context):
    # Delivery belongs to receivers of action_requested
    logger.info(f"{block.block_type} block executed: {block.config}")
    context.record_action(block.block_type, block.pk, block.config)
    action_requested.send(
        sender=FlowInterpreter,
        kind=block.block_type,
        block=block,
        config=block.config,
        context=context
    )
    return CONTINUE


@block_handler(BlockKind.WAIT)
def execute_wait_block(run, block, context):
    # A worker cannot suspend mid-run; the wait is recorded and skipped
    config = WaitConfig.model_validate(block.config)
    logger.info(f"Wait block executed: waiting {config.wait_time} seconds")
    context.record_action(block.block_type, block.pk, block.config)
    return CONTINUE
