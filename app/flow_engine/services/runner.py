"""
Manual flow execution.
"""
import logging
from typing import Any, Dict, Optional

from django.utils import timezone

from flow_engine.models import FlowExecution
from flow_engine.services.accessors import object_api_name_of
from flow_engine.services.interpreter import FlowInterpreter
from flow_engine.services.lifecycle import error_payload

logger = logging.getLogger(__name__)


def execute_flow(
    flow,
    trigger_record=None,
    user=None,
    variables: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Run a flow synchronously outside the trigger/queue path.

    Args:
        flow: Flow to run
        trigger_record: Optional record bound as the run's trigger record
        user: User starting the run
        variables: Initial variable bindings

    Returns:
        The interpreter result
    """
    execution = FlowExecution.objects.create(
        flow=flow,
        user=user,
        execution_type='manual',
        status='running',
        started_at=timezone.now(),
        input_data={
            'trigger_record_type': trigger_record._meta.label if trigger_record is not None else None,
            'trigger_record_id': trigger_record.pk if trigger_record is not None else None,
            'object_api_name': object_api_name_of(trigger_record) if trigger_record is not None else None,
            'variables': variables or {},
        }
    )

    logger.info(f"Manual execution {execution.pk} of flow '{flow.name}' started")

    try:
        result = FlowInterpreter(flow, execution, trigger_record, variables).execute()
    except Exception as e:
        execution.mark_failed(error_payload(e))
        raise

    execution.mark_completed(result)
    return result
