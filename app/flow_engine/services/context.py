"""
Per-run execution state.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from flow_engine.services.accessors import RecordAccessor


@dataclass
class ExecutionContext:
    """
    State of one flow run, passed by reference to every block handler.

    Lives only as long as the run; its effect is captured by the
    FlowExecution input/output data.
    """

    organization: Any = None
    trigger_record: Optional[RecordAccessor] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    # Intent of blocks whose side effect is delegated (email, wait, ...)
    actions: List[Dict[str, Any]] = field(default_factory=list)

    def record_action(self, kind: str, block_id, config: Dict[str, Any]):
        self.actions.append({'kind': kind, 'block_id': block_id, 'config': config})
