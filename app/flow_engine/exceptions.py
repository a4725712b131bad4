"""
Exceptions raised by the flow engine.
"""


class FlowEngineError(Exception):
    """Base class for flow engine errors."""


class FlowExecutionError(FlowEngineError):
    """A flow run could not be completed."""


class FlowCycleError(FlowExecutionError):
    """Traversal re-entered a block that is already on the current path."""

    def __init__(self, block_id, path):
        self.block_id = block_id
        self.path = list(path)
        chain = ' -> '.join(str(b) for b in self.path + [block_id])
        super().__init__(f"Cycle detected at block {block_id}: {chain}")


class FlowDepthExceeded(FlowExecutionError):
    """Traversal went deeper than FLOW_ENGINE['MAX_TRAVERSAL_DEPTH']."""


class InvalidJobTransition(FlowEngineError):
    """A FlowJob status change that the state machine does not allow."""

    def __init__(self, job_id, current, requested):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"FlowJob {job_id} cannot move from '{current}' to '{requested}'"
        )
