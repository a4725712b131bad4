"""
Utility functions for flow engine.
"""
from datetime import timedelta
from typing import Any, Dict, Optional

from django.db.models import Count, Q
from django.utils import timezone

from flow_engine.models import BlockKind, Flow, FlowExecution, FlowJob


def latest_execution_for_job(flow_job: FlowJob) -> Optional[FlowExecution]:
    """
    The FlowExecution recorded for a job.

    Falls back to the newest trigger execution of the same flow and trigger
    record for rows written without a job link.
    """
    execution = FlowExecution.objects.filter(flow_job=flow_job).first()
    if execution is not None:
        return execution

    return (
        FlowExecution.objects.filter(
            flow_id=flow_job.flow_id,
            execution_type='trigger',
            input_data__trigger_record_id=flow_job.trigger_record_id,
        )
        .order_by('-created_at')
        .first()
    )


def get_flow_job_statistics(organization=None) -> Dict[str, Any]:
    """
    Get flow job statistics, optionally for one organization.

    Returns:
        Dictionary with job counts per status and the last 24 hours
    """
    jobs = FlowJob.objects.all()
    if organization is not None:
        jobs = jobs.by_organization(organization)

    last_24h = timezone.now() - timedelta(hours=24)

    counts = jobs.aggregate(
        total=Count('id'),
        pending=Count('id', filter=Q(status=FlowJob.Status.PENDING)),
        queued=Count('id', filter=Q(status=FlowJob.Status.QUEUED)),
        running=Count('id', filter=Q(status=FlowJob.Status.RUNNING)),
        completed=Count('id', filter=Q(status=FlowJob.Status.COMPLETED)),
        failed=Count('id', filter=Q(status=FlowJob.Status.FAILED)),
        cancelled=Count('id', filter=Q(status=FlowJob.Status.CANCELLED)),
        last_24h=Count('id', filter=Q(created_at__gte=last_24h)),
        retried=Count('id', filter=Q(retry_count__gt=0)),
    )

    finished = jobs.filter(
        status=FlowJob.Status.COMPLETED,
        started_at__isnull=False,
        completed_at__isnull=False
    ).values_list('started_at', 'completed_at')

    durations = [(completed - started).total_seconds() for started, completed in finished]
    counts['avg_duration_seconds'] = sum(durations) / len(durations) if durations else None

    flows = Flow.objects.all()
    if organization is not None:
        flows = flows.filter(organization=organization)
    counts['active_flows'] = flows.active().count()

    return counts


def visualize_flow(flow: Flow) -> str:
    """
    Create a text-based visualization of a flow graph.

    Args:
        flow: Flow instance

    Returns:
        String representation of the graph, starting at the trigger block
    """
    blocks = {str(block.pk): block for block in flow.blocks.all()}
    children = {block_id: [] for block_id in blocks}
    for connection in flow.connections:
        if str(connection.source) in children:
            children[str(connection.source)].append(connection)

    lines = [f"Flow: {flow.name}"]
    lines.append("=" * 60)

    def print_block(block_id: str, indent: int, prefix: str, path: tuple):
        block = blocks.get(block_id)
        if block is None:
            lines.append(f"{' ' * indent}{prefix}<missing block {block_id}>")
            return
        if block_id in path:
            lines.append(f"{' ' * indent}{prefix}{block.name or block_id} (cycle)")
            return

        lines.append(f"{' ' * indent}{prefix}{block.name or block_id} ({block.block_type})")

        outgoing = children[block_id]
        for i, connection in enumerate(outgoing):
            is_last = i == len(outgoing) - 1
            child_prefix = "└─ " if is_last else "├─ "
            if connection.label:
                child_prefix += f"[{connection.label}] "
            print_block(str(connection.target), indent + 2, child_prefix, path + (block_id,))

    roots = [b for b in blocks.values() if b.block_type == BlockKind.TRIGGER]
    if not roots:
        lines.append("(no trigger block)")
    for root in roots:
        print_block(str(root.pk), 0, "", ())

    return "\n".join(lines)
