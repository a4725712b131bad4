"""
Signal handlers for flow engine.

Saving a CRM record evaluates the organization's flow triggers once the
surrounding transaction commits. ``action_requested`` is sent for blocks whose
side effect (email, notification, API call, loop) belongs to another service.
"""
import logging

from django.db import transaction
from django.db.models.signals import post_save
from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)

# Sent with kind, block, config and context
action_requested = Signal()


def _trigger_flows(instance, organization):
    from flow_engine.services.triggers import on_record_mutated

    try:
        on_record_mutated(instance, organization)
    except Exception:
        # Automation must never break the save that triggered it
        logger.exception(
            f"Flow trigger evaluation failed for {instance._meta.label} #{instance.pk}"
        )


@receiver(post_save, sender='crm.Pet')
@receiver(post_save, sender='crm.Task')
@receiver(post_save, sender='crm.Event')
def trigger_flows_for_standard_record(sender, instance, created, raw=False, **kwargs):
    """Evaluate flow triggers after a Pet, Task or Event is created or updated."""
    if raw:
        return
    transaction.on_commit(lambda: _trigger_flows(instance, instance.organization))


@receiver(post_save, sender='crm.CustomRecord')
def trigger_flows_for_custom_record(sender, instance, created, raw=False, **kwargs):
    """
    Evaluate flow triggers after a CustomRecord is created or updated.

    Deferred to commit so field value rows written in the same transaction
    are visible to trigger conditions.
    """
    if raw:
        return
    transaction.on_commit(
        lambda: _trigger_flows(instance, instance.custom_object.organization)
    )
