"""
Engine settings.

Everything is read from the ``FLOW_ENGINE`` dict in Django settings, falling
back to the defaults below.
"""
from typing import Any

from django.conf import settings

DEFAULTS = {
    # Total attempts per FlowJob, including the first one
    'MAX_ATTEMPTS': 3,
    # Upper bound (seconds) for Celery's exponential retry backoff
    'RETRY_BACKOFF_MAX': 600,
    # Prefix marking a value as a variable reference ("$count")
    'VARIABLE_PREFIX': '$',
    'MAX_TRAVERSAL_DEPTH': 100,
    # Wrap each run in one database transaction
    'ATOMIC_RUNS': False,
    'JOB_ERROR_BACKTRACE_LIMIT': 10,
    'EXECUTION_ERROR_BACKTRACE_LIMIT': 20,
    # object api_name -> "app_label.ModelName"
    'STANDARD_OBJECTS': {
        'pets': 'crm.Pet',
        'tasks': 'crm.Task',
        'events': 'crm.Event',
    },
}


def get_setting(name: str) -> Any:
    """Return a FLOW_ENGINE setting, or its default."""
    overrides = getattr(settings, 'FLOW_ENGINE', {}) or {}
    if name in overrides:
        return overrides[name]
    try:
        return DEFAULTS[name]
    except KeyError:
        raise ValueError(f"Unknown FLOW_ENGINE setting: {name}")
