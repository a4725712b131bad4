from django.apps import AppConfig


class FlowEngineConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'flow_engine'
    verbose_name = 'Flow Engine'
    
    def ready(self):
        """Connect record-mutation receivers when app is ready."""
        import flow_engine.signals  # noqa
