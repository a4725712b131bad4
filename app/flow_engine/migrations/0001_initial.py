from django.conf import settings
from django.db import migrations, models
import django.core.serializers.json
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('contenttypes', '0002_remove_content_type_name'),
        ('crm', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Flow',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=255)),
                ('description', models.TextField(blank=True, default='')),
                ('active', models.BooleanField(db_index=True, default=True, help_text='Inactive flows are never matched by record triggers')),
                ('connections_data', models.JSONField(blank=True, default=list, help_text="Graph edges: [{'from': id, 'to': id, 'label': ...}]")),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='flows', to='crm.organization')),
            ],
            options={
                'verbose_name': 'Flow',
                'verbose_name_plural': 'Flows',
                'ordering': ['name'],
                'indexes': [models.Index(fields=['organization', 'active'], name='flow_org_active_idx')],
            },
        ),
        migrations.CreateModel(
            name='FlowBlock',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('block_type', models.CharField(choices=[('trigger', 'Trigger'), ('decision', 'Decision'), ('assignment', 'Assignment'), ('create_record', 'Create Record'), ('update_record', 'Update Record'), ('delete_record', 'Delete Record'), ('email', 'Email'), ('notification', 'Notification'), ('wait', 'Wait'), ('loop', 'Loop'), ('screen', 'Screen'), ('api_call', 'API Call')], db_index=True, max_length=30)),
                ('name', models.CharField(blank=True, default='', max_length=255)),
                ('config_data', models.JSONField(blank=True, default=dict)),
                ('position', models.PositiveIntegerField(default=0)),
                ('flow', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='blocks', to='flow_engine.flow')),
            ],
            options={
                'verbose_name': 'Flow Block',
                'verbose_name_plural': 'Flow Blocks',
                'ordering': ['position', 'id'],
            },
        ),
        migrations.CreateModel(
            name='FlowJob',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('queued', 'Queued'), ('running', 'Running'), ('completed', 'Completed'), ('failed', 'Failed'), ('cancelled', 'Cancelled')], db_index=True, default='pending', max_length=20)),
                ('job_id', models.CharField(blank=True, db_index=True, help_text='Celery task id of the queued unit of work', max_length=255, null=True)),
                ('error_message', models.TextField(blank=True, null=True)),
                ('started_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('retry_count', models.IntegerField(default=0)),
                ('trigger_record_id', models.BigIntegerField(blank=True, null=True)),
                ('trigger_data', models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('flow', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='jobs', to='flow_engine.flow')),
                ('organization', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='flow_jobs', to='crm.organization')),
                ('trigger_record_type', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, to='contenttypes.contenttype')),
            ],
            options={
                'verbose_name': 'Flow Job',
                'verbose_name_plural': 'Flow Jobs',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['flow', 'status'], name='flowjob_flow_status_idx'),
                    models.Index(fields=['organization', 'created_at'], name='flowjob_org_created_idx'),
                    models.Index(fields=['trigger_record_type', 'trigger_record_id'], name='flowjob_trigger_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='FlowExecution',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('execution_type', models.CharField(choices=[('trigger', 'Trigger'), ('manual', 'Manual')], default='trigger', max_length=20)),
                ('status', models.CharField(choices=[('running', 'Running'), ('completed', 'Completed'), ('failed', 'Failed')], db_index=True, default='running', max_length=20)),
                ('attempts', models.IntegerField(default=1)),
                ('input_data', models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ('output_data', models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ('error_data', models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ('started_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('flow', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='executions', to='flow_engine.flow')),
                ('flow_job', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='execution', to='flow_engine.flowjob')),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='flow_executions', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Flow Execution',
                'verbose_name_plural': 'Flow Executions',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['flow', 'status'], name='flowexec_flow_status_idx'),
                    models.Index(fields=['execution_type', 'created_at'], name='flowexec_type_created_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='FlowExecutionLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('block_id', models.BigIntegerField(blank=True, null=True)),
                ('block_kind', models.CharField(blank=True, default='', max_length=30)),
                ('level', models.CharField(choices=[('DEBUG', 'Debug'), ('INFO', 'Info'), ('WARNING', 'Warning'), ('ERROR', 'Error')], default='INFO', max_length=10)),
                ('message', models.TextField()),
                ('context', models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder, help_text='Additional context data for the log entry')),
                ('timestamp', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('execution', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='logs', to='flow_engine.flowexecution')),
            ],
            options={
                'verbose_name': 'Flow Execution Log',
                'verbose_name_plural': 'Flow Execution Logs',
                'ordering': ['timestamp', 'id'],
                'indexes': [models.Index(fields=['execution', 'timestamp'], name='flowlog_exec_ts_idx')],
            },
        ),
    ]
