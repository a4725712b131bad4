"""
Flow Engine - record-triggered workflow automation for the shelter CRM.

Flows are block graphs authored per organization. Record saves are matched
against trigger blocks, matching flows are queued as FlowJobs on Celery, and
workers interpret the graph while FlowExecution rows keep the audit trail.
"""
