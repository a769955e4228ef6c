"""
Task subsystem.

Components:
- task_models.py: data structures (Task, WorkItem, DeliveryAction, state machine)
- task_store.py: SQLite-backed storage, conversation links, brain session registry
- task_log.py: append-only JSONL execution logs
- task_executor.py: reasoning step (brain session, prompt contract, deliverable gate)
- delivery_executor.py: sends deliverables to channels
- task_processor.py: orchestrates executor + delivery and reports outcomes
- task_scheduler.py: polling scheduler for due scheduled tasks
- task_api.py: small high-level helpers used by the rest of the app
"""
