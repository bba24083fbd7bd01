from app.tasks.crm_imports import cleanup_import_jobs_task, close_imported_tickets_task

__all__ = [
    "cleanup_import_jobs_task",
    "close_imported_tickets_task",
]
