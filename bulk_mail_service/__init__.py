"""Asynchronous bulk email job queue with a worker pool and a scheduler.

This package provides:

- Durable email jobs with per-recipient delivery logs (SQLite)
- A priority ordered queue with visibility timeouts and redelivery
- A worker pool with per-recipient retries and queue-level backoff
- Per-minute and per-hour send budgets shared by every worker
- Scheduled sends promoted by a multi-instance safe scheduler
- SMTP and HTTP mail providers, audit sinks and Prometheus metrics
- A FastAPI REST API and a ``bulk-mail`` command line

Example:
    Basic usage with the FastAPI application::

        from bulk_mail_service.core import BulkMailCore
        from bulk_mail_service.api import create_app

        core = BulkMailCore(db_path="/data/bulk_mail.db", transport=my_transport)
        app = create_app(core, api_token="secret")
"""

__version__ = "0.1.0"
