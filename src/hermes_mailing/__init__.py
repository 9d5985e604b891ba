"""Multi-process mail queue dispatcher with atomic claiming and throttling.

This package sends mail rows queued in a shared SQL table using any number of
independent worker processes. Features include:

- Atomic claiming ("signing") of unclaimed rows, safe across processes
- Optional server affinity through an assigned-server column
- Bounded retries driven by a per-row status state machine
- Anti-spam throttling by cumulative send count (lite and full strategies)
- SQLite and PostgreSQL storage through async adapters
- Prometheus metrics and a click-based operator CLI

Example:
    Running a worker from Python::

        from hermes_mailing.config_loader import load_settings
        from hermes_mailing.dispatcher import Dispatcher

        settings = load_settings("hermes.ini")
        dispatcher = await Dispatcher.from_settings(settings)
        report = await dispatcher.run()

Authors:
    Softwell S.r.l.
"""

__version__ = "1.0.0"
