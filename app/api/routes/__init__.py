from . import events, jobs, payments

__all__ = ["events", "jobs", "payments"]
