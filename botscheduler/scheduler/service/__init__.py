"""Scheduler service package.

This package contains the core scheduler service components:
- store.py: SQLite job persistence with YAML snapshot export
- service.py: Loading, arming, firing and rescheduling of jobs
"""
from .service import SchedulerService
from .store import JobStore

__all__ = ["SchedulerService", "JobStore"]
