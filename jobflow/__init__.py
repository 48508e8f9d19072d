"""
jobflow - Job lifecycle workflow and credit/commission accounting.

Marketplace core connecting customers who post jobs with contractors
who claim and complete them.
"""

from .commerce.jobs.service import JobService
from .commerce.jobs.workflow import WorkflowEngine

try:
    from importlib.metadata import version

    __version__ = version("jobflow")
except Exception:
    __version__ = "0.0.0"

__all__ = ["JobService", "WorkflowEngine"]
