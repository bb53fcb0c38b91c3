"""Work orders, runs and steps."""

from flowdesk.runs.runs import RunService
from flowdesk.runs.work_orders import WorkOrderService

__all__ = ["RunService", "WorkOrderService"]
