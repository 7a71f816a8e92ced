"""
Execution package: the single-slot permit and the batch submission gateway.
"""

from perpl_mm.execution.execution_gateway import ExecutionGateway, SubmissionFailure
from perpl_mm.execution.permit import Permit, PermitSlot

__all__ = [
    "ExecutionGateway",
    "Permit",
    "PermitSlot",
    "SubmissionFailure",
]
