from .base import ExecutionVenue
from .http import HttpExecutionVenue
from .simulated import SimulatedVenue

__all__ = ["ExecutionVenue", "HttpExecutionVenue", "SimulatedVenue"]
