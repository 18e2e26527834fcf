"""Services for the function-calling core."""

from agentcore.services.coordinator import FunctionCallingCoordinator
from agentcore.services.function_calling import EnhancedFunctionCalling

__all__ = ["EnhancedFunctionCalling", "FunctionCallingCoordinator"]
