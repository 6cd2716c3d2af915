"""Services module - Business logic layer"""

from .llm_service import LLMService, call_llm
from .config_manager import ConfigManager
from .retry_policy import LLMAPIError, RetryExhaustedError, RetryPolicy, call_with_policy
from .command_sandbox import CommandSandbox, SandboxLimits
from .pipeline_orchestrator import PipelineOrchestrator, PipelineStageError, apply_generated_files
from .project_store import ProjectStore

__all__ = [
    "LLMService",
    "call_llm",
    "ConfigManager",
    "LLMAPIError",
    "RetryExhaustedError",
    "RetryPolicy",
    "call_with_policy",
    "CommandSandbox",
    "SandboxLimits",
    "PipelineOrchestrator",
    "PipelineStageError",
    "apply_generated_files",
    "ProjectStore",
]
