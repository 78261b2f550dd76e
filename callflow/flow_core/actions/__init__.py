"""Side effects of Action nodes during a live call.

Lookups fetch caller data for an Action node and the injector pushes the
formatted result into the call. Both report failure through return values.
"""

from .api_lookup import ApiLookupExecutor, format_context, get_value_by_path
from .base import ActionExecutor, ActionResult, ContextInjector
from .context_injection import ControlUrlContextInjector

__all__ = [
    "ActionExecutor",
    "ActionResult",
    "ApiLookupExecutor",
    "ContextInjector",
    "ControlUrlContextInjector",
    "format_context",
    "get_value_by_path",
]
