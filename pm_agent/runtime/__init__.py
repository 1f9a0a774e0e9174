"""Project Manager agent runtime.

Pipeline: inbound event -> FloodGate -> WorkQueue -> RequestOrchestrator
(using SettingsValidator's cached settings) -> ResponseEmitter -> outbound
event. AgentRuntime owns the lifecycle of the whole pipeline.
"""

from .channel import INBOUND_TOPIC, OUTBOUND_TOPIC, EventChannel, Subscription
from .config import RuntimeConfig
from .emitter import ResponseEmitter
from .gate import FloodGate
from .lifecycle import SHUTDOWN_NOTICE, THROTTLE_WARNING, AgentRuntime, InitResult
from .orchestrator import AbortToken, RequestOrchestrator
from .validator import SettingsValidator, normalize_url, select_model
from .work_queue import WorkQueue

__all__ = [
    "AbortToken",
    "AgentRuntime",
    "EventChannel",
    "FloodGate",
    "INBOUND_TOPIC",
    "InitResult",
    "OUTBOUND_TOPIC",
    "RequestOrchestrator",
    "ResponseEmitter",
    "RuntimeConfig",
    "SHUTDOWN_NOTICE",
    "SettingsValidator",
    "Subscription",
    "THROTTLE_WARNING",
    "WorkQueue",
    "normalize_url",
    "select_model",
]
