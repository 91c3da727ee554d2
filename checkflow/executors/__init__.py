"""
Executors package - Node executor registry and built-in executors.
"""

from checkflow.executors.base import BaseNodeExecutor
from checkflow.executors.registry import ExecutorRegistry, FunctionExecutor, create_default_registry
from checkflow.executors.start import StartNodeExecutor
from checkflow.executors.end import EndNodeExecutor
from checkflow.executors.human import HumanNodeExecutor
from checkflow.executors.decision import DecisionNodeExecutor
from checkflow.executors.transform import TransformNodeExecutor

__all__ = [
    "BaseNodeExecutor",
    "ExecutorRegistry",
    "FunctionExecutor",
    "create_default_registry",
    "StartNodeExecutor",
    "EndNodeExecutor",
    "HumanNodeExecutor",
    "DecisionNodeExecutor",
    "TransformNodeExecutor",
]
