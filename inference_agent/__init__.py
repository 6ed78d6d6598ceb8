"""Inference agent package root.

The agent receives task assignments from a message channel, runs them on a
compute provider, stores and mints the result, records an audit trail and
reports the outcome.
"""

from .agent import InferenceAgent, build_agent
from .config import load_config
from .pipeline import TaskPipeline
from .provider_cache import ProviderCache
from .retry import RetryPolicy
from .subscriber import ReconnectingSubscriber
from .auth import SessionAuthenticator
from . import metrics  # noqa: F401

__version__ = "0.1.0"

__all__ = [
    "InferenceAgent",
    "build_agent",
    "load_config",
    "TaskPipeline",
    "ProviderCache",
    "RetryPolicy",
    "ReconnectingSubscriber",
    "SessionAuthenticator",
    "metrics",
]
