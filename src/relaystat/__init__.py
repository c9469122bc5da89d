"""A transparent chat-completions proxy that records per-request usage telemetry."""

__version__ = "0.1.0"

from .config import load_config, Settings, ConfigError
from .api import create_app, main
from .models import AgentTag, TelemetryRecord, AgentSummary

from .forwarding import ForwardingEngine
from .storage import TelemetryStore, negotiate_store
from .utils import classify_agent, estimate_tokens
