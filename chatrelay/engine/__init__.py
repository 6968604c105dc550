"""chatrelay engine: backends, orchestration, generation state and recovery."""
from .config import RelayConfig
from .errors import (
    BackendTimeoutError,
    BackendUnavailableError,
    ChatRelayError,
    ConversationNotFoundError,
    DuplicateRequestError,
    GenerationCancelledError,
    ProcessFailureError,
    ProtocolError,
    RecoveryFailedError,
)

__all__ = [
    # Config
    "RelayConfig",
    # YAML config (lazy import)
    "RelayYamlConfig",
    "load_yaml_config",
    # Orchestration (lazy import)
    "Orchestrator",
    "ChatRequest",
    "RecoveryController",
    "BackendProber",
    "GenerationStateTracker",
    "ProcessRegistry",
    "CaptureStore",
    # Backends (lazy import)
    "BackendRegistry",
    "build_backend_registry",
    # Errors
    "BackendTimeoutError",
    "BackendUnavailableError",
    "ChatRelayError",
    "ConversationNotFoundError",
    "DuplicateRequestError",
    "GenerationCancelledError",
    "ProcessFailureError",
    "ProtocolError",
    "RecoveryFailedError",
]


def __getattr__(name: str):
    if name == "RelayYamlConfig":
        from .yaml_config import RelayYamlConfig
        return RelayYamlConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "Orchestrator":
        from .orchestrator import Orchestrator
        return Orchestrator
    if name == "ChatRequest":
        from .orchestrator import ChatRequest
        return ChatRequest
    if name == "RecoveryController":
        from .recovery import RecoveryController
        return RecoveryController
    if name == "BackendProber":
        from .prober import BackendProber
        return BackendProber
    if name == "GenerationStateTracker":
        from .generation_state import GenerationStateTracker
        return GenerationStateTracker
    if name == "ProcessRegistry":
        from .registry import ProcessRegistry
        return ProcessRegistry
    if name == "CaptureStore":
        from .capture import CaptureStore
        return CaptureStore
    if name == "BackendRegistry":
        from .backends.registry import BackendRegistry
        return BackendRegistry
    if name == "build_backend_registry":
        from .backends.registry import build_backend_registry
        return build_backend_registry
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
