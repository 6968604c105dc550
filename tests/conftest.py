from __future__ import annotations

import pytest

from chatrelay.engine.backends.mock_backend import MockBackend
from chatrelay.engine.backends.registry import BackendRegistry
from chatrelay.engine.capture import CaptureStore
from chatrelay.engine.config import RelayConfig
from chatrelay.engine.generation_state import GenerationStateTracker
from chatrelay.engine.registry import ProcessRegistry
from chatrelay.shared.services.conversation_log import ConversationLog


@pytest.fixture
def relay_config(tmp_path) -> RelayConfig:
    return RelayConfig(
        conversations_dir=str(tmp_path / "conversations"),
        data_dir=str(tmp_path / "data"),
    )


@pytest.fixture
def conversation_log(relay_config) -> ConversationLog:
    return ConversationLog(relay_config.conversations_dir)


@pytest.fixture
def capture_store(relay_config) -> CaptureStore:
    return CaptureStore(relay_config.capture_dir)


@pytest.fixture
def state_tracker(relay_config) -> GenerationStateTracker:
    return GenerationStateTracker(relay_config.state_db_path)


@pytest.fixture
def process_registry() -> ProcessRegistry:
    return ProcessRegistry(idle_timeout=60.0)


@pytest.fixture
def mock_backends(process_registry, capture_store) -> BackendRegistry:
    backends = BackendRegistry()
    backends.register(
        "mock",
        MockBackend(min_delay=0, max_delay=0, registry=process_registry, capture=capture_store),
    )
    return backends
