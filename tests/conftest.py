import os
import threading
import time

import pytest
import uvicorn
from hypothesis import settings
from asterlog.app import app
from asterlog.config import ListenerConfig

# Configure Hypothesis profiles
settings.register_profile("default", max_examples=100, deadline=None)
settings.register_profile("ci", max_examples=500, deadline=None)
settings.register_profile("dev", max_examples=10, deadline=None)
settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "default"))

@pytest.fixture(scope="session")
def server_url():
    """Starts the FastAPI server in a separate thread."""
    port = 8002
    config = uvicorn.Config(app, host="127.0.0.1", port=port, log_level="error")
    server = uvicorn.Server(config)

    thread = threading.Thread(target=server.run)
    thread.daemon = True
    thread.start()

    # Wait for server to boot
    time.sleep(2)
    return f"http://127.0.0.1:{port}"

@pytest.fixture
def listener_config(tmp_path):
    """Factory for listener configs logging into the test's temp directory."""
    def make(port, protocol="TCP", log_level="DEBUG", **kwargs):
        return ListenerConfig(
            port=port,
            protocol=protocol,
            log_file=str(tmp_path / f"{protocol.lower()}-{port}.log"),
            log_level=log_level,
            **kwargs,
        )
    return make

@pytest.fixture
async def clean_engine():
    from asterlog.core import engine, state_manager
    # Run before test
    yield engine
    # Run after test
    await engine.shutdown()
    state_manager.capture_log.clear()
    state_manager.subscribers.clear()
