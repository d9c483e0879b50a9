import asyncio
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="chatrelay_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty REDIS_URL keeps every cache in-process
os.environ.setdefault("REDIS_URL", "")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from chatrelay.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


def openai_reply(content="Hello there", usage=None, reasoning=None):
    message = {"role": "assistant", "content": content}
    if reasoning is not None:
        message["reasoning_content"] = reasoning
    body = {"choices": [{"index": 0, "message": message}]}
    if usage is not None:
        body["usage"] = usage
    return body


class ProviderStub:
    """Scripted upstream: replays queued responses and records every request."""

    def __init__(self, *responses):
        self.queue = list(responses)
        self.requests = []

    def push(self, status_code=200, payload=None):
        self.queue.append((status_code, payload))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.queue:
            return httpx.Response(200, json=openai_reply())
        status_code, payload = self.queue.pop(0)
        if isinstance(payload, (dict, list)):
            return httpx.Response(status_code, json=payload)
        return httpx.Response(status_code, text=payload or "")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def body(self, index=-1):
        return json.loads(self.requests[index].content.decode("utf-8"))


@pytest.fixture
def provider():
    return ProviderStub()


@pytest.fixture
def runtime(provider):
    """Runtime whose provider traffic is served by ``provider``."""
    rt = reset_runtime_for_tests(http_client=provider.client())
    rt.requester.backoff_429_ms = 0
    rt.requester.backoff_5xx_ms = 0
    return rt


@pytest.fixture
def seeded(runtime):
    """A user, an OpenAI connection and a session bound to gpt-4o-mini."""
    store = runtime.store
    user = store.create_user("alice", user_id="user-1")
    connection = store.create_connection(
        "openai", "https://api.example.test/v1", api_key="sk-test-1234567890"
    )
    session = store.create_chat_session(
        user_id=user.id, connection_id=connection.id, model_raw_id="gpt-4o-mini"
    )
    return {"user": user, "connection": connection, "session": session}
