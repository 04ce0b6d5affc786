import pytest
import pytest_asyncio

from recall_chat import config as config_module
from recall_chat import store as store_module
from recall_chat import streaming as streaming_module
from recall_chat.capabilities import registry as registry_module
from recall_chat import llm as llm_module
from recall_chat.config import Config
from recall_chat.memories import MemoryStore
from recall_chat.store import Store, User
from recall_chat.streaming import ChannelHub


@pytest.fixture(autouse=True)
def isolated_globals(tmp_path, monkeypatch):
    """Keep every test off the user's config, database and shared singletons."""
    cfg = Config()
    cfg.store.path = str(tmp_path / "global.db")
    cfg.streaming.min_publish_interval_ms = 0
    monkeypatch.setattr(config_module, "_config", cfg)
    monkeypatch.setattr(store_module, "_store", None)
    monkeypatch.setattr(streaming_module, "_hub", None)
    monkeypatch.setattr(registry_module, "_registry", None)
    monkeypatch.setattr(llm_module, "_provider", None)
    return cfg


@pytest_asyncio.fixture
async def store(tmp_path):
    db = Store(tmp_path / "test.db")
    yield db
    await db.close()


@pytest.fixture
def memories(store):
    return MemoryStore(store)


@pytest.fixture
def hub():
    return ChannelHub(subscriber_queue_size=100)


@pytest_asyncio.fixture
async def user(store):
    return await store.upsert_user(User(id="u1", display_name="Dana", email="dana@example.com"))
