import asyncio

from typer.testing import CliRunner

import recall_chat.main as main_module
from recall_chat import __version__
from recall_chat.main import app
from recall_chat.memories import MemoryStore
from recall_chat.store import Store

runner = CliRunner()


def test_version_command():
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert f"Recall Chat v{__version__}" in result.output


def test_memories_command_lists_active_memories(monkeypatch, tmp_path):
    monkeypatch.setattr(main_module, "configure_logging", lambda: None)
    db_path = tmp_path / "cli.db"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"store:\n  path: {db_path}\n", encoding="utf-8")

    async def seed() -> None:
        store = Store(db_path)
        memories = MemoryStore(store)
        await memories.create(user_id="u1", conversation_id="c1", content="Teaches 7th grade math")
        gone = await memories.create(user_id="u1", conversation_id="c1", content="Old detail")
        await memories.soft_delete([gone.id])
        await store.close()

    asyncio.run(seed())

    result = runner.invoke(app, ["memories", "-u", "u1", "-c", str(config_path)])

    assert result.exit_code == 0
    assert "Teaches 7th grade math" in result.output
    assert "cited 0x" in result.output
    assert "Old detail" not in result.output


def test_memories_command_with_no_memories(monkeypatch, tmp_path):
    monkeypatch.setattr(main_module, "configure_logging", lambda: None)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"store:\n  path: {tmp_path / 'empty.db'}\n", encoding="utf-8")

    result = runner.invoke(app, ["memories", "-u", "nobody", "-c", str(config_path)])

    assert result.exit_code == 0
    assert "No memories." in result.output


def test_memories_command_forgets_only_the_users_own_memory(monkeypatch, tmp_path):
    monkeypatch.setattr(main_module, "configure_logging", lambda: None)
    db_path = tmp_path / "cli.db"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"store:\n  path: {db_path}\n", encoding="utf-8")

    async def seed() -> tuple[str, str]:
        store = Store(db_path)
        memories = MemoryStore(store)
        mine = await memories.create(user_id="u1", conversation_id="c1", content="Teaches 7th grade math")
        theirs = await memories.create(user_id="u2", conversation_id="c2", content="Coaches soccer")
        await store.close()
        return mine.id, theirs.id

    async def active(user_id: str) -> list[str]:
        store = Store(db_path)
        try:
            return [m.id for m in await MemoryStore(store).find_active(user_id=user_id)]
        finally:
            await store.close()

    mine, theirs = asyncio.run(seed())

    foreign = runner.invoke(app, ["memories", "-u", "u1", "--forget", theirs, "-c", str(config_path)])
    missing = runner.invoke(app, ["memories", "-u", "u1", "--forget", "missing", "-c", str(config_path)])
    forgotten = runner.invoke(app, ["memories", "-u", "u1", "--forget", mine, "-c", str(config_path)])

    assert foreign.exit_code == 1
    assert missing.exit_code == 1
    assert forgotten.exit_code == 0
    assert f"Forgot memory {mine}." in forgotten.output
    assert asyncio.run(active("u1")) == []
    assert asyncio.run(active("u2")) == [theirs]
