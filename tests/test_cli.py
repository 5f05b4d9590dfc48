import asyncio
import re

from click.testing import CliRunner

from beads_console import cli
from beads_console.agent import AgentChunk, ChunkType
from beads_console.db import MemoryDatabase
from beads_console.events import GLOBAL_CHANNEL
from beads_console.memory.store import MemoryStore
from beads_console.runner import TaskRunner


async def _load_entry(project_dir, entry_id):
    db = MemoryDatabase.for_project(project_dir.resolve())
    try:
        return await MemoryStore(db).get_entry(entry_id)
    finally:
        await db.dispose()


def test_memory_action_records_and_lists_reports(project_dir) -> None:
    runner = CliRunner()

    ok = runner.invoke(cli.main, ["memory", "action", "-P", str(project_dir), "Greet", "echo hello"])
    assert ok.exit_code == 0, ok.output
    assert "[Action SUCCESS] `echo hello`" in ok.output

    failed = runner.invoke(cli.main, ["memory", "action", "-P", str(project_dir), "Break", "exit 3"])
    assert failed.exit_code == 0, failed.output
    assert "Exit code: 3" in failed.output

    listing = runner.invoke(cli.main, ["memory", "actions", "-P", str(project_dir)])
    assert listing.exit_code == 0, listing.output
    assert "Action: Greet" in listing.output
    assert "1 succeeded, 1 failed" in listing.output

    entry_id = re.search(r"Report ([0-9a-f-]{36})", ok.output).group(1)
    entry = asyncio.run(_load_entry(project_dir, entry_id))
    assert "hello" in entry.content
    assert entry.data["working_directory"] == str(project_dir.resolve())


def test_memory_action_sends_report_to_chat(project_dir) -> None:
    runner = CliRunner()
    ran = runner.invoke(cli.main, ["memory", "action", "-P", str(project_dir), "Greet", "echo hello"])
    entry_id = re.search(r"Report ([0-9a-f-]{36})", ran.output).group(1)

    chat = runner.invoke(cli.main, ["memory", "actions", "-P", str(project_dir), "--chat", entry_id])

    assert chat.exit_code == 0, chat.output
    assert "**Action Result: Action: Greet**" in chat.output
    assert "The action completed successfully." in chat.output
    entry = asyncio.run(_load_entry(project_dir, entry_id))
    assert entry.data["sentToChat"]["method"] == "full"


def test_memory_action_rejects_malformed_env(project_dir) -> None:
    result = CliRunner().invoke(
        cli.main, ["memory", "action", "-P", str(project_dir), "Greet", "echo hi", "--env", "NOEQUALS"]
    )
    assert result.exit_code != 0
    assert "KEY=VALUE" in result.output


def test_run_start_streams_the_run_without_a_global_subscriber(
    project_dir, bead_store, agents, fast_settings, monkeypatch
) -> None:
    bead_store.add("t1", "Add retries")
    agents.queue(([AgentChunk(type=ChunkType.TEXT, content="Retries [done]\nTASK_COMPLETED: added retries")], 0))

    async def dispose() -> None:
        pass

    bead_store.dispose = dispose
    seen: dict[str, int] = {}

    class RecordingRunner(TaskRunner):
        def __init__(self, project_path, store, **kwargs) -> None:
            super().__init__(project_path, store, agent_factory=agents, config=fast_settings, **kwargs)

        async def shutdown(self) -> None:
            seen["global_subscribers"] = self.hub.subscriber_count(GLOBAL_CHANNEL)
            await super().shutdown()

    monkeypatch.setattr(cli.SqliteBeadStore, "for_project", classmethod(lambda cls, path: bead_store))
    monkeypatch.setattr(cli, "TaskRunner", RecordingRunner)

    result = CliRunner().invoke(cli.main, ["run", "start", str(project_dir), "t1", "--no-redis"])

    assert result.exit_code == 0, result.output
    assert "Retries [done]" in result.output
    assert "Run completed: added retries" in result.output
    assert seen["global_subscribers"] == 0
