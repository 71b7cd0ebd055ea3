import logging

import pytest

from rconflow.persistence import ExecutionLog, InMemoryWorkflowRepository
from rconflow.recorder import ExecutionRecorder
from rconflow.utils.retry import compute_backoff, retry_async


class FlakyRepository(InMemoryWorkflowRepository):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def append_execution_log(self, log):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise ConnectionError("database unavailable")
        await super().append_execution_log(log)


def _log():
    return ExecutionLog(
        execution_id="exec-1",
        workflow_id="wf-1",
        step_id="a",
        step_order=1,
        step_name="a",
        step_type="action",
        step_status="completed",
    )


def test_compute_backoff_grows():
    assert compute_backoff(0, jitter=0) == 1
    assert compute_backoff(2, jitter=0) == pytest.approx(2.25)


@pytest.mark.asyncio
async def test_record_step_retries_transient_failures():
    repo = FlakyRepository(failures=2)
    recorder = ExecutionRecorder(repo, attempts=3, backoff_scale=0)
    await recorder.record_step(_log())
    assert repo.calls == 3
    assert len(await repo.list_execution_logs("exec-1")) == 1


@pytest.mark.asyncio
async def test_record_step_gives_up_without_raising(caplog):
    repo = FlakyRepository(failures=10)
    recorder = ExecutionRecorder(repo, attempts=2, backoff_scale=0)
    with caplog.at_level(logging.ERROR):
        await recorder.record_step(_log())
    assert repo.calls == 2
    assert "Giving up on recording step a" in caplog.text


@pytest.mark.asyncio
async def test_record_message_normalizes_level(repo, caplog):
    recorder = ExecutionRecorder(repo, attempts=1)
    with caplog.at_level(logging.INFO, logger="rconflow.workflow"):
        entry = await recorder.record_message("exec-1", "wf-1", "hello", level="verbose")
        warn = await recorder.record_message("exec-1", "wf-1", "careful", level="warning")
    assert entry.log_level == "INFO"
    assert warn.log_level == "WARN"
    assert "[workflow=wf-1 execution=exec-1 step=None] hello" in caplog.text
    assert [m.message for m in await repo.list_log_messages("exec-1")] == ["hello", "careful"]


@pytest.mark.asyncio
async def test_retry_async_returns_result():
    async def operation():
        return 42

    assert await retry_async(operation, 3, "answer") == 42
