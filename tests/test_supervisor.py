import asyncio
import os
import sys
import textwrap

import pytest

from gerrit_review_mcp.supervisor import AgentError, AgentSupervisor, CancellationToken, RunOutcome


def _script(body: str):
    return [sys.executable, "-c", textwrap.dedent(body)]


class Recorder:
    def __init__(self):
        self.progress = []
        self.output = []

    @property
    def text(self):
        return "".join(self.output)

    def supervisor(self, body, **kwargs):
        return AgentSupervisor(
            command=_script(body),
            on_progress=self.progress.append,
            on_output=self.output.append,
            **kwargs,
        )


@pytest.fixture
def recorder():
    return Recorder()


@pytest.mark.asyncio
async def test_result_then_clean_exit(recorder):
    supervisor = recorder.supervisor("""
        import sys
        sys.stdin.read()
        print('{"type":"system","subtype":"init","model":"test-model"}', flush=True)
        print('{"type":"result","duration_ms":1500}', flush=True)
    """, timeout=10)

    outcome = await supervisor.run("review change 1")

    assert outcome is RunOutcome.COMPLETED
    assert recorder.progress == ["Agent started", "Agent finished"]
    assert "Agent model: test-model" in recorder.text
    assert "Agent finished (2s)" in recorder.text
    assert "[Completed in" in recorder.text


@pytest.mark.asyncio
async def test_prompt_is_delivered_on_stdin(recorder):
    supervisor = recorder.supervisor("""
        import sys
        print("got:" + sys.stdin.read())
    """, timeout=10)

    await supervisor.run("Read and follow /tmp/prompt.md")

    assert "got:Read and follow /tmp/prompt.md\n" in recorder.output


@pytest.mark.asyncio
async def test_line_split_across_chunks(recorder):
    supervisor = recorder.supervisor("""
        import sys, time
        sys.stdout.write('{"type":"assistant"')
        sys.stdout.flush()
        time.sleep(0.3)
        sys.stdout.write(',"message":{"content":[{"text":"calling gerrit_get_comments"}]}}\\n')
        sys.stdout.flush()
    """, timeout=10)

    assert await supervisor.run("") is RunOutcome.COMPLETED
    assert recorder.progress == ["Reading comments..."]
    assert "calling gerrit_get_comments" in recorder.output


@pytest.mark.asyncio
async def test_unterminated_last_line_is_processed(recorder):
    supervisor = recorder.supervisor("""
        import sys
        sys.stdout.write('{"type":"result","duration_ms":3000}')
    """, timeout=10)

    assert await supervisor.run("") is RunOutcome.COMPLETED
    assert recorder.progress == ["Agent finished"]
    assert "Agent finished (3s)\n" in recorder.output


@pytest.mark.asyncio
async def test_repeated_status_reported_once(recorder):
    supervisor = recorder.supervisor("""
        line = '{"type":"assistant","message":{"content":[{"text":"using gerrit_get_file_content"}]}}'
        print(line)
        print(line)
        print('{"type":"assistant","message":{"content":[{"text":"using gerrit_post_draft_comment"}]}}')
        print(line)
    """, timeout=10)

    await supervisor.run("")

    assert recorder.progress == [
        "Reading file contents...",
        "Posting review comment...",
        "Reading file contents...",
    ]


@pytest.mark.asyncio
async def test_plain_stdout_and_stderr_are_forwarded(recorder):
    supervisor = recorder.supervisor("""
        import sys
        print("not json at all")
        print("boom", file=sys.stderr)
    """, timeout=10)

    await supervisor.run("")

    assert "not json at all\n" in recorder.output
    assert "[stderr] boom\n" in recorder.output
    assert recorder.progress == []


@pytest.mark.asyncio
async def test_nonzero_exit_rejects(recorder, tmp_path):
    artifact = tmp_path / "prompt.md"
    artifact.write_text("prompt")
    supervisor = recorder.supervisor("""
        import sys
        sys.exit(3)
    """, timeout=10)

    with pytest.raises(AgentError, match="exited with code 3") as excinfo:
        await supervisor.run("", artifacts=[artifact])

    assert excinfo.value.exit_code == 3
    assert not artifact.exists()


@pytest.mark.asyncio
async def test_spawn_failure_names_binary(recorder):
    supervisor = AgentSupervisor(command=["no-such-review-agent-binary"], on_output=recorder.output.append)

    with pytest.raises(AgentError, match="no-such-review-agent-binary"):
        await supervisor.run("prompt")

    assert "[ERROR]" in recorder.text


@pytest.mark.asyncio
@pytest.mark.skipif(os.name == "nt", reason="signal 0 liveness checks are POSIX only")
async def test_timeout_resolves_and_kills(recorder, tmp_path):
    artifact = tmp_path / "prompt.md"
    artifact.write_text("prompt")
    supervisor = recorder.supervisor("""
        import os, time
        print("pid:%d" % os.getpid(), flush=True)
        time.sleep(60)
    """, timeout=1.0)

    loop = asyncio.get_running_loop()
    started = loop.time()
    outcome = await supervisor.run("", artifacts=[artifact])
    elapsed = loop.time() - started

    assert outcome is RunOutcome.TIMED_OUT
    assert 0.9 <= elapsed < 10
    assert "[Timed out after 1s]" in recorder.text
    assert not artifact.exists()

    pid = int(next(line for line in recorder.output if line.startswith("pid:"))[4:])
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_cancel_before_spawn_does_not_start_process():
    token = CancellationToken()
    token.cancel()
    supervisor = AgentSupervisor(command=["no-such-review-agent-binary"])

    assert await supervisor.run("prompt", cancel_token=token) is RunOutcome.CANCELLED


@pytest.mark.asyncio
async def test_cancel_while_running_resolves(recorder, tmp_path):
    artifact = tmp_path / "prompt.md"
    artifact.write_text("prompt")
    token = CancellationToken()

    def on_progress(status):
        recorder.progress.append(status)
        token.cancel()

    supervisor = AgentSupervisor(
        command=_script("""
            import time
            print('{"type":"system","subtype":"init"}', flush=True)
            time.sleep(60)
        """),
        timeout=30,
        on_progress=on_progress,
        on_output=recorder.output.append,
    )

    outcome = await asyncio.wait_for(supervisor.run("", cancel_token=token, artifacts=[artifact]), 10)

    assert outcome is RunOutcome.CANCELLED
    assert recorder.progress == ["Agent started"]
    assert "[Cancelled]" in recorder.text
    assert not artifact.exists()


@pytest.mark.asyncio
async def test_missing_artifact_is_ignored(recorder, tmp_path):
    supervisor = recorder.supervisor("pass", timeout=10)
    outcome = await supervisor.run("", artifacts=[tmp_path / "already-gone.md"])
    assert outcome is RunOutcome.COMPLETED


def test_model_flag_appended():
    supervisor = AgentSupervisor()
    assert supervisor.build_command("gpt-4o")[-2:] == ["--model", "gpt-4o"]
    assert supervisor.build_command()[:2] == ["cursor", "agent"]
    assert "--model" not in supervisor.build_command("")
    assert "stream-json" in supervisor.build_command()


@pytest.mark.asyncio
async def test_infinite_duration_on_last_line_still_completes(recorder):
    supervisor = recorder.supervisor("""
        import sys
        sys.stdout.write('{"type":"result","duration_ms":Infinity}')
    """, timeout=10)

    loop = asyncio.get_running_loop()
    started = loop.time()
    assert await supervisor.run("") is RunOutcome.COMPLETED
    assert loop.time() - started < 5
    assert recorder.progress == ["Agent finished"]


@pytest.mark.asyncio
async def test_lines_after_unusual_record_are_kept(recorder):
    supervisor = recorder.supervisor("""
        print('{"type":"result","duration_ms":NaN}')
        print('still here')
    """, timeout=10)

    assert await supervisor.run("") is RunOutcome.COMPLETED
    assert "still here\n" in recorder.output
