"""Runs the agent CLI for a job and streams its output into the job log.

One ``run`` call owns one OS process from spawn to exit. The agent is
started in its own session so that terminating the job signals the whole
process group, reaping any tools the agent launched.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import shlex
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from jobpilot.config import DEFAULT_AGENT_COMMAND
from jobpilot.errors import AgentSpawnError, InvalidStateError, JobPilotError
from jobpilot.jobs.decisions import persist_job_analysis
from jobpilot.jobs.transcript import line_fragment
from jobpilot.models import JobStatus

if TYPE_CHECKING:
    from collections.abc import Iterable

    from jobpilot.jobs.cancellation import CancellationRegistry, CancellationToken
    from jobpilot.models import Job
    from jobpilot.notifications import SlackNotifier
    from jobpilot.store import JobStore

logger = structlog.get_logger()

APPROVAL_MARKER = "<<<AWAITING_APPROVAL>>>"
CANCELLED_NOTICE = "\nJob cancelled by user\n"
READ_CHUNK = 64 * 1024


class LineBuffer:
    """Reassembles whole lines from arbitrary byte chunks."""

    def __init__(self) -> None:
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        data = self._pending + chunk
        *complete, self._pending = data.split(b"\n")
        return [self._decode(raw) for raw in complete]

    def flush(self) -> list[str]:
        """Return the trailing partial line, if any, at end of stream."""
        if not self._pending:
            return []
        raw, self._pending = self._pending, b""
        return [self._decode(raw)]

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode("utf-8", errors="replace").rstrip("\r")


@dataclass
class RunOutcome:
    """What the stream told us about the run."""

    session_id: str | None = None
    cost_usd: float | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    is_error: bool = False
    result_text: str | None = None
    cancelled: bool = False
    text_tail: str = field(default="", repr=False)

    def observe(self, line: str) -> bool:
        """Record signals carried by one line; True when it requests approval."""
        try:
            event = json.loads(line)
        except ValueError:
            event = None

        if isinstance(event, dict):
            if event.get("type") == "system" and isinstance(event.get("session_id"), str):
                self.session_id = self.session_id or event["session_id"]
            elif event.get("type") == "result":
                self._observe_result(event)

        self.text_tail = (self.text_tail + line_fragment(line))[-4 * len(APPROVAL_MARKER):]
        if APPROVAL_MARKER in self.text_tail:
            self.text_tail = ""
            return True
        return False

    def _observe_result(self, event: dict) -> None:
        if isinstance(event.get("session_id"), str):
            self.session_id = event["session_id"]
        cost = event.get("total_cost_usd")
        if isinstance(cost, int | float):
            self.cost_usd = float(cost)
        usage = event.get("usage")
        if isinstance(usage, dict):
            if isinstance(usage.get("input_tokens"), int):
                self.input_tokens = usage["input_tokens"]
            if isinstance(usage.get("output_tokens"), int):
                self.output_tokens = usage["output_tokens"]
        self.is_error = bool(event.get("is_error"))
        if isinstance(event.get("result"), str):
            self.result_text = event["result"]


@dataclass
class _LiveProcess:
    job_id: str
    process: asyncio.subprocess.Process
    terminating: bool = False


def build_environment(extra_paths: Iterable[str]) -> dict[str, str]:
    """Copy of the current environment with ``extra_paths`` ahead on PATH."""
    env = dict(os.environ)
    extra = [os.path.expanduser(p) for p in extra_paths]
    current = env.get("PATH") or "/usr/bin:/bin"
    env["PATH"] = os.pathsep.join([*extra, current])
    return env


def build_agent_argv(template: str, job: Job, *, resume_session: str | None = None) -> list[str]:
    """Render the command template for ``job`` into an argv list.

    Placeholders are substituted per argument after shell-style splitting,
    so an issue title containing spaces or quotes stays a single argument.
    """
    values = {
        "command": job.command,
        "issue_num": job.issue_num,
        "repo": job.repo,
        "issue_title": job.issue_title,
    }
    try:
        argv = [part.format(**values) for part in shlex.split(template)]
    except (KeyError, IndexError, ValueError) as e:
        raise AgentSpawnError(f"Invalid agent command template: {e}") from e
    if not argv:
        raise AgentSpawnError("Agent command template is empty")
    if resume_session:
        argv += ["--resume", resume_session]
    return argv


def _total(*values: float | None) -> float | None:
    present = [v for v in values if v is not None]
    return sum(present) if present else None


class ProcessSupervisor:
    """Owns the agent processes of running jobs.

    The registry of live processes and the set of ids being spawned are
    guarded by ``self._lock``. The lock is never held across a spawn, a store
    call or a notification, so one slow job cannot stall the others.
    """

    def __init__(
        self,
        store: JobStore,
        cancellation: CancellationRegistry,
        *,
        command_template: str = DEFAULT_AGENT_COMMAND,
        extra_paths: Iterable[str] = (),
        grace_seconds: float = 5.0,
        notifier: SlackNotifier | None = None,
    ) -> None:
        self._store = store
        self._cancellation = cancellation
        self._command_template = command_template
        self._extra_paths = list(extra_paths)
        self._grace_seconds = grace_seconds
        self._notifier = notifier
        self._registry: dict[str, _LiveProcess] = {}
        self._starting: set[str] = set()
        # Usage of runs that stopped awaiting approval, summed on completion
        self._carried: dict[str, RunOutcome] = {}
        self._lock = asyncio.Lock()

    # -- public API ----------------------------------------------------------

    async def is_running(self, job_id: str) -> bool:
        async with self._lock:
            entry = self._registry.get(job_id)
        return entry is not None and entry.process.returncode is None

    async def running_jobs(self) -> list[str]:
        async with self._lock:
            return list(self._registry)

    async def run(self, job: Job, *, resume: bool = False) -> None:
        """Run the agent for ``job`` to completion.

        ``resume`` relaunches a job approved after its process exited: the
        recorded session is passed to the agent and the log is appended to.
        Never raises; failures land on the job record.
        """
        token = self._cancellation.token(job.id)
        async with self._lock:
            if job.id in self._registry or job.id in self._starting:
                logger.warning("supervisor.already_running", job_id=job.id)
                return
            self._starting.add(job.id)
        if not resume:
            self._carried.pop(job.id, None)

        entry = None
        try:
            entry = await self._start(job, resume=resume)
        except JobPilotError:
            logger.exception("supervisor.start_error", job_id=job.id)
        finally:
            async with self._lock:
                self._starting.discard(job.id)
                if entry is not None:
                    self._registry[job.id] = entry
        if entry is None:
            return

        if await self._stopped_while_starting(job, token):
            logger.info("supervisor.stopped_while_starting", job_id=job.id)
            await self.terminate(job.id)
        else:
            await self._notify(job, "started")

        outcome = RunOutcome(session_id=job.session_id)
        stream_error: Exception | None = None
        try:
            await self._drain(job, entry, outcome, token)
        except (OSError, JobPilotError) as e:
            logger.exception("supervisor.stream_error", job_id=job.id)
            stream_error = e
            await self.terminate(job.id)

        returncode = await entry.process.wait()
        async with self._lock:
            if self._registry.get(job.id) is entry:
                del self._registry[job.id]
        logger.info("supervisor.exited", job_id=job.id, returncode=returncode, cancelled=outcome.cancelled)

        try:
            if stream_error is not None:
                await self._fail(job, f"I/O error: {stream_error}")
            else:
                await self._finish(job, returncode, outcome)
        except JobPilotError:
            logger.exception("supervisor.finish_error", job_id=job.id)

    async def send_input(self, job_id: str, text: str) -> bool:
        """Forward ``text`` to the agent as one stream-json user message."""
        async with self._lock:
            entry = self._registry.get(job_id)
        if entry is None or entry.terminating:
            return False
        stdin = entry.process.stdin
        if stdin is None or stdin.is_closing():
            return False

        message = {
            "type": "user",
            "message": {"role": "user", "content": [{"type": "text", "text": text}]},
        }
        try:
            stdin.write((json.dumps(message) + "\n").encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning("supervisor.input_failed", job_id=job_id, error=str(e))
            return False
        logger.info("supervisor.input_sent", job_id=job_id, length=len(text))
        return True

    async def terminate(self, job_id: str) -> bool:
        """Stop the job's process group; a no-op without a live process.

        Closes stdin, sends SIGTERM to the group, and escalates to SIGKILL
        after the grace period. Returns True if this call did the teardown.
        """
        async with self._lock:
            entry = self._registry.get(job_id)
            if entry is None or entry.terminating:
                return False
            entry.terminating = True

        process = entry.process
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        if process.returncode is None:
            self._signal_group(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self._grace_seconds)
            except TimeoutError:
                logger.warning("supervisor.kill", job_id=job_id, grace=self._grace_seconds)
                self._signal_group(process, signal.SIGKILL)
                await process.wait()

        async with self._lock:
            if self._registry.get(job_id) is entry:
                del self._registry[job_id]
        logger.info("supervisor.terminated", job_id=job_id, returncode=process.returncode)
        return True

    # -- internals -----------------------------------------------------------

    async def _start(self, job: Job, *, resume: bool) -> _LiveProcess | None:
        if not Path(job.local_path).is_dir():
            reason = f"Working directory {job.local_path} does not exist"
            logger.warning("supervisor.blocked", job_id=job.id, reason=reason)
            with contextlib.suppress(InvalidStateError):
                await self._store.transition_job(job.id, JobStatus.BLOCKED, error=reason)
            return None

        try:
            argv = build_agent_argv(
                self._command_template, job, resume_session=job.session_id if resume else None
            )
        except AgentSpawnError as e:
            argv, spawn_error = None, str(e)
        else:
            spawn_error = None

        try:
            await self._store.transition_job(
                job.id,
                JobStatus.RUNNING,
                expected=[JobStatus.PENDING, JobStatus.APPROVED_RESUME],
                full_command=shlex.join(argv) if argv else job.full_command,
            )
        except InvalidStateError as e:
            logger.info("supervisor.not_started", job_id=job.id, reason=str(e))
            if JobStatus(e.current).is_terminal:
                self._forget(job.id)
            return None

        log_path = Path(job.log_path)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            if not resume:
                log_path.write_text("", encoding="utf-8")
        except OSError as e:
            await self._fail(job, f"Cannot write log {log_path}: {e}")
            return None

        if argv is None:
            await self._fail(job, spawn_error)
            return None

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=job.local_path,
                env=build_environment(self._extra_paths),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("supervisor.spawn_failed", job_id=job.id, argv=argv, error=str(e))
            await self._fail(job, f"Failed to start agent: {e}")
            return None

        logger.info("supervisor.spawned", job_id=job.id, pid=process.pid, resume=resume, cwd=job.local_path)
        return _LiveProcess(job_id=job.id, process=process)

    async def _stopped_while_starting(self, job: Job, token: CancellationToken) -> bool:
        """True if the job was cancelled or moved on before its process registered."""
        if token.cancelled:
            return True
        try:
            current = await self._store.get_job(job.id)
        except JobPilotError:
            logger.exception("supervisor.status_check_failed", job_id=job.id)
            return False
        return current is None or current.status != JobStatus.RUNNING

    async def _drain(
        self, job: Job, entry: _LiveProcess, outcome: RunOutcome, token: CancellationToken
    ) -> None:
        stdout = entry.process.stdout
        buffer = LineBuffer()
        with open(job.log_path, "a", encoding="utf-8") as log:
            while True:
                chunk = await stdout.read(READ_CHUNK)
                lines = buffer.feed(chunk) if chunk else buffer.flush()
                for line in lines:
                    log.write(line + "\n")
                    log.flush()
                    if outcome.observe(line):
                        await self._request_approval(job, outcome)
                    if token.cancelled:
                        outcome.cancelled = True
                        break
                if outcome.cancelled or not chunk:
                    break

        if outcome.cancelled:
            logger.info("supervisor.cancel_observed", job_id=job.id)
            await self.terminate(job.id)

    async def _request_approval(self, job: Job, outcome: RunOutcome) -> None:
        try:
            await self._store.transition_job(
                job.id,
                JobStatus.WAITING_APPROVAL,
                expected=[JobStatus.RUNNING],
                session_id=outcome.session_id,
            )
        except InvalidStateError:
            return
        logger.info("supervisor.awaiting_approval", job_id=job.id)
        await self._notify(job, "waiting_approval")

    async def _finish(self, job: Job, returncode: int, outcome: RunOutcome) -> None:
        current = await self._store.get_job(job.id)
        if current is None:
            self._forget(job.id)
            return

        if outcome.cancelled or current.status == JobStatus.REJECTED:
            if current.status == JobStatus.RUNNING:
                current = await self._store.transition_job(job.id, JobStatus.REJECTED, error="Cancelled")
            with open(job.log_path, "a", encoding="utf-8") as log:
                log.write(CANCELLED_NOTICE)
            if current.status.is_terminal:
                self._forget(job.id)
            return

        if current.status == JobStatus.WAITING_APPROVAL:
            self._carry(job.id, outcome)
            await self._store.update_job_session(job.id, session_id=outcome.session_id)
            logger.info("supervisor.exited_awaiting_approval", job_id=job.id)
            return

        if current.status == JobStatus.APPROVED_RESUME:
            # Approved after the agent had already stopped reading input
            self._carry(job.id, outcome)
            await self._store.update_job_session(job.id, session_id=outcome.session_id)
            resumed = await self._store.get_job(job.id)
            await self.run(resumed, resume=True)
            return

        if current.status != JobStatus.RUNNING:
            logger.info("supervisor.status_changed_externally", job_id=job.id, status=current.status.value)
            self._forget(job.id)
            return

        if returncode != 0 or outcome.is_error:
            if outcome.is_error and outcome.result_text:
                error = outcome.result_text
            else:
                error = f"Exit code: {returncode}"
            await self._store.update_job_session(job.id, session_id=outcome.session_id)
            await self._fail(job, error)
            return

        completed = await self._store.update_job_completed(job.id, **self._usage(job.id, outcome))
        self._forget(job.id)
        logger.info("supervisor.completed", job_id=job.id, cost_usd=outcome.cost_usd)
        try:
            await persist_job_analysis(self._store, completed)
        except JobPilotError:
            logger.exception("supervisor.analysis_failed", job_id=job.id)
        await self._notify(completed, "completed")

    def _carry(self, job_id: str, outcome: RunOutcome) -> None:
        self._carried[job_id] = RunOutcome(
            cost_usd=outcome.cost_usd,
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
        )

    def _usage(self, job_id: str, outcome: RunOutcome) -> dict:
        """Session and usage of the final run plus any runs before approval."""
        earlier = self._carried.pop(job_id, RunOutcome())
        return {
            "session_id": outcome.session_id,
            "cost_usd": _total(earlier.cost_usd, outcome.cost_usd),
            "input_tokens": _total(earlier.input_tokens, outcome.input_tokens),
            "output_tokens": _total(earlier.output_tokens, outcome.output_tokens),
        }

    def _forget(self, job_id: str) -> None:
        self._carried.pop(job_id, None)
        self._cancellation.clear(job_id)

    async def _fail(self, job: Job, error: str) -> None:
        try:
            await self._store.transition_job(job.id, JobStatus.FAILED, expected=[JobStatus.RUNNING], error=error)
        except InvalidStateError:
            logger.info("supervisor.fail_skipped", job_id=job.id)
            return
        finally:
            self._forget(job.id)
        with contextlib.suppress(OSError), open(job.log_path, "a", encoding="utf-8") as log:
            log.write(f"\nError: {error}\n")
        logger.warning("supervisor.failed", job_id=job.id, error=error)
        await self._notify(job, "failed", error)

    async def _notify(self, job: Job, event: str, detail: str | None = None) -> None:
        if self._notifier is None:
            return
        await asyncio.to_thread(self._notifier.post_job_event, job, event, detail)

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except OSError:
            with contextlib.suppress(ProcessLookupError):
                process.send_signal(sig)
