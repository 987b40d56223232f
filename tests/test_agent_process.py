# Tests for agent_process.py
import asyncio
import os
import sys
import tempfile
import unittest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from agent_process import AgentProcessController, chunk_text, exit_code_from_returncode
from errors import AgentAlreadyRunningError, InvalidTransitionError
from models import AgentStatus
from session_protocol import ExitMessage, OutputMessage, ProgressMessage, StatusMessage

PY = sys.executable


def script(code: str) -> list:
    return [PY, "-u", "-c", code]


class Recorder:
    def __init__(self):
        self.events = []
        self.statuses = []

    def on_event(self, message):
        self.events.append(message)

    def on_status(self, status, **details):
        self.statuses.append((status, details))

    def output(self) -> str:
        return "".join(m.data for m in self.events if isinstance(m, OutputMessage))

    def kinds(self) -> list:
        return [type(m).__name__ for m in self.events]


class HelperTests(unittest.TestCase):
    def test_exit_code_mapping(self):
        self.assertEqual(exit_code_from_returncode(0), 0)
        self.assertEqual(exit_code_from_returncode(3), 3)
        self.assertEqual(exit_code_from_returncode(-15), 143)

    def test_chunking(self):
        chunks = chunk_text("a" * 10000)
        self.assertEqual([len(c) for c in chunks], [4096, 4096, 1808])


class AgentProcessControllerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.rec = Recorder()
        self.ctl = AgentProcessController(
            "task-1",
            on_event=self.rec.on_event,
            on_status=self.rec.on_status,
            stop_grace_seconds=1.0,
        )
        self.cwd = tempfile.mkdtemp()

    async def asyncTearDown(self):
        await self.ctl.stop()

    async def test_clean_exit_completes_after_output(self):
        await self.ctl.start(script("print('hello')"), cwd=self.cwd)
        self.assertEqual(self.ctl.status, AgentStatus.RUNNING)
        code = await asyncio.wait_for(self.ctl.wait(), timeout=10)

        self.assertEqual(code, 0)
        self.assertEqual(self.ctl.status, AgentStatus.COMPLETED)
        self.assertIn("hello", self.rec.output())
        kinds = self.rec.kinds()
        self.assertEqual(kinds[-2:], ["StatusMessage", "ExitMessage"])
        self.assertLess(kinds.index("OutputMessage"), kinds.index("ExitMessage"))
        self.assertEqual(self.rec.events[-2], StatusMessage(running=False, status="completed"))
        self.assertEqual(self.rec.events[-1], ExitMessage(0))
        self.assertEqual([s for s, _ in self.rec.statuses], [AgentStatus.RUNNING, AgentStatus.COMPLETED])

    async def test_nonzero_exit_fails_with_code(self):
        await self.ctl.start(script("import sys; sys.exit(3)"), cwd=self.cwd)
        await asyncio.wait_for(self.ctl.wait(), timeout=10)
        self.assertEqual(self.ctl.status, AgentStatus.FAILED)
        self.assertEqual(self.ctl.exit_code, 3)
        self.assertEqual(self.rec.statuses[-1][1]["exit_code"], 3)
        self.assertEqual(self.rec.events[-1], ExitMessage(3))

    async def test_spawn_failure_goes_straight_to_failed(self):
        await self.ctl.start(["/definitely/not/an/agent"], cwd=self.cwd)
        self.assertEqual(self.ctl.status, AgentStatus.FAILED)
        self.assertIsNotNone(self.ctl.error)
        self.assertFalse(self.ctl.is_live)
        self.assertEqual([s for s, _ in self.rec.statuses], [AgentStatus.FAILED])
        self.assertNotIn("ExitMessage", self.rec.kinds())

    async def test_environment_and_cwd_are_passed(self):
        await self.ctl.start(
            script("import os; print(os.environ['SPECFLUX_TASK_ID'], os.getcwd(), os.environ['TERM'])"),
            cwd=self.cwd,
            env={"SPECFLUX_TASK_ID": "42"},
        )
        await asyncio.wait_for(self.ctl.wait(), timeout=10)
        out = self.rec.output()
        self.assertIn("42", out)
        self.assertIn(os.path.realpath(self.cwd), out)
        self.assertIn("xterm-256color", out)

    async def test_double_start_is_rejected(self):
        await self.ctl.start(script("import time; time.sleep(30)"), cwd=self.cwd)
        with self.assertRaises(AgentAlreadyRunningError):
            await self.ctl.start(script("print(1)"), cwd=self.cwd)

    async def test_stop_terminates_and_reports_stopped(self):
        await self.ctl.start(script("import time; print('up'); time.sleep(30)"), cwd=self.cwd)
        await self.ctl.stop()
        self.assertEqual(self.ctl.status, AgentStatus.STOPPED)
        self.assertFalse(self.ctl.is_live)
        self.assertEqual(self.rec.events[-2], StatusMessage(running=False, status="stopped"))
        self.assertIsInstance(self.rec.events[-1], ExitMessage)

    async def test_stop_escalates_to_kill(self):
        code = "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); print('ready', flush=True); time.sleep(30)"
        await self.ctl.start(script(code), cwd=self.cwd)
        for _ in range(100):
            if "ready" in self.rec.output():
                break
            await asyncio.sleep(0.05)
        await asyncio.wait_for(self.ctl.stop(), timeout=10)
        self.assertEqual(self.ctl.status, AgentStatus.STOPPED)
        self.assertEqual(self.ctl.exit_code, 137)

    async def test_stop_without_process_is_safe(self):
        await self.ctl.stop()
        await self.ctl.stop()
        self.assertEqual(self.ctl.status, AgentStatus.IDLE)
        self.assertEqual(self.rec.events, [])

    async def test_pause_resume_cycle(self):
        await self.ctl.start(script("import time; time.sleep(30)"), cwd=self.cwd)
        await self.ctl.pause()
        self.assertEqual(self.ctl.status, AgentStatus.PAUSED)
        with self.assertRaises(InvalidTransitionError):
            await self.ctl.pause()
        await self.ctl.resume()
        self.assertEqual(self.ctl.status, AgentStatus.RUNNING)
        await self.ctl.pause()
        await self.ctl.stop()
        self.assertEqual(self.ctl.status, AgentStatus.STOPPED)

    async def test_pause_requires_running(self):
        with self.assertRaises(InvalidTransitionError):
            await self.ctl.pause()
        with self.assertRaises(InvalidTransitionError):
            await self.ctl.resume()

    async def test_input_is_forwarded_while_running(self):
        await self.ctl.start(script("line = input(); print('got:' + line)"), cwd=self.cwd)
        self.assertTrue(self.ctl.write("ping\r"))
        await asyncio.wait_for(self.ctl.wait(), timeout=10)
        self.assertIn("got:ping", self.rec.output())

    async def test_input_is_dropped_when_not_running(self):
        self.assertFalse(self.ctl.write("ignored"))
        await self.ctl.start(script("import time; time.sleep(30)"), cwd=self.cwd)
        await self.ctl.pause()
        self.assertFalse(self.ctl.write("ignored"))

    async def test_resize_is_applied_to_terminal(self):
        code = (
            "import os, sys, time\n"
            "for _ in range(100):\n"
            "    size = os.get_terminal_size(0)\n"
            "    if size.columns == 80:\n"
            "        break\n"
            "    time.sleep(0.05)\n"
            "print('size', size.columns, size.lines)\n"
        )
        await self.ctl.start(script(code), cwd=self.cwd, cols=100, rows=30)
        self.ctl.resize(80, 24)
        await asyncio.wait_for(self.ctl.wait(), timeout=10)
        self.assertIn("size 80 24", self.rec.output())
        self.assertEqual((self.ctl.cols, self.ctl.rows), (80, 24))

    async def test_restart_after_completion(self):
        await self.ctl.start(script("print('one')"), cwd=self.cwd)
        await asyncio.wait_for(self.ctl.wait(), timeout=10)
        await self.ctl.start(script("print('two')"), cwd=self.cwd)
        await asyncio.wait_for(self.ctl.wait(), timeout=10)
        self.assertEqual(self.ctl.status, AgentStatus.COMPLETED)
        self.assertIn("two", self.rec.output())

    async def test_progress_hint_from_output(self):
        await self.ctl.start(script("print('Progress: 40%')"), cwd=self.cwd)
        await asyncio.wait_for(self.ctl.wait(), timeout=10)
        progress = [m for m in self.rec.events if isinstance(m, ProgressMessage)]
        self.assertEqual(progress, [ProgressMessage(40)])

    async def test_error_lines_are_logged(self):
        with self.assertLogs("agent_process", level="WARNING") as logs:
            await self.ctl.start(script("print('Error: database is locked')"), cwd=self.cwd)
            await asyncio.wait_for(self.ctl.wait(), timeout=10)
        problems = [line for line in logs.output if "database is locked" in line]
        self.assertEqual(len(problems), 1)
        self.assertIn("task-1", problems[0])
        self.assertIn("error", problems[0])

    async def test_mark_failed(self):
        self.ctl.mark_failed("not a git repository")
        self.assertEqual(self.ctl.status, AgentStatus.FAILED)
        self.assertEqual(
            self.rec.events,
            [StatusMessage(running=False, status="failed", error="not a git repository")],
        )


if __name__ == '__main__':
    unittest.main()
