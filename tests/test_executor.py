import threading
import time
import unittest

from remote_exec import CommandError, CommandExecutor, ErrorKind, SessionError, run_command
from remote_exec.executor import CommandResult
from tests.simulated_peer import SimulatedPeer


class CommandExecutorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.executor = CommandExecutor(poll_interval=0.01)

    def test_echo_returns_exact_stdout(self) -> None:
        peer = SimulatedPeer()
        result = self.executor.run(peer, "echo test", timeout=2)
        self.assertTrue(result.ok)
        self.assertEqual(result.output, b"test\n")
        self.assertEqual(result.stdout, "test\n")
        self.assertEqual(result.exit_status, 0)
        self.assertEqual(peer.last_session.command, "echo test")

    def test_stderr_is_discarded_on_success(self) -> None:
        result = self.executor.run(SimulatedPeer(), "warn", timeout=2)
        self.assertTrue(result.ok)
        self.assertEqual(result.output, b"done\n")
        self.assertEqual(result.stderr, b"")

    def test_nonzero_exit_is_command_failed_with_stderr(self) -> None:
        result = self.executor.run(SimulatedPeer(), "fail", timeout=2)
        self.assertEqual(result.error_kind, ErrorKind.COMMAND_FAILED)
        self.assertEqual(result.exit_status, 2)
        self.assertIn("something went wrong", result.detail)
        self.assertEqual(result.stderr, b"something went wrong\n")
        self.assertEqual(result.output, b"")

    def test_unknown_command_fails_with_nonzero_status(self) -> None:
        result = self.executor.run(SimulatedPeer(), "frobnicate --now", timeout=2)
        self.assertEqual(result.error_kind, ErrorKind.COMMAND_FAILED)
        self.assertEqual(result.exit_status, 127)
        self.assertIn("command not found", result.detail)

    def test_cancel_sends_termination_signal(self) -> None:
        peer = SimulatedPeer()
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)
        timer.start()
        try:
            started = time.monotonic()
            result = self.executor.run(peer, "sleep 10", timeout=5, cancel=cancel)
            elapsed = time.monotonic() - started
        finally:
            timer.cancel()

        self.assertEqual(result.error_kind, ErrorKind.CANCELLED)
        self.assertLess(elapsed, 1.0)
        session = peer.last_session
        self.assertEqual(session.signals, ["TERM"])
        session.thread.join(timeout=2)
        self.assertFalse(session.thread.is_alive())
        self.assertTrue(session.closed)

    def test_cancel_already_set(self) -> None:
        cancel = threading.Event()
        cancel.set()
        result = self.executor.run(SimulatedPeer(), "sleep 10", timeout=5, cancel=cancel)
        self.assertEqual(result.error_kind, ErrorKind.CANCELLED)

    def test_deadline_exceeded_returns_promptly(self) -> None:
        peer = SimulatedPeer()
        started = time.monotonic()
        result = self.executor.run(peer, "sleep 10", timeout=1)
        elapsed = time.monotonic() - started

        self.assertEqual(result.error_kind, ErrorKind.DEADLINE_EXCEEDED)
        self.assertGreaterEqual(elapsed, 1.0)
        self.assertLess(elapsed, 1.5)
        self.assertEqual(peer.last_session.signals, ["TERM"])

    def test_deadline_does_not_wait_for_process_ignoring_signal(self) -> None:
        started = time.monotonic()
        result = self.executor.run(SimulatedPeer(), "stubborn 10", timeout=0.5)
        self.assertEqual(result.error_kind, ErrorKind.DEADLINE_EXCEEDED)
        self.assertLess(time.monotonic() - started, 1.0)

    def test_timeout_and_cancel_are_distinguishable_from_failure(self) -> None:
        kinds = {
            self.executor.run(SimulatedPeer(), "sleep 5", timeout=0.2).error_kind,
            self.executor.run(SimulatedPeer(), "fail", timeout=2).error_kind,
        }
        self.assertEqual(kinds, {ErrorKind.DEADLINE_EXCEEDED, ErrorKind.COMMAND_FAILED})

    def test_large_interleaved_output_does_not_deadlock(self) -> None:
        size = 1 << 20
        peer = SimulatedPeer(pipe_capacity=4096)
        result = self.executor.run(peer, f"flood {size}", timeout=10)
        self.assertTrue(result.ok, result.detail)
        self.assertEqual(len(result.output), size)
        self.assertEqual(set(result.output), {ord("o")})

    def test_small_chunk_size_preserves_stream_order(self) -> None:
        executor = CommandExecutor(chunk_size=3, poll_interval=0.01)
        result = executor.run(SimulatedPeer(), "echo alpha beta gamma", timeout=2)
        self.assertEqual(result.output, b"alpha beta gamma\n")

    def test_session_open_failure(self) -> None:
        peer = SimulatedPeer(open_error=RuntimeError("administratively prohibited"))
        result = self.executor.run(peer, "echo test", timeout=2)
        self.assertEqual(result.error_kind, ErrorKind.SESSION_CREATE_FAILED)
        self.assertIn("administratively prohibited", result.detail)

    def test_session_error_kind_is_preserved(self) -> None:
        peer = SimulatedPeer(
            open_error=SessionError(ErrorKind.SESSION_CREATE_FAILED, "connection is closed")
        )
        result = self.executor.run(peer, "echo test", timeout=2)
        self.assertEqual(result.error_kind, ErrorKind.SESSION_CREATE_FAILED)
        self.assertEqual(result.detail, "connection is closed")

    def test_rejected_exec_is_command_start_failed(self) -> None:
        peer = SimulatedPeer(reject_exec=True)
        result = self.executor.run(peer, "echo test", timeout=2)
        self.assertEqual(result.error_kind, ErrorKind.COMMAND_START_FAILED)
        self.assertTrue(peer.last_session.closed)

    def test_stream_read_failure_surfaces_when_command_succeeds(self) -> None:
        peer = SimulatedPeer(stdout_error=OSError("read failed"))
        result = self.executor.run(peer, "echo test", timeout=2)
        self.assertEqual(result.error_kind, ErrorKind.STREAM_READ_FAILED)
        self.assertIn("stdout", result.detail)
        self.assertIn(result.exit_status, (0, None))

    def test_stream_read_failure_while_peer_keeps_writing(self) -> None:
        peer = SimulatedPeer(pipe_capacity=4096, stdout_error=OSError("read failed"))
        started = time.monotonic()
        result = self.executor.run(peer, "flood 1000000", timeout=5)
        self.assertEqual(result.error_kind, ErrorKind.STREAM_READ_FAILED)
        self.assertLess(time.monotonic() - started, 2.0)
        session = peer.last_session
        session.thread.join(timeout=2)
        self.assertFalse(session.thread.is_alive())

    def test_close_error_after_success_is_reported(self) -> None:
        peer = SimulatedPeer(close_error=RuntimeError("disk on fire"))
        result = self.executor.run(peer, "echo test", timeout=2)
        self.assertEqual(result.error_kind, ErrorKind.CLOSE_FAILED)
        self.assertEqual(result.output, b"test\n")
        self.assertEqual(result.exit_status, 0)
        self.assertIn("disk on fire", result.detail)

    def test_close_error_is_merged_into_existing_failure(self) -> None:
        peer = SimulatedPeer(close_error=RuntimeError("disk on fire"))
        result = self.executor.run(peer, "fail", timeout=2)
        self.assertEqual(result.error_kind, ErrorKind.COMMAND_FAILED)
        self.assertIn("something went wrong", result.detail)
        self.assertIn("disk on fire", result.detail)

    def test_close_error_from_peer_teardown_is_suppressed(self) -> None:
        for error in (EOFError(), ConnectionResetError("connection reset by peer"), OSError("already closed")):
            with self.subTest(error=error):
                result = self.executor.run(SimulatedPeer(close_error=error), "echo test", timeout=2)
                self.assertTrue(result.ok)

    def test_signal_failure_does_not_mask_deadline(self) -> None:
        peer = SimulatedPeer(signal_error=OSError("permission denied"))
        result = self.executor.run(peer, "sleep 10", timeout=0.3)
        self.assertEqual(result.error_kind, ErrorKind.DEADLINE_EXCEEDED)
        self.assertTrue(peer.last_session.closed)

    def test_session_closed_exactly_once_per_run(self) -> None:
        peer = SimulatedPeer()
        for command in ("echo test", "fail", "nope"):
            self.executor.run(peer, command, timeout=2)
        self.executor.run(peer, "sleep 5", timeout=0.1)
        self.assertEqual([s.close_calls for s in peer.sessions], [1, 1, 1, 1])

    def test_concurrent_runs_share_one_connection(self) -> None:
        peer = SimulatedPeer()
        results = {}

        def worker(index: int) -> None:
            results[index] = self.executor.run(peer, f"echo run-{index}", timeout=5)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(peer.sessions), 8)
        for index, result in results.items():
            self.assertEqual(result.output, f"run-{index}\n".encode())

    def test_invalid_timeout_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.executor.run(SimulatedPeer(), "echo test", timeout=0)

    def test_default_timeout_used_when_none(self) -> None:
        executor = CommandExecutor(default_timeout=0.2, poll_interval=0.01)
        result = executor.run(SimulatedPeer(), "sleep 5")
        self.assertEqual(result.error_kind, ErrorKind.DEADLINE_EXCEEDED)

    def test_run_command_helper(self) -> None:
        result = run_command(SimulatedPeer(), "echo hi", timeout=2)
        self.assertEqual(result.output, b"hi\n")


class CommandResultTests(unittest.TestCase):
    def test_raise_for_status(self) -> None:
        ok = CommandResult.success("true", b"")
        self.assertIs(ok.raise_for_status(), ok)

        failed = CommandResult.failure("false", ErrorKind.COMMAND_FAILED, "exit status 1", exit_status=1)
        with self.assertRaises(CommandError) as ctx:
            failed.raise_for_status()
        self.assertEqual(ctx.exception.kind, ErrorKind.COMMAND_FAILED)
        self.assertEqual(ctx.exception.exit_status, 1)
        self.assertIs(ctx.exception.result, failed)

    def test_stdout_decodes_invalid_utf8(self) -> None:
        result = CommandResult.success("cat", b"ok\xff")
        self.assertEqual(result.stdout, "ok�")


if __name__ == "__main__":
    unittest.main()
