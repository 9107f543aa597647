"""
Streaming pipeline composition.

Stages run concurrently and are chained with OS pipes:

    ArchiveStage (tar) -> [ProgressTap] -> EncryptStage (gpg) -> consumer

Pipes have bounded kernel buffers, so a slow consumer blocks the producer
instead of the backup being buffered in memory. The Pipeline waits for every
stage, not only the last one, and on failure terminates and reaps whatever
is still running before surfacing the first error.
"""

import io
import os
import sys
import signal
import logging
import tempfile
import threading
import subprocess
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from tqdm import tqdm

from offsite.errors import BackupError


logger = logging.getLogger(__name__)

# How much stderr of a failed child is quoted in error messages
STDERR_TAIL_BYTES = 2048


class Stage:
    """
    One concurrently running step of a pipeline.

    A stage takes ownership of the stream passed to start() and returns its
    own output stream. The first stage of a pipeline receives None.
    """

    name = 'stage'

    def __init__(self):
        self._error: Optional[BaseException] = None
        self.terminated = False

    def start(self, stdin):
        raise NotImplementedError

    def wait(self, timeout: Optional[float] = None):
        raise NotImplementedError

    def terminate(self, timeout: float):
        raise NotImplementedError

    @property
    def running(self) -> bool:
        raise NotImplementedError

    @property
    def returncode(self) -> Optional[int]:
        return None

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def collateral(self) -> bool:
        """True if this stage only failed because a sibling failed first."""
        return self.terminated

    def close(self):
        pass


class ProcessStage(Stage):
    """
    Stage backed by an external program.

    Subclasses provide command() and may extend popen_kwargs() and
    failure().
    """

    error_class = BackupError

    def __init__(self, name: str):
        super().__init__()
        self.name = name
        self.process: Optional[subprocess.Popen] = None
        self.argv: List[str] = []
        self._stderr_file = None

    def command(self) -> List[str]:
        raise NotImplementedError

    def popen_kwargs(self) -> Dict[str, Any]:
        return {}

    def start(self, stdin):
        command = self.argv = self.command()
        logger.info("Starting %s: %s", self.name, command)

        # Anonymous file so a chatty child never blocks on a full stderr pipe
        self._stderr_file = tempfile.TemporaryFile(prefix='offsite_stderr_')

        try:
            self.process = subprocess.Popen(
                command,
                stdin=stdin if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=self._stderr_file,
                **self.popen_kwargs()
            )
        except OSError as e:
            raise self.error_class(f"Failed to start {command[0]}: {e}", self.name)
        finally:
            # The child holds its own copy; ours would keep the pipe alive
            if stdin is not None:
                stdin.close()

        return self.process.stdout

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        if self.process is None:
            return None
        return self.process.returncode

    @property
    def collateral(self) -> bool:
        return self.terminated or self.returncode == -signal.SIGPIPE

    def wait(self, timeout: Optional[float] = None):
        if self.process is None:
            return

        returncode = self.process.wait(timeout)
        if returncode != 0 and self._error is None:
            self._error = self.failure(returncode, self.stderr_tail())
            logger.debug("%s exited with %s", self.name, returncode)

    def failure(self, returncode: int, stderr: str) -> BaseException:
        """Build the error reported for a nonzero exit."""
        if returncode < 0:
            reason = f"killed by signal {signal.Signals(-returncode).name}"
        else:
            reason = f"exited with status {returncode}"

        message = f"{self.argv[0]} {reason}"
        if stderr:
            message = f"{message}: {stderr}"
        return self.error_class(message, self.name)

    def stderr_tail(self) -> str:
        if self._stderr_file is None or self._stderr_file.closed:
            return ''

        self._stderr_file.seek(0, os.SEEK_END)
        size = self._stderr_file.tell()
        self._stderr_file.seek(max(0, size - STDERR_TAIL_BYTES))
        return self._stderr_file.read().decode(errors='replace').strip()

    def terminate(self, timeout: float):
        if not self.running:
            return

        self.terminated = True
        logger.warning("Terminating %s (pid %d)", self.name, self.process.pid)
        self.process.terminate()
        try:
            self.process.wait(timeout)
        except subprocess.TimeoutExpired:
            logger.warning("%s ignored SIGTERM, killing", self.name)
            self.process.kill()
            self.process.wait()

    def close(self):
        if self.process is not None and self.process.stdout is not None:
            self.process.stdout.close()
        if self._stderr_file is not None:
            self._stderr_file.close()


class ProgressTap(Stage):
    """
    Transparent pass-through that counts bytes and shows a progress bar.

    Runs in a thread. Stream content is never altered. In quiet mode the
    tap is left out of the stage list entirely.
    """

    name = 'progress'
    BLOCK_SIZE = 64 * 1024

    def __init__(self, total_bytes: Optional[int] = None, description: Optional[str] = None,
                 output=None):
        super().__init__()
        self.total_bytes = total_bytes
        self.description = description
        self.output = output
        self.bytes_seen = 0
        self.broken_pipe = False
        self._thread = None
        self._source = None
        self._sink = None

    def start(self, stdin):
        if stdin is None:
            raise ValueError("ProgressTap cannot be the first stage of a pipeline")

        read_fd, write_fd = os.pipe()
        self._source = stdin
        self._sink = os.fdopen(write_fd, 'wb')
        self._thread = threading.Thread(
            target=self._copy,
            name='offsite-progress',
            daemon=True
        )
        self._thread.start()
        return os.fdopen(read_fd, 'rb')

    def _copy(self):
        bar = tqdm(
            total=self.total_bytes,
            desc=self.description,
            unit='B',
            unit_scale=True,
            unit_divisor=1024,
            file=self.output if self.output is not None else sys.stderr
        )
        try:
            while True:
                block = self._source.read1(self.BLOCK_SIZE)
                if not block:
                    break
                self._sink.write(block)
                self._sink.flush()
                self.bytes_seen += len(block)
                bar.update(len(block))
        except BrokenPipeError as e:
            # Downstream died first; its own error is the one that matters
            self.broken_pipe = True
            self._error = BackupError(
                f"Downstream closed after {self.bytes_seen} bytes: {e}",
                self.name
            )
        except (OSError, ValueError) as e:
            self._error = BackupError(
                f"Pass-through stopped after {self.bytes_seen} bytes: {e}",
                self.name
            )
        finally:
            bar.close()
            self._close_streams()

    def _close_streams(self):
        for stream in (self._sink, self._source):
            try:
                stream.close()
            except OSError as e:
                if isinstance(e, BrokenPipeError):
                    self.broken_pipe = True
                if self._error is None:
                    self._error = BackupError(f"Failed to close pass-through: {e}", self.name)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def collateral(self) -> bool:
        return self.terminated or self.broken_pipe

    def wait(self, timeout: Optional[float] = None):
        if self._thread is None:
            return

        self._thread.join(timeout)
        if self._thread.is_alive() and self._error is None:
            self._error = BackupError("Pass-through did not finish in time", self.name)

    def terminate(self, timeout: float):
        # Threads cannot be killed; once the neighbouring processes are gone
        # the copy loop hits EOF or EPIPE and returns on its own.
        if self.running:
            self.terminated = True
            self._thread.join(timeout)


class ForwardOnlyReader(io.IOBase):
    """
    Read-only, non-seekable view of a pipe.

    Uploaders check seekable() instead of assuming they can rewind.
    read(n) blocks until n bytes are available or the stream ends.
    """

    def __init__(self, raw):
        super().__init__()
        self._raw = raw
        self._position = 0
        self.at_eof = False

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def tell(self) -> int:
        """Bytes consumed so far."""
        return self._position

    def read(self, size: Optional[int] = -1) -> bytes:
        if self.closed:
            raise ValueError("read from closed stream")

        if size is None or size < 0:
            data = self._raw.read()
            self.at_eof = True
            self._position += len(data)
            return data

        chunks = []
        remaining = size
        while remaining > 0:
            block = self._raw.read(remaining)
            if not block:
                self.at_eof = True
                break
            chunks.append(block)
            remaining -= len(block)

        data = b''.join(chunks)
        self._position += len(data)
        return data

    def close(self):
        if not self.closed:
            try:
                self._raw.close()
            finally:
                super().close()


@dataclass
class PipelineResult:
    """Outcome of a successful pipeline run."""

    value: Any
    bytes_out: int
    returncodes: Dict[str, Optional[int]] = field(default_factory=dict)


class Pipeline:
    """
    Runs a chain of stages and hands the final stream to a consumer.

    The consumer is called as consumer(stream, pipeline). Before it commits
    anything remote it should call pipeline.check(), which waits for every
    stage and raises the first failure. check() may only be called once the
    stream has been read to EOF.
    """

    def __init__(self, stages: List[Stage], timeout: float = 30.0):
        if not stages:
            raise ValueError("A pipeline needs at least one stage")
        if isinstance(stages[0], ProgressTap):
            raise ValueError("The first stage of a pipeline must produce data")

        self.stages = list(stages)
        self.timeout = timeout
        self._started: List[Stage] = []
        self._errors: List[BaseException] = []
        self._reader: Optional[ForwardOnlyReader] = None

    def run(self, consumer: Callable[[ForwardOnlyReader, 'Pipeline'], Any]) -> PipelineResult:
        """
        Start all stages, feed the output to consumer and wait for everything.

        Returns:
            PipelineResult carrying the consumer's return value

        Raises:
            BackupError: The first failure of any stage or of the consumer;
                later failures are attached as ``subordinate``
        """
        if self._started:
            raise RuntimeError("A pipeline can only be run once")

        try:
            stream = None
            for stage in self.stages:
                # Tracked before start() so a half-started stage is still closed
                self._started.append(stage)
                stream = stage.start(stream)

            self._reader = ForwardOnlyReader(stream)
            value = None
            try:
                value = consumer(self._reader, self)
            except Exception as e:
                self._record(e)
            finally:
                # Upstream writers now see EPIPE instead of blocking forever
                self._reader.close()

            if self._errors:
                self._terminate_all()
            self._collect()

            if self._errors:
                raise self._first_error()

            return PipelineResult(
                value=value,
                bytes_out=self._reader.tell(),
                returncodes={stage.name: stage.returncode for stage in self._started}
            )
        finally:
            self._terminate_all()
            for stage in self._started:
                stage.close()

    def check(self):
        """
        Wait for every stage and raise the first failure, if any.

        Raises:
            RuntimeError: If the output stream has not been drained yet
            BackupError: If any stage failed
        """
        if self._reader is not None and not self._reader.closed and not self._reader.at_eof:
            raise RuntimeError("Pipeline output must be read to EOF before checking stages")

        self._collect()
        if self._errors:
            raise self._first_error()

    def _collect(self):
        for stage in self._started:
            stage.wait()
            self._record(stage.error)

    def _record(self, error: Optional[BaseException]):
        if error is not None and not any(error is seen for seen in self._errors):
            self._errors.append(error)

    def _is_collateral(self, error: BaseException) -> bool:
        for stage in self._started:
            if stage.error is error:
                return stage.collateral
        return False

    def _first_error(self) -> BaseException:
        primary = [e for e in self._errors if not self._is_collateral(e)]
        ordered = primary + [e for e in self._errors if self._is_collateral(e)]

        first = ordered[0]
        if isinstance(first, BackupError):
            first.subordinate = ordered[1:]
        for later in ordered[1:]:
            logger.debug("Subordinate pipeline failure: %s", later)
        return first

    def _terminate_all(self):
        # Downstream first so nothing keeps writing into a pipe we are tearing down
        for stage in reversed(self._started):
            stage.terminate(self.timeout)
