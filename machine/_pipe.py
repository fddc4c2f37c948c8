# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import time
from typing import Tuple

from machine._cancel import raise_if_cancelled
from machine._command import Command
from machine._command import Result
from machine._command import Run
from machine._command import _DEFAULT_RUN_TIMEOUT_SEC
from machine._command import make_buffer
from machine._exceptions import CommandTimedOut
from machine._exceptions import MachineIOError
from machine._trace import shown_args

_logger = logging.getLogger(__name__)

# Producer is not read while this much is not taken by the consumer.
_MAX_PENDING_BYTES = 64 * 1024


def pipe(producer: Command, consumer: Command, timeout_sec: float = _DEFAULT_RUN_TIMEOUT_SEC):
    """Feed stdout of the producer to the consumer, like `producer | consumer`.

    Both run at the same time, data is passed as it comes.
    The pipe fails if any side fails, as with `set -o pipefail`.
    If both fail, the producer's failure is raised:
    the consumer has likely failed because of it.
    Stdout of the producer always goes to the consumer,
    output of the consumer is captured unless it's passthrough.
    """
    _pipe(producer, consumer, timeout_sec)


def pipe_capturing_output(
        producer: Command,
        consumer: Command,
        timeout_sec: float = _DEFAULT_RUN_TIMEOUT_SEC,
        ) -> bytes:
    """Same as pipe() but return stdout of the consumer, even if it's passthrough."""
    result = _pipe(producer, consumer.with_passthrough(False), timeout_sec)
    return result.stdout


def _pipe(producer: Command, consumer: Command, timeout_sec) -> Result:
    producer = producer.with_passthrough(False)
    shown = [*shown_args(producer.args), '|', *shown_args(consumer.args)]
    _logger.debug("Pipe: %s", shown)
    try:
        with producer.start() as source, consumer.start() as sink:
            [source_result, sink_result] = _transfer(source, sink, timeout_sec)
    except (OSError, MachineIOError) as e:
        raise MachineIOError(shown, e) from e
    source_result.check()
    return sink_result.check()


def _transfer(source: Run, sink: Run, timeout_sec) -> Tuple[Result, Result]:
    source.send(b'', is_last=True)  # Producer gets no input.
    pending = bytearray()
    source_stdout_closed = False
    sink_stdin_closed = False
    source_stderr = make_buffer('producer stderr', False)
    sink_stdout = make_buffer('stdout', sink.passthrough)
    sink_stderr = make_buffer('stderr', sink.passthrough)
    started_at = time.monotonic()
    while True:
        raise_if_cancelled(source.shown_args)
        # Cached before receiving, see Run.communicate().
        source_returncode = source.returncode
        sink_returncode = sink.returncode
        source_open = not source_stdout_closed or not source_stderr.closed
        if source_open and len(pending) < _MAX_PENDING_BYTES:
            [stdout_chunk, stderr_chunk] = source.receive(timeout_sec=0.01)
            if stdout_chunk is None:
                source_stdout_closed = True
            else:
                pending += stdout_chunk
            source_stderr.write(stderr_chunk)
        if sink_stdin_closed:
            pending.clear()
        elif sink_returncode is not None:
            if pending:
                _logger.info("Consumer exited; %d bytes of producer output dropped", len(pending))
            pending.clear()
            sink_stdin_closed = True
        elif pending or source_stdout_closed:
            sent_bytes = sink.send(bytes(pending), is_last=source_stdout_closed)
            del pending[:sent_bytes]
            if source_stdout_closed and not pending:
                sink_stdin_closed = True
        [stdout_chunk, stderr_chunk] = sink.receive(timeout_sec=0.01)
        sink_stdout.write(stdout_chunk)
        sink_stderr.write(stderr_chunk)
        source_done = source_returncode is not None and not source_open
        sink_done = sink_returncode is not None and sink_stdout.closed and sink_stderr.closed
        if source_done and sink_done:
            break
        if time.monotonic() - started_at > timeout_sec:
            shown = [*source.shown_args, '|', *sink.shown_args]
            raise CommandTimedOut(shown, timeout_sec, sink_stdout.read(), sink_stderr.read())
    source_result = Result(
        source.shown_args, source.returncode, b'', source_stderr.read())
    sink_result = Result(
        sink.shown_args, sink.returncode, sink_stdout.read(), sink_stderr.read())
    _logger.debug(
        "Pipe done: exit status %s | exit status %s",
        source_result.returncode, sink_result.returncode)
    return source_result, sink_result
