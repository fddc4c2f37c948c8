# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import os
import signal
import subprocess
import time
from selectors import DefaultSelector
from selectors import EVENT_READ
from typing import Dict

from machine._command import FinishedRun
from machine._command import Machine
from machine._command import NOT_FOUND_EXIT_STATUS
from machine._command import Run
from machine._posix import command_to_args
from machine._posix import env_values_to_str
from machine._trace import trace

_logger = logging.getLogger(__name__)


class _LocalRun(Run):

    def __init__(self, args, passthrough, **popen_kwargs):
        process = subprocess.Popen(args, **popen_kwargs)
        super().__init__(process.args, passthrough=passthrough)
        self._process = process
        # The process may wait for its output to be read before reading more input.
        os.set_blocking(process.stdin.fileno(), False)
        self._selector = DefaultSelector()
        self._open: Dict[int, str] = {}  # Stream names by fd.
        for name, file in [('stdout', process.stdout), ('stderr', process.stderr)]:
            if file is not None:
                self._open[file.fileno()] = name
                self._selector.register(file, EVENT_READ)

    def __repr__(self):
        return f'<{self.__class__.__name__} pid {self._process.pid}>'

    @property
    def pid(self):
        return self._process.pid

    @property
    def returncode(self):
        return self._process.poll()

    def _close_stream(self, file):
        name = self._open.pop(file.fileno())
        _logger.debug("%r: %s closed", self, name)
        self._selector.unregister(file)
        file.close()

    def send(self, bytes_buffer, is_last=False):
        stdin = self._process.stdin
        if stdin.closed:
            return len(bytes_buffer)
        try:
            written = stdin.write(bytes_buffer)
        except BrokenPipeError:
            # The process has stopped reading: the rest is dropped, as a shell pipe does.
            _logger.debug("%r: stdin: EPIPE", self)
            stdin.close()
            return len(bytes_buffer)
        if written is None:  # Pipe is full.
            return 0
        if is_last and written == len(bytes_buffer):
            stdin.close()
        return written

    def receive(self, timeout_sec):
        if not self._open:
            # Output goes right to the streams of this process: only the exit is awaited.
            if self._process.poll() is None:
                time.sleep(timeout_sec)
            return None, None
        chunks = {name: b'' for name in self._open.values()}
        for key, _events in self._selector.select(timeout_sec):
            name = self._open[key.fileobj.fileno()]
            chunk = os.read(key.fileobj.fileno(), 16 * 1024)
            if chunk:
                chunks[name] = chunk
            else:
                self._close_stream(key.fileobj)
                chunks[name] = None
        return chunks.get('stdout'), chunks.get('stderr')

    def close(self):
        for key in list(self._selector.get_map().values()):
            self._close_stream(key.fileobj)
        self._selector.close()
        if not self._process.stdin.closed:
            self._process.stdin.close()

    def terminate(self):
        self._process.send_signal(signal.SIGTERM)

    def kill(self):
        self._process.send_signal(signal.SIGKILL)

    def wait(self, timeout=None):
        return self._process.wait(timeout=timeout)


class _LocalMachine(Machine):

    def __repr__(self):
        return '<LocalMachine>'

    def Popen(self, args, cwd=None, env=None, passthrough=None):
        args = command_to_args(args)
        passthrough = bool(passthrough)
        trace(args)
        kwargs = {'close_fds': True, 'bufsize': 0, 'stdin': subprocess.PIPE}
        if not passthrough:
            kwargs.update(stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        if cwd is not None:
            kwargs['cwd'] = os.fspath(cwd)
        if env is not None:
            kwargs['env'] = {**os.environ, **env_values_to_str(env)}
        try:
            return _LocalRun(args, passthrough, **kwargs)
        except FileNotFoundError as e:
            # Also raised for a missing working directory.
            if e.filename not in (None, args[0]):
                raise
            _logger.info("Not found: %s", args[0])
            message = f"{args[0]}: command not found\n"
            return FinishedRun(args, NOT_FOUND_EXIT_STATUS, stderr=message.encode())


local_machine = _LocalMachine()
