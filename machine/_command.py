# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import sys
import time
from abc import ABCMeta
from abc import abstractmethod
from enum import Enum
from subprocess import TimeoutExpired
from typing import NamedTuple
from typing import Optional
from typing import Sequence
from typing import Tuple
from typing import Union

from machine._cancel import raise_if_cancelled
from machine._exceptions import CommandFailed
from machine._exceptions import CommandNotFound
from machine._exceptions import CommandTimedOut
from machine._exceptions import MachineError
from machine._exceptions import MachineIOError
from machine._exceptions import OutputNotText
from machine._trace import shown_args

_logger = logging.getLogger(__name__)

_DEFAULT_RUN_TIMEOUT_SEC = 600

# Exit status of a POSIX shell when a program is not found.
# A remote shell reached over SSH reports a missing command this way too.
NOT_FOUND_EXIT_STATUS = 127

# In Python "bytes" in a type annotation denotes any of the following.
# But PyCharm doesn't respect memoryview.
_Bytes = Union[bytes, bytearray, memoryview]


class Outcome(Enum):
    SUCCESS = 'success'
    NOT_FOUND = 'not-found'
    NONZERO_EXIT = 'nonzero-exit'
    IO_ERROR = 'io-error'


class Result(NamedTuple):
    args: Sequence[str]
    returncode: Optional[int]
    stdout: bytes
    stderr: bytes
    io_error: Optional[Exception] = None

    @property
    def outcome(self) -> Outcome:
        if self.io_error is not None:
            return Outcome.IO_ERROR
        if self.returncode == 0:
            return Outcome.SUCCESS
        if self.returncode == NOT_FOUND_EXIT_STATUS:
            return Outcome.NOT_FOUND
        return Outcome.NONZERO_EXIT

    def check(self) -> 'Result':
        outcome = self.outcome
        if outcome is Outcome.SUCCESS:
            return self
        if outcome is Outcome.IO_ERROR:
            raise MachineIOError(self.args, self.io_error) from self.io_error
        if outcome is Outcome.NOT_FOUND:
            raise CommandNotFound(self.returncode, self.args, self.stdout, self.stderr)
        raise CommandFailed(self.returncode, self.args, self.stdout, self.stderr)


class _Buffer:

    def __init__(self, name):
        self._name = name
        self._chunks = []
        self.closed = False

    def write(self, chunk: Optional[_Bytes]):
        if chunk is None:
            if not self.closed:
                self.closed = True
                _logger.debug("%s: closed", self._name)
        else:
            assert not self.closed
            if chunk:
                self._chunks.append(bytes(chunk))
                # Data is not logged: secrets are passed through here.
                _logger.debug("%s: %d bytes", self._name, len(chunk))

    def read(self):
        data = b''.join(self._chunks)
        self._chunks = []
        return data


class _LiveBuffer(_Buffer):
    """Forward chunks to the stream of this process instead of keeping them."""

    def write(self, chunk: Optional[_Bytes]):
        if chunk:
            # Looked up on every write: the stream may be replaced, e.g. in tests.
            stream = getattr(sys, self._name)
            binary_stream = getattr(stream, 'buffer', None)
            stream.flush()
            if binary_stream is not None:
                binary_stream.write(chunk)
                binary_stream.flush()
            else:
                stream.write(bytes(chunk).decode(errors='backslashreplace'))
                stream.flush()
            return
        super().write(chunk)


def make_buffer(name, live: bool) -> _Buffer:
    if live:
        return _LiveBuffer(name)
    return _Buffer(name)


class Run(metaclass=ABCMeta):

    _stop_timeout_sec = 30

    def __init__(self, args, passthrough=False):
        self.args = args
        # Taken at start: a command run with the trace discarded may carry a secret.
        self.shown_args = shown_args(args)
        self.passthrough = passthrough

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.returncode is not None:
            self.close()
            return
        try:
            self.kill()
        except NotImplementedError:
            kill = "kill not implemented"
        else:
            kill = "kill attempted"
        try:
            self.wait(self._stop_timeout_sec)
        except (TimeoutExpired, MachineError):
            waiting = "timed out"
        else:
            waiting = "successfully stopped"
        self.close()
        message = f"Command '%s' was working when __exit__ called, {kill}, {waiting}"
        if exc_type is None:
            raise MachineError(message % (self.shown_args,))
        _logger.warning(message, self.shown_args)

    @abstractmethod
    def wait(self, timeout=None) -> int:
        pass

    @abstractmethod
    def send(self, bytes_buffer: _Bytes, is_last=False) -> int:
        return 0

    @abstractmethod
    def receive(self, timeout_sec: float):
        """Receive stdout chunk and stderr chunk; None if closed."""
        return b'', b''

    @property
    @abstractmethod
    def returncode(self) -> Optional[int]:
        return None

    def communicate(
            self,
            input: Optional[_Bytes] = None,  # noqa PyShadowingBuiltins
            timeout_sec: float = _DEFAULT_RUN_TIMEOUT_SEC,
            ) -> Tuple[bytes, bytes]:
        # No input is the same as empty input: stdin is closed right away.
        left_to_send = memoryview(b'' if input is None else input)
        stdin_closed = False
        stdout = make_buffer('stdout', self.passthrough)
        stderr = make_buffer('stderr', self.passthrough)
        started_at = time.monotonic()
        while True:
            raise_if_cancelled(self.shown_args)
            _logger.debug("Receive data")
            # The self.returncode variable must be cached first due to the fact that
            # Paramiko processes data and sets returncode in another thread. So, a race condition
            # is possible between calls to self.receive() and self.returncode.
            # To ensure all data is received, save a return code into the local variable
            # to be checked strictly after calling self.receive().
            returncode = self.returncode
            if stdin_closed:
                receive_timeout_sec = min(1., timeout_sec / 2.)
            else:
                receive_timeout_sec = 0.01  # Stdin may become writable sooner.
            chunks = self.receive(timeout_sec=receive_timeout_sec)
            for buffer, chunk in zip((stdout, stderr), chunks):
                buffer.write(chunk)
            _logger.debug(
                "Exit status: %s; stdout: %s, stderr: %s",
                self.returncode,
                'closed' if stdout.closed else 'open',
                'closed' if stderr.closed else 'open',
                )
            if returncode is not None and stdout.closed and stderr.closed:
                _logger.debug("Exit clean.")
                break
            if time.monotonic() - started_at > timeout_sec:
                if returncode is not None:
                    _logger.debug("Exit with streams not closed.")
                    break
                raise CommandTimedOut(self.shown_args, timeout_sec, stdout.read(), stderr.read())
            if stdin_closed:
                continue
            if returncode is not None:
                if left_to_send:
                    _logger.error("Exit with %d bytes yet to send.", len(left_to_send))
                stdin_closed = True
                continue
            sent_bytes = self.send(left_to_send, is_last=True)
            left_to_send = left_to_send[sent_bytes:]
            if not left_to_send:
                stdin_closed = True
        return stdout.read(), stderr.read()

    @abstractmethod
    def terminate(self):
        pass

    @abstractmethod
    def kill(self):
        pass

    @abstractmethod
    def close(self):
        pass


class FinishedRun(Run):
    """Run of a process which has already exited or has never started."""

    def __init__(self, args, returncode: int, stdout=b'', stderr=b''):
        super().__init__(args)
        self._returncode = returncode
        self._chunks = (stdout, stderr)

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.shown_args} exit status {self._returncode}>'

    def wait(self, timeout=None):
        return self._returncode

    def send(self, bytes_buffer, is_last=False):
        return len(bytes_buffer)  # As if read by the process.

    def receive(self, timeout_sec):
        chunks = self._chunks
        self._chunks = (None, None)
        return chunks

    @property
    def returncode(self):
        return self._returncode

    def terminate(self):
        pass

    def kill(self):
        pass

    def close(self):
        pass


class Machine(metaclass=ABCMeta):
    """Something that runs commands given as a program name and args."""

    @abstractmethod
    def Popen(self, args, cwd=None, env=None, passthrough=None) -> Run:  # noqa PyPep8Naming
        """Start a command.

        If passthrough is true, output of the process goes to the streams
        of this process as it comes, and nothing is captured.
        None lets the layer, which knows the command, decide.
        """
        pass

    def command(self, *args, cwd=None, env=None, passthrough=None) -> 'Command':
        return Command(self, args, cwd=cwd, env=env, passthrough=passthrough)

    def invoke(
            self,
            args,
            input: Optional[_Bytes] = None,  # noqa PyShadowingBuiltins
            cwd=None,
            env=None,
            passthrough=None,
            timeout_sec: float = _DEFAULT_RUN_TIMEOUT_SEC,
            ) -> Result:
        """Run a command to completion; classify, but never raise on, its failure.

        Cancellation is the only failure raised.
        """
        args = [*args]
        shown = shown_args(args)
        try:
            with self.Popen(args, cwd=cwd, env=env, passthrough=passthrough) as run:
                stdout, stderr = run.communicate(input=input, timeout_sec=timeout_sec)
                return Result(shown, run.returncode, stdout, stderr)
        except (OSError, MachineIOError) as e:
            _logger.info("Command %s failed to run: %s", shown, e)
            return Result(shown, None, b'', b'', io_error=e)

    def run(
            self,
            args,
            input: Optional[_Bytes] = None,  # noqa PyShadowingBuiltins
            check=True,
            **kwargs) -> Result:
        result = self.invoke(args, input=input, **kwargs)
        if check:
            result.check()
        return result

    def call(self, *args, input: Optional[_Bytes] = None) -> str:  # noqa PyShadowingBuiltins
        """Capture stdout without the trailing newline.

        Output is captured even if the command is registered as passthrough.
        """
        result = self.run(args, input=input, passthrough=False)
        try:
            stdout = result.stdout.decode()
        except UnicodeDecodeError as e:
            raise OutputNotText(result.args, e) from e
        if stdout.endswith('\n'):
            stdout = stdout[:-1]
        return stdout

    def get(self, *args) -> str:
        """Get a single line, like a token or a password."""
        value = self.call(*args)
        if '\n' in value:
            raise ValueError(f"Command {shown_args(args)} printed more than one line")
        return value

    def exec(self, *args, input: Optional[_Bytes] = None):  # noqa PyShadowingBuiltins
        self.run(args, input=input)


class Command:
    """Program and args bound to a machine; may be run or piped."""

    def __init__(self, machine: Machine, args, cwd=None, env=None, passthrough=None):
        if not args:
            raise ValueError("Command must have at least a program name")
        self._machine = machine
        self.args = tuple(args)
        self.cwd = cwd
        self.env = env
        self.passthrough = passthrough

    def __repr__(self):
        return f'<{self.__class__.__name__} {list(shown_args(self.args))} on {self._machine!r}>'

    def with_passthrough(self, passthrough: Optional[bool]) -> 'Command':
        return Command(
            self._machine, self.args, cwd=self.cwd, env=self.env, passthrough=passthrough)

    def start(self) -> Run:
        return self._machine.Popen(
            [*self.args], cwd=self.cwd, env=self.env, passthrough=self.passthrough)

    def invoke(
            self,
            input: Optional[_Bytes] = None,  # noqa PyShadowingBuiltins
            timeout_sec: float = _DEFAULT_RUN_TIMEOUT_SEC,
            ) -> Result:
        return self._machine.invoke(
            self.args,
            input=input,
            cwd=self.cwd,
            env=self.env,
            passthrough=self.passthrough,
            timeout_sec=timeout_sec,
            )

    def run(
            self,
            input: Optional[_Bytes] = None,  # noqa PyShadowingBuiltins
            timeout_sec: float = _DEFAULT_RUN_TIMEOUT_SEC,
            ) -> Result:
        return self.invoke(input=input, timeout_sec=timeout_sec).check()
