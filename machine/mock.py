# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Machine which runs nothing but remembers what it was asked to run.

Every command is recorded with its args and the input it got.
Responses are canned per program name. Files written and read
by the Shell helpers are kept in memory, so a test can write a file
and then read it and stat it back.

>>> from machine import Shell
>>> mock = MockMachine()
>>> mock.returns('get', b'fake-token\\n')
>>> sh = Shell(mock)
>>> sh.get('get', 'k8s/token')
'fake-token'
>>> sh.write_file('/etc/motd', b'Hello', mode=0o600)
>>> sh.read_file('/etc/motd')
b'Hello'
>>> oct(sh.stat('/etc/motd').permissions())
'0o600'
>>> [call.args for call in calls_for(sh, 'get')]
[['get', 'k8s/token']]
"""
import logging
import stat
import threading
import time
from typing import Dict
from typing import List
from typing import NamedTuple
from typing import Optional

from machine._command import Machine
from machine._command import NOT_FOUND_EXIT_STATUS
from machine._command import Run
from machine._posix import command_to_args
from machine._shell import Shell
from machine._trace import trace

_logger = logging.getLogger(__name__)


class Call:

    def __init__(self, args: List[str]):
        self.args = args
        self._input = bytearray()
        self.input_closed = False

    def __repr__(self):
        return f'{self.__class__.__name__}({self.args!r}, {self.input!r})'

    @property
    def input(self) -> bytes:
        return bytes(self._input)

    def _feed(self, data):
        self._input += data


class Response(NamedTuple):
    stdout: bytes = b''
    stderr: bytes = b''
    returncode: int = 0


class _MockFile(NamedTuple):
    data: bytes
    mode: int
    mtime: int


class MockMachine(Machine):
    SILENT = 'silent'
    ECHO = 'echo'

    def __init__(self, default: str = SILENT):
        if default not in (self.SILENT, self.ECHO):
            raise ValueError(f"Unknown default behaviour {default!r}")
        self._default = default
        self._lock = threading.Lock()
        self._responses: Dict[str, List[Response]] = {}
        self._calls: List[Call] = []
        self._files: Dict[str, _MockFile] = {}

    def __repr__(self):
        return f'<{self.__class__.__name__} {len(self._calls)} calls>'

    def returns(self, name: str, stdout=b'', stderr=b'', returncode=0):
        """Can a response for a program.

        Responses canned for the same program are given in order,
        the last one is repeated.
        """
        if isinstance(stdout, str):
            stdout = stdout.encode()
        if isinstance(stderr, str):
            stderr = stderr.encode()
        with self._lock:
            self._responses.setdefault(name, []).append(Response(stdout, stderr, returncode))

    def fails(self, name: str, returncode=1, stderr=b''):
        self.returns(name, stderr=stderr, returncode=returncode)

    def missing(self, name: str):
        self.returns(
            name,
            stderr=f"sh: 1: {name}: not found\n",
            returncode=NOT_FOUND_EXIT_STATUS,
            )

    @property
    def calls(self) -> List[Call]:
        with self._lock:
            return [*self._calls]

    def calls_for(self, name: str) -> List[Call]:
        with self._lock:
            return [call for call in self._calls if call.args[0] == name]

    def put_file(self, path: str, data: bytes, mode=0o644):
        with self._lock:
            self._files[path] = _MockFile(data, mode, int(time.time()))

    def Popen(self, args, cwd=None, env=None, passthrough=None) -> Run:
        args = command_to_args(args)
        trace(args)
        call = Call(args)
        with self._lock:
            self._calls.append(call)
        return _MockRun(self, call, bool(passthrough))

    def _respond(self, call: Call) -> Response:
        [name, *args] = call.args
        with self._lock:
            responses = self._responses.get(name)
            if responses:
                if len(responses) > 1:
                    return responses.pop(0)
                return responses[0]
            if name == 'install':
                return self._install(args, call.input)
            if name == 'cat' and args:
                return self._cat(args)
            if name == 'stat':
                return self._stat(args)
        if self._default == self.ECHO:
            return Response(stdout=call.input)
        return Response()

    def _install(self, args, data):
        mode = 0o755  # As in install(1).
        if args[:1] == ['-m']:
            mode = int(args[1], 8)
            args = args[2:]
        [source, path] = args
        if source != '/dev/stdin':
            return Response(stderr=f"install: {source}: not supported by mock\n".encode(), returncode=1)
        self._files[path] = _MockFile(data, mode, int(time.time()))
        return Response()

    def _cat(self, paths):
        data = []
        for path in paths:
            file = self._files.get(path)
            if file is None:
                return Response(stderr=f"cat: {path}: No such file or directory\n".encode(), returncode=1)
            data.append(file.data)
        return Response(stdout=b''.join(data))

    def _stat(self, args):
        if args[:1] != ['-c']:
            return Response(stderr=b"stat: only -c FORMAT is supported by mock\n", returncode=1)
        [_, format_, path] = args
        file = self._files.get(path)
        if file is None:
            message = f"stat: cannot statx '{path}': No such file or directory\n"
            return Response(stderr=message.encode(), returncode=1)
        st_mode = stat.S_IFREG | file.mode
        output = format_
        for directive, value in [
                ('%s', str(len(file.data))),
                ('%Y', str(file.mtime)),
                ('%f', f'{st_mode:x}'),
                ('%a', f'{file.mode:o}'),
                ('%n', path),
                ]:
            output = output.replace(directive, value)
        return Response(stdout=output.encode() + b'\n')


class _MockRun(Run):
    """Completes as soon as its stdin is closed, like a filter would."""

    def __init__(self, machine: MockMachine, call: Call, passthrough: bool):
        super().__init__(call.args, passthrough=passthrough)
        self._machine = machine
        self._call = call
        self._returncode: Optional[int] = None
        self._chunks = (b'', b'')

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.shown_args}>'

    def send(self, bytes_buffer, is_last=False):
        if self._call.input_closed:
            return len(bytes_buffer)
        self._call._feed(bytes_buffer)
        if is_last:
            self._call.input_closed = True
            self._complete()
        return len(bytes_buffer)

    def _complete(self):
        response = self._machine._respond(self._call)
        _logger.debug("%r: exit status %d", self, response.returncode)
        self._chunks = (response.stdout, response.stderr)
        self._returncode = response.returncode

    def receive(self, timeout_sec):
        if self._returncode is None:
            return b'', b''
        chunks = self._chunks
        self._chunks = (None, None)
        return chunks

    @property
    def returncode(self):
        return self._returncode

    def wait(self, timeout=None):
        return self._returncode

    def terminate(self):
        self.kill()

    def kill(self):
        if self._returncode is None:
            self._call.input_closed = True
            self._chunks = (None, None)
            self._returncode = -9

    def close(self):
        pass


def calls_for(machine: Machine, name: str) -> List[Call]:
    """Calls of a program made to a mock, possibly wrapped in shells."""
    while isinstance(machine, Shell):
        machine = machine.machine
    if not isinstance(machine, MockMachine):
        raise TypeError(f"Not a mock: {machine!r}")
    return machine.calls_for(name)
