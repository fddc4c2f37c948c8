# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import os
import stat
from enum import Enum
from typing import Dict
from typing import NamedTuple

from machine._command import Machine
from machine._command import Run
from machine._exceptions import MachineError

_logger = logging.getLogger(__name__)

DEFAULT_FILE_MODE = 0o644


class FileStat(NamedTuple):
    st_size: int
    st_mtime: int
    st_mode: int

    def permissions(self) -> int:
        return stat.S_IMODE(self.st_mode)


class ShellError(MachineError):
    pass


class _Behaviour(Enum):
    CAPTURE = 'capture'
    PASSTHROUGH = 'passthrough'


class Shell(Machine):
    """Decide how commands are run by their names; work with files by commands.

    Commands registered as passthrough, like an interactive program
    or an installer, get the streams of this process: their output is shown
    as it comes and is not captured. Other commands are captured.
    A layer above may have decided already; its decision is kept.

    Files are accessed only by running commands on the wrapped machine,
    so it works the same way for a local and a remote one.
    """

    def __init__(self, machine: Machine):
        self._machine = machine
        self._behaviours: Dict[str, _Behaviour] = {}

    def __repr__(self):
        return f'<{self.__class__.__name__} over {self._machine!r}>'

    @property
    def machine(self) -> Machine:
        return self._machine

    def register_passthrough(self, *names: str):
        for name in names:
            _logger.debug("%r: register passthrough %s", self, name)
            self._behaviours[name] = _Behaviour.PASSTHROUGH

    def is_passthrough(self, name: str) -> bool:
        return self._behaviours.get(name, _Behaviour.CAPTURE) is _Behaviour.PASSTHROUGH

    def Popen(self, args, cwd=None, env=None, passthrough=None) -> Run:
        if passthrough is None:
            passthrough = self.is_passthrough(os.fspath(args[0]))
        return self._machine.Popen(args, cwd=cwd, env=env, passthrough=passthrough)

    def write_file(self, path, data: bytes, mode: int = DEFAULT_FILE_MODE):
        """Create or replace a file and set its permissions, like `install` does."""
        path = os.fspath(path)
        try:
            self.run(
                ['install', '-m', f'{mode:04o}', '/dev/stdin', path],
                input=data,
                passthrough=False,
                )
        except MachineError as e:
            raise ShellError(f"could not write {path}: {e}") from e

    def read_file(self, path) -> bytes:
        path = os.fspath(path)
        try:
            result = self.run(['cat', path], passthrough=False)
        except MachineError as e:
            raise ShellError(f"could not read {path}: {e}") from e
        return result.stdout

    def stat(self, path) -> FileStat:
        path = os.fspath(path)
        try:
            result = self.run(['stat', '-c', '%s:%Y:%f', path], passthrough=False)
        except MachineError as e:
            raise ShellError(f"could not stat {path}: {e}") from e
        output = result.stdout.decode().strip()
        try:
            [size, mtime, raw_mode] = output.split(':')
            return FileStat(int(size), int(mtime), int(raw_mode, 16))
        except ValueError:
            raise ShellError(f"could not stat {path}: unexpected output {output!r}")
