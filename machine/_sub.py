# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
from typing import Sequence

from machine._command import Machine
from machine._command import Run
from machine._posix import command_to_args
from machine._posix import command_to_script


class SubMachine(Machine):
    """Run every command through a program, e.g. ssh or kubectl.

    Prefixes of nested sub-machines are concatenated in order.
    Nothing else is changed: the passthrough decision and the rest of
    the arguments go to the underlying machine as is.
    """

    def __init__(self, machine: Machine, *prefix):
        if not prefix:
            raise ValueError("Prefix must contain at least a program name")
        self._machine = machine
        self._prefix = tuple(command_to_args(prefix))

    def __repr__(self):
        return f'<{self.__class__.__name__} {command_to_script(self._prefix)} on {self._machine!r}>'

    @property
    def machine(self) -> Machine:
        return self._machine

    @property
    def prefix(self) -> Sequence[str]:
        return self._prefix

    def Popen(self, args, cwd=None, env=None, passthrough=None) -> Run:
        return self._machine.Popen(
            [*self._prefix, *args], cwd=cwd, env=env, passthrough=passthrough)
