# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Run commands on machines composed of layers.

A machine runs a program with args and, optionally, input.
Layers wrap a machine into another machine:
a Shell decides which commands stream their output and which are captured
and provides file operations built on commands;
a SubMachine runs every command through a program like ssh or kubectl.

>>> from machine.mock import MockMachine
>>> base = MockMachine()
>>> remote = SubMachine(base, 'ssh', '-i', '/tmp/key', 'k8s.example.com', '--')
>>> SubMachine(remote, 'kubectl').exec('get', 'nodes')
>>> base.calls[-1].args
['ssh', '-i', '/tmp/key', 'k8s.example.com', '--', 'kubectl', 'get', 'nodes']
"""
from machine._cancel import cancel
from machine._cancel import cancel_after
from machine._cancel import cancellation_reason
from machine._cancel import reset_cancellation
from machine._command import Command
from machine._command import FinishedRun
from machine._command import Machine
from machine._command import Outcome
from machine._command import Result
from machine._command import Run
from machine._credential_file import credential_file
from machine._exceptions import Cancelled
from machine._exceptions import CommandFailed
from machine._exceptions import CommandNotFound
from machine._exceptions import CommandTimedOut
from machine._exceptions import MachineError
from machine._exceptions import MachineIOError
from machine._exceptions import OutputNotText
from machine._exceptions import caused_by
from machine._exceptions import is_cancelled
from machine._exceptions import is_not_found
from machine._once import Once
from machine._pipe import pipe
from machine._pipe import pipe_capturing_output
from machine._shell import FileStat
from machine._shell import Shell
from machine._shell import ShellError
from machine._ssh_machine import SshMachine
from machine._ssh_machine import SshNotConnected
from machine._sub import SubMachine
from machine._trace import get_trace
from machine._trace import log_trace
from machine._trace import set_trace
from machine._trace import shell_trace
from machine._trace import trace_discarded

__all__ = [
    'Cancelled',
    'Command',
    'CommandFailed',
    'CommandNotFound',
    'CommandTimedOut',
    'FileStat',
    'FinishedRun',
    'Machine',
    'MachineError',
    'MachineIOError',
    'Once',
    'OutputNotText',
    'Outcome',
    'Result',
    'Run',
    'Shell',
    'ShellError',
    'SshMachine',
    'SshNotConnected',
    'SubMachine',
    'cancel',
    'cancel_after',
    'cancellation_reason',
    'caused_by',
    'credential_file',
    'get_trace',
    'is_cancelled',
    'is_not_found',
    'log_trace',
    'pipe',
    'pipe_capturing_output',
    'reset_cancellation',
    'set_trace',
    'shell_trace',
    'trace_discarded',
    ]
