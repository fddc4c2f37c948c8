# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import io
import logging
import unittest
from contextlib import redirect_stdout

from machine import CommandFailed
from machine import Shell
from machine import ShellError
from machine import SubMachine
from machine.mock import MockMachine


class _PassthroughRecorder(MockMachine):

    def __init__(self):
        super().__init__()
        self.decisions = []

    def Popen(self, args, cwd=None, env=None, passthrough=None):
        self.decisions.append((args[0], passthrough))
        return super().Popen(args, cwd=cwd, env=env, passthrough=passthrough)


class TestPassthrough(unittest.TestCase):

    def setUp(self):
        self._recorder = _PassthroughRecorder()
        self._shell = Shell(self._recorder)
        self._shell.register_passthrough('kubectl', 'sh')

    def test_registered(self):
        self._shell.exec('kubectl', 'apply', '-f', '-')
        self.assertEqual(self._recorder.decisions, [('kubectl', True)])

    def test_not_registered(self):
        self._shell.exec('uname', '-a')
        self.assertEqual(self._recorder.decisions, [('uname', False)])

    def test_call_captures_registered(self):
        self._recorder.returns('kubectl', b'v1.31.4+k3s1\n')
        version = self._shell.call('kubectl', 'version', '--client')
        self.assertEqual(version, 'v1.31.4+k3s1')
        self.assertEqual(self._recorder.decisions, [('kubectl', False)])

    def test_outer_decision_wins(self):
        outer = Shell(self._shell)
        outer.register_passthrough('uname')
        outer.exec('kubectl', 'get', 'nodes')
        outer.exec('uname', '-a')
        self.assertEqual(self._recorder.decisions, [('kubectl', False), ('uname', True)])

    def test_through_sub_machine(self):
        # Decided by the name seen by the shell: the first arg after the prefix.
        remote = Shell(SubMachine(self._shell, 'ssh', 'k8s.example.com', '--'))
        remote.register_passthrough('curl')
        remote.exec('curl', '-sfL', 'https://example.com')
        self.assertEqual(self._recorder.decisions, [('ssh', True)])

    def test_passthrough_output_not_captured(self):
        self._recorder.returns('kubectl', b'deployment.apps/registry configured\n')
        stdout = io.StringIO()
        with redirect_stdout(stdout):
            result = self._shell.run(['kubectl', 'apply', '-f', 'registry.yml'])
        self.assertEqual(result.stdout, b'')
        self.assertEqual(stdout.getvalue(), 'deployment.apps/registry configured\n')

    def test_output_captured(self):
        self._recorder.returns('uname', b'Linux\n')
        stdout = io.StringIO()
        with redirect_stdout(stdout):
            result = self._shell.run(['uname'])
        self.assertEqual(result.stdout, b'Linux\n')
        self.assertEqual(stdout.getvalue(), '')

    def test_is_passthrough(self):
        self.assertTrue(self._shell.is_passthrough('sh'))
        self.assertFalse(self._shell.is_passthrough('cat'))


class TestFiles(unittest.TestCase):

    def setUp(self):
        self._mock = MockMachine()
        self._shell = Shell(self._mock)

    def test_write_read(self):
        self._shell.write_file('/usr/local/bin/autopatch', b'#!/bin/sh\n', mode=0o755)
        self.assertEqual(self._shell.read_file('/usr/local/bin/autopatch'), b'#!/bin/sh\n')
        [call] = self._mock.calls_for('install')
        self.assertEqual(call.args, ['install', '-m', '0755', '/dev/stdin', '/usr/local/bin/autopatch'])
        self.assertEqual(call.input, b'#!/bin/sh\n')

    def test_default_mode(self):
        self._shell.write_file('/etc/cron.d/autopatch', b'0 2 * * 6 root true\n')
        self.assertEqual(self._shell.stat('/etc/cron.d/autopatch').permissions(), 0o644)

    def test_stat(self):
        self._shell.write_file('/usr/local/bin/autopatch', b'#!/bin/sh\n', mode=0o755)
        stat = self._shell.stat('/usr/local/bin/autopatch')
        self.assertEqual(stat.st_size, len(b'#!/bin/sh\n'))
        self.assertEqual(stat.permissions(), 0o755)
        self.assertGreater(stat.st_mtime, 0)

    def test_overwrite(self):
        self._shell.write_file('/etc/motd', b'old', mode=0o600)
        self._shell.write_file('/etc/motd', b'new')
        self.assertEqual(self._shell.read_file('/etc/motd'), b'new')
        self.assertEqual(self._shell.stat('/etc/motd').permissions(), 0o644)

    def test_read_missing(self):
        with self.assertRaises(ShellError) as context:
            self._shell.read_file('/etc/missing')
        self.assertIn("could not read /etc/missing", str(context.exception))
        self.assertIsInstance(context.exception.__cause__, CommandFailed)

    def test_stat_missing(self):
        with self.assertRaises(ShellError) as context:
            self._shell.stat('/etc/missing')
        self.assertIn("could not stat /etc/missing", str(context.exception))

    def test_write_failed(self):
        self._mock.fails('install', stderr=b'install: cannot create regular file: Permission denied\n')
        with self.assertRaises(ShellError) as context:
            self._shell.write_file('/etc/shadow', b'')
        self.assertIn("could not write /etc/shadow", str(context.exception))
        self.assertIn("Permission denied", str(context.exception))

    def test_stat_unexpected_output(self):
        self._mock.returns('stat', b'garbage\n')
        with self.assertRaises(ShellError):
            self._shell.stat('/etc/hosts')


if __name__ == '__main__':
    logging.basicConfig(level=logging.DEBUG)
    unittest.main()
