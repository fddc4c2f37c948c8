# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import unittest

from machine import SubMachine
from machine.mock import MockMachine


class TestSubMachine(unittest.TestCase):

    def setUp(self):
        self._mock = MockMachine()

    def test_prefix_prepended(self):
        kubectl = SubMachine(self._mock, 'kubectl')
        kubectl.exec('get', 'pods', '-A')
        [call] = self._mock.calls
        self.assertEqual(call.args, ['kubectl', 'get', 'pods', '-A'])

    def test_nested_prefixes_concatenated(self):
        ssh = SubMachine(self._mock, 'ssh', '-i', '/tmp/key', 'k8s.example.com', '--')
        SubMachine(ssh, 'kubectl').exec('get', 'nodes')
        flat = SubMachine(self._mock, 'ssh', '-i', '/tmp/key', 'k8s.example.com', '--', 'kubectl')
        flat.exec('get', 'nodes')
        [nested_call, flat_call] = self._mock.calls
        self.assertEqual(nested_call.args, flat_call.args)
        self.assertEqual(
            nested_call.args,
            ['ssh', '-i', '/tmp/key', 'k8s.example.com', '--', 'kubectl', 'get', 'nodes'])

    def test_input_and_output_forwarded(self):
        mock = MockMachine(default=MockMachine.ECHO)
        kubectl = SubMachine(mock, 'kubectl')
        output = kubectl.call('apply', '-f', '-', input=b'kind: Namespace\n')
        self.assertEqual(output, 'kind: Namespace')
        self.assertEqual(mock.calls[0].input, b'kind: Namespace\n')

    def test_failure_kept(self):
        self._mock.missing('spkez')
        result = SubMachine(self._mock, 'spkez').invoke(['--version'])
        self.assertEqual(result.returncode, 127)

    def test_empty_prefix(self):
        with self.assertRaises(ValueError):
            SubMachine(self._mock)

    def test_properties(self):
        sub = SubMachine(self._mock, 'kubectl', '--context', 'home')
        self.assertIs(sub.machine, self._mock)
        self.assertEqual(sub.prefix, ('kubectl', '--context', 'home'))


if __name__ == '__main__':
    logging.basicConfig(level=logging.DEBUG)
    unittest.main()
