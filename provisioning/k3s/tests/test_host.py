# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import io
import logging
import unittest
from contextlib import redirect_stderr
from pathlib import Path

from machine import Shell
from machine import SubMachine
from machine import cancel
from machine import get_trace
from machine import is_cancelled
from machine import reset_cancellation
from machine import set_trace
from machine.mock import MockMachine
from machine.mock import calls_for
from provisioning.k3s._machines import HostMachines
from provisioning.k3s._machines import HostSettings
from provisioning.k3s._machines import ProvisioningError
from provisioning.k3s.host import install_autopatch
from provisioning.k3s.host import run
from provisioning.k3s.host import run_reporting
from provisioning.k3s.host import setup_cert_manager
from provisioning.k3s.host import setup_container_registry
from provisioning.k3s.host import setup_postgres
from provisioning.k3s.host import setup_traefik
from provisioning.k3s.host import update_k3s

_package_dir = Path(__file__).parent.parent
_cnpg_url = (
    'https://raw.githubusercontent.com/cloudnative-pg/cloudnative-pg/'
    'release-1.25/releases/cnpg-1.25.0.yaml')
_cert_manager_url = (
    'https://github.com/cert-manager/cert-manager/'
    'releases/download/v1.17.1/cert-manager.yaml')


class _CancellingMockMachine(MockMachine):
    """Cancel the run when a command with the given arg starts."""

    def __init__(self, arg):
        super().__init__()
        self._arg = arg

    def Popen(self, args, cwd=None, env=None, passthrough=None):
        run = super().Popen(args, cwd=cwd, env=env, passthrough=passthrough)
        if self._arg in run.args:
            cancel("interrupted")
        return run


class TestInstallAutopatch(unittest.TestCase):

    def test_installed(self):
        remote = Shell(MockMachine())
        install_autopatch(remote)
        script = remote.read_file('/usr/local/bin/autopatch')
        self.assertEqual(script, _package_dir.joinpath('autopatch.sh').read_bytes())
        self.assertEqual(remote.stat('/usr/local/bin/autopatch').permissions(), 0o755)
        cron = remote.read_file('/etc/cron.d/autopatch')
        self.assertEqual(
            cron, b'0 2 * * 6 root /usr/local/bin/autopatch >> /var/log/autopatch.log 2>&1\n')
        self.assertEqual(remote.stat('/etc/cron.d/autopatch').permissions(), 0o644)

    def test_failed(self):
        mock = MockMachine()
        mock.fails('install', stderr=b'install: Read-only file system\n')
        with self.assertRaises(ProvisioningError) as context:
            install_autopatch(Shell(mock))
        self.assertIn("could not install autopatch", str(context.exception))
        self.assertIn("Read-only file system", str(context.exception))


class TestUpdateK3s(unittest.TestCase):

    def setUp(self):
        self._mock = MockMachine()
        self._remote = Shell(self._mock)
        self._remote.register_passthrough('curl', 'sh')

    def test_installer_piped(self):
        self._mock.returns('curl', b'#!/bin/sh\necho k3s\n')
        update_k3s(self._remote)
        [curl] = calls_for(self._remote, 'curl')
        self.assertEqual(curl.args, ['curl', '-sfL', 'https://get.k3s.io'])
        [sh] = calls_for(self._remote, 'sh')
        self.assertEqual(sh.args, ['sh', '-s', '-'])
        self.assertEqual(sh.input, b'#!/bin/sh\necho k3s\n')

    def test_download_failed(self):
        self._mock.fails('curl', returncode=22)
        with self.assertRaises(ProvisioningError) as context:
            update_k3s(self._remote)
        self.assertIn("could not update k3s", str(context.exception))


class TestClusterServices(unittest.TestCase):

    def setUp(self):
        self._mock = MockMachine()
        self._control = SubMachine(Shell(self._mock), 'kubectl')
        self._secrets_mock = MockMachine()
        self._secrets = SubMachine(self._secrets_mock, 'spkez')

    def test_traefik(self):
        setup_traefik(self._control)
        [call] = self._mock.calls
        self.assertEqual(call.args, ['kubectl', 'apply', '-f', '-'])
        self.assertEqual(call.input, _package_dir.joinpath('traefik.yml').read_bytes())

    def test_postgres(self):
        setup_postgres(self._control)
        [operator, cluster] = self._mock.calls
        self.assertEqual(
            operator.args,
            ['kubectl', 'apply', '--server-side', '--force-conflicts', '-f', _cnpg_url])
        self.assertEqual(cluster.args, ['kubectl', 'apply', '-f', '-'])
        self.assertEqual(cluster.input, _package_dir.joinpath('cluster.yml').read_bytes())

    def test_postgres_failed(self):
        self._mock.fails('kubectl', stderr=b'connection refused\n')
        with self.assertRaises(ProvisioningError) as context:
            setup_postgres(self._control)
        self.assertIn("could not install CNPG", str(context.exception))
        self.assertEqual(len(self._mock.calls), 1)

    def test_cert_manager(self):
        self._secrets_mock.returns('spkez', b'fake-cloudflare-token\n')
        setup_cert_manager(self._control, self._secrets)
        [operator, secret, issuer] = self._mock.calls
        self.assertEqual(operator.args, ['kubectl', 'apply', '-f', _cert_manager_url])
        self.assertEqual(secret.args, ['kubectl', 'apply', '-f', '-'])
        self.assertIn(b'name: cert-manager-cloudflare-token\n', secret.input)
        self.assertIn(b'type: Opaque\n', secret.input)
        self.assertIn(b'  api-token: "fake-cloudflare-token"\n', secret.input)
        self.assertEqual(issuer.input, _package_dir.joinpath('issuer.yml').read_bytes())
        [get] = self._secrets_mock.calls
        self.assertEqual(get.args, ['spkez', 'get', 'k8s/cert-manager/cloudflare'])

    def test_cert_manager_secret_not_got(self):
        self._secrets_mock.fails('spkez')
        with self.assertRaises(ProvisioningError) as context:
            setup_cert_manager(self._control, self._secrets)
        self.assertIn("could not get cloudflare API key", str(context.exception))

    def test_cert_manager_secret_not_text(self):
        self._secrets_mock.returns('spkez', b'\xff\xfe-token\n')
        with self.assertRaises(ProvisioningError) as context:
            setup_cert_manager(self._control, self._secrets)
        self.assertIn("could not get cloudflare API key", str(context.exception))
        self.assertNotIn("-token", str(context.exception))
        [operator] = self._mock.calls
        self.assertEqual(operator.args, ['kubectl', 'apply', '-f', _cert_manager_url])


class TestContainerRegistry(unittest.TestCase):

    def setUp(self):
        self._mock = MockMachine()
        self._control = SubMachine(Shell(self._mock), 'kubectl')
        self._secrets_mock = MockMachine()
        self._secrets_mock.returns('spkez', b'fake-registry-password\n')
        self._secrets = SubMachine(self._secrets_mock, 'spkez')
        self._saved_trace = get_trace()
        self._trace = []
        set_trace(self._trace.append)

    def tearDown(self):
        set_trace(self._saved_trace)

    def test_regcred_exists(self):
        setup_container_registry(self._control, self._secrets)
        [auth, registry, check] = self._mock.calls
        self.assertIn(b'name: registry-auth-secret\n', auth.input)
        self.assertIn(b'type: kubernetes.io/basic-auth\n', auth.input)
        self.assertIn(b'  username: "ll"\n', auth.input)
        self.assertIn(b'  password: "fake-registry-password"\n', auth.input)
        self.assertEqual(registry.input, _package_dir.joinpath('registry.yml').read_bytes())
        self.assertEqual(check.args, ['kubectl', 'get', 'secret', 'regcred'])
        [get] = self._secrets_mock.calls
        self.assertEqual(get.args, ['spkez', 'get', 'ctr.lesiw.dev/auth'])

    def test_regcred_created(self):
        self._mock.returns('kubectl')
        self._mock.returns('kubectl')
        self._mock.fails('kubectl', stderr=b'Error from server (NotFound): secrets "regcred" not found\n')
        self._mock.returns('kubectl')
        setup_container_registry(self._control, self._secrets)
        create = self._mock.calls[-1]
        self.assertEqual(create.args, [
            'kubectl', 'create', 'secret', 'docker-registry', 'regcred',
            '--docker-server=ctr.lesiw.dev',
            '--docker-username=ll',
            '--docker-password=fake-registry-password',
            ])
        self.assertEqual(len(self._mock.calls), 4)
        self.assertFalse(any('fake-registry-password' in line for line in self._trace), self._trace)
        self.assertIn('kubectl get secret regcred', self._trace)
        self.assertEqual(get_trace(), self._trace.append)

    def test_regcred_not_created(self):
        self._mock.returns('kubectl')
        self._mock.returns('kubectl')
        self._mock.fails('kubectl', stderr=b'Error from server (NotFound)\n')
        self._mock.fails('kubectl', stderr=b'Error from server (Forbidden)\n')
        with self.assertRaises(ProvisioningError) as context:
            setup_container_registry(self._control, self._secrets)
        self.assertIn("could not store registry secret", str(context.exception))
        self.assertNotIn('fake-registry-password', str(context.exception))
        self.assertEqual(get_trace(), self._trace.append)

    def test_regcred_creation_cancelled(self):
        mock = _CancellingMockMachine('create')
        mock.returns('kubectl')
        mock.returns('kubectl')
        mock.fails('kubectl', stderr=b'Error from server (NotFound)\n')
        control = SubMachine(Shell(mock), 'kubectl')
        try:
            with self.assertLogs('machine', logging.DEBUG) as logs:
                with self.assertRaises(ProvisioningError) as context:
                    setup_container_registry(control, self._secrets)
        finally:
            reset_cancellation()
        self.assertTrue(is_cancelled(context.exception))
        self.assertIn("could not store registry secret", str(context.exception))
        self.assertIn('<redacted>', str(context.exception))
        self.assertNotIn('fake-registry-password', str(context.exception))
        self.assertTrue(
            any('was working when __exit__ called' in line for line in logs.output), logs.output)
        for line in logs.output:
            self.assertNotIn('fake-registry-password', line)
        self.assertEqual(get_trace(), self._trace.append)

    def test_secret_not_text(self):
        secrets_mock = MockMachine()
        secrets_mock.returns('spkez', b'\xff\xfe-password\n')
        with self.assertRaises(ProvisioningError) as context:
            setup_container_registry(self._control, SubMachine(secrets_mock, 'spkez'))
        self.assertIn("could not get registry auth secret", str(context.exception))
        self.assertIn("non-UTF-8", str(context.exception))
        self.assertEqual(self._mock.calls, [])

    def test_multiline_secret(self):
        self._secrets_mock = MockMachine()
        self._secrets_mock.returns('spkez', b'line1\nline2\n')
        with self.assertRaises(ProvisioningError) as context:
            setup_container_registry(self._control, SubMachine(self._secrets_mock, 'spkez'))
        self.assertIn("could not get registry auth secret", str(context.exception))
        self.assertEqual(self._mock.calls, [])


class TestRun(unittest.TestCase):

    def setUp(self):
        self._base = MockMachine()
        self._base.returns('spkez', b'spkez v0.3.0\n')
        self._base.returns('spkez', b'secret\n')
        self._machines = HostMachines(self._base, HostSettings(host='k8s.example.com'))

    def tearDown(self):
        self._machines.close()
        reset_cancellation()

    def _remote_commands(self):
        commands = []
        for call in self._base.calls_for('ssh'):
            [_ssh, _i, _key_path, host, _separator, *command] = call.args
            self.assertEqual(host, 'k8s.example.com')
            commands.append(command)
        return commands

    def test_order(self):
        run(self._machines)
        self.assertEqual(self._remote_commands(), [
            ['install', '-m', '0755', '/dev/stdin', '/usr/local/bin/autopatch'],
            ['install', '-m', '0644', '/dev/stdin', '/etc/cron.d/autopatch'],
            ['curl', '-sfL', 'https://get.k3s.io'],
            ['sh', '-s', '-'],
            ['kubectl', 'apply', '-f', '-'],
            ['kubectl', 'apply', '--server-side', '--force-conflicts', '-f', _cnpg_url],
            ['kubectl', 'apply', '-f', '-'],
            ['kubectl', 'apply', '-f', _cert_manager_url],
            ['kubectl', 'apply', '-f', '-'],
            ['kubectl', 'apply', '-f', '-'],
            ['kubectl', 'apply', '-f', '-'],
            ['kubectl', 'apply', '-f', '-'],
            ['kubectl', 'get', 'secret', 'regcred'],
            ])

    def test_first_failure_stops(self):
        self._base.fails('ssh', returncode=255, stderr=b'ssh: connect to host k8s.example.com port 22: No route to host\n')
        with self.assertRaises(ProvisioningError) as context:
            run(self._machines)
        self.assertIn("could not install autopatch", str(context.exception))
        self.assertIn("No route to host", str(context.exception))
        self.assertEqual(len(self._base.calls_for('ssh')), 1)

    def test_step_failure_wrapped(self):
        self._base.returns('ssh')
        self._base.returns('ssh')
        self._base.fails('ssh', returncode=22)
        with self.assertRaises(ProvisioningError) as context:
            run(self._machines)
        self.assertTrue(
            str(context.exception).startswith("failed to install or update k3s: could not update k3s: "),
            str(context.exception))
        self.assertEqual(len(self._base.calls_for('ssh')), 4)

    def test_exit_status_success(self):
        self.assertEqual(run_reporting(self._machines), 0)

    def test_exit_status_failure(self):
        self._base.fails('ssh', returncode=255)
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            self.assertEqual(run_reporting(self._machines), 1)
        self.assertIn("could not install autopatch", stderr.getvalue())

    def test_exit_status_cancelled(self):
        cancel("interrupted")
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            self.assertEqual(run_reporting(self._machines), 130)
        self.assertIn("interrupted", stderr.getvalue())


if __name__ == '__main__':
    logging.basicConfig(level=logging.DEBUG)
    unittest.main()
