# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
from contextlib import ExitStack
from typing import Mapping
from typing import NamedTuple
from typing import Optional

from machine import CommandNotFound
from machine import Machine
from machine import MachineError
from machine import Once
from machine import Shell
from machine import SshMachine
from machine import SubMachine
from machine import credential_file

_logger = logging.getLogger(__name__)


class ProvisioningError(Exception):
    pass


class HostSettings(NamedTuple):
    host: str
    ssh_key_secret: str = 'infra/ssh'
    ssh_transport: str = 'openssh'
    ssh_user: str = 'root'
    ssh_port: int = 22
    secrets_cli: str = 'spkez'
    secrets_package: str = 'lesiw.io/spkez@latest'

    @classmethod
    def from_config(cls, config: Mapping[str, str], host: Optional[str] = None):
        transport = config.get('ssh_transport', cls._field_defaults['ssh_transport'])
        if transport not in ('openssh', 'paramiko'):
            raise ValueError(f"Unknown ssh_transport {transport!r}: must be openssh or paramiko")
        return cls(
            host=host or config['host'],
            ssh_key_secret=config.get('ssh_key_secret', cls._field_defaults['ssh_key_secret']),
            ssh_transport=transport,
            ssh_user=config.get('ssh_user', cls._field_defaults['ssh_user']),
            ssh_port=int(config.get('ssh_port', cls._field_defaults['ssh_port'])),
            secrets_cli=config.get('secrets_cli', cls._field_defaults['secrets_cli']),
            secrets_package=config.get('secrets_package', cls._field_defaults['secrets_package']),
            )


class HostMachines:
    """Machines the provisioning steps run on, each set up on first use.

    secrets() runs the secrets CLI locally, installing it if needed.
    remote() runs commands on the host.
    control() runs kubectl on the host.

    Each is set up at most once: later calls get the same machine,
    or the same error if the setup has failed.
    Files and connections the machines need live until close().
    """

    def __init__(self, base: Machine, settings: HostSettings):
        self._base = base
        self._settings = settings
        self._exit_stack = ExitStack()
        self.secrets = Once(self._make_secrets)
        self.remote = Once(self._make_remote)
        self.control = Once(self._make_control)

    def __repr__(self):
        return f'<{self.__class__.__name__} {self._settings.host} over {self._base!r}>'

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        self._exit_stack.close()

    def _make_secrets(self) -> Machine:
        cli = self._settings.secrets_cli
        shell = Shell(self._base)
        shell.register_passthrough('go', cli)
        try:
            shell.call(cli, '--version')
        except CommandNotFound:
            _logger.info("Installing %s...", cli)
            try:
                shell.exec('go', 'install', self._settings.secrets_package)
            except MachineError as e:
                raise ProvisioningError(f"could not install {cli}: {e}") from e
            try:
                shell.call(cli, '--version')
            except MachineError as e:
                raise ProvisioningError(f"could not find {cli} after installing it: {e}") from e
        except MachineError as e:
            raise ProvisioningError(f"error checking {cli}: {e}") from e
        return SubMachine(shell, cli)

    def _get_ssh_key(self) -> str:
        secrets = self.secrets()
        try:
            return secrets.call('get', self._settings.ssh_key_secret)
        except MachineError as e:
            raise ProvisioningError(f"could not get ssh key: {e}") from e

    def _make_remote(self) -> Shell:
        key = self._get_ssh_key()
        if self._settings.ssh_transport == 'paramiko':
            try:
                ssh = SshMachine(
                    self._settings.host,
                    self._settings.ssh_port,
                    self._settings.ssh_user,
                    key + '\n',
                    )
            except ValueError as e:
                raise ProvisioningError(f"could not load ssh key: {e}") from e
            self._exit_stack.callback(ssh.close)
            remote = Shell(ssh)
        else:
            try:
                key_path = self._exit_stack.enter_context(
                    credential_file((key + '\n').encode(), prefix='sshkey-'))
            except OSError as e:
                raise ProvisioningError(f"could not write ssh key: {e}") from e
            local = Shell(self._base)
            local.register_passthrough('ssh')
            remote = Shell(SubMachine(local, 'ssh', '-i', key_path, self._settings.host, '--'))
        remote.register_passthrough('sh', 'curl', 'kubectl')
        _logger.info("Remote machine: %r", remote)
        return remote

    def _make_control(self) -> Machine:
        return SubMachine(self.remote(), 'kubectl')
