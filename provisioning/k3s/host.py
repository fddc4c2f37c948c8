# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Install and update k3s on the host and set up the cluster services.

Steps are run in order. The first failure stops the run.
Every step is safe to run again.
"""
import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Sequence

from config import load_config
from machine import CommandFailed
from machine import Machine
from machine import MachineError
from machine import Shell
from machine import cancel
from machine import cancel_after
from machine import is_cancelled
from machine import pipe
from machine import reset_cancellation
from machine import set_trace
from machine import shell_trace
from machine import trace_discarded
from machine.local_machine import local_machine
from provisioning.k3s._machines import HostMachines
from provisioning.k3s._machines import HostSettings
from provisioning.k3s._machines import ProvisioningError

_logger = logging.getLogger(__name__)

_AUTOPATCH_PATH = '/usr/local/bin/autopatch'
_AUTOPATCH_CRON_PATH = '/etc/cron.d/autopatch'
_AUTOPATCH_CRON = '0 2 * * 6 root /usr/local/bin/autopatch >> /var/log/autopatch.log 2>&1\n'
_K3S_INSTALLER_URL = 'https://get.k3s.io'
_CNPG_URL = (
    'https://raw.githubusercontent.com/cloudnative-pg/cloudnative-pg/'
    'release-1.25/releases/cnpg-1.25.0.yaml')
_CERT_MANAGER_URL = (
    'https://github.com/cert-manager/cert-manager/'
    'releases/download/v1.17.1/cert-manager.yaml')
_REGISTRY_SERVER = 'ctr.lesiw.dev'
_REGISTRY_USER = 'll'

_OPAQUE_SECRET = '''\
apiVersion: v1
kind: Secret
metadata:
  name: {name}
type: Opaque
stringData:
  {key}: {value}
'''

_BASIC_AUTH_SECRET = '''\
apiVersion: v1
kind: Secret
metadata:
  name: {name}
type: kubernetes.io/basic-auth
stringData:
  username: {username}
  password: {password}
'''


def _manifest(name) -> bytes:
    return Path(__file__).with_name(name).read_bytes()


def _yaml_str(value: str) -> str:
    # A JSON string is a valid YAML scalar: quotes and colons are escaped.
    return json.dumps(value)


def _apply(control: Machine, manifest: bytes):
    control.exec('apply', '-f', '-', input=manifest)


def install_autopatch(remote: Shell):
    try:
        remote.write_file(_AUTOPATCH_PATH, _manifest('autopatch.sh'), mode=0o755)
    except MachineError as e:
        raise ProvisioningError(f"could not install autopatch: {e}") from e
    try:
        remote.write_file(_AUTOPATCH_CRON_PATH, _AUTOPATCH_CRON.encode())
    except MachineError as e:
        raise ProvisioningError(f"could not install autopatch cron job: {e}") from e


def update_k3s(remote: Shell):
    """Run the installer script, which also updates an installed k3s."""
    try:
        pipe(
            remote.command('curl', '-sfL', _K3S_INSTALLER_URL),
            remote.command('sh', '-s', '-'),
            )
    except MachineError as e:
        raise ProvisioningError(f"could not update k3s: {e}") from e


def setup_traefik(control: Machine):
    # k3s comes with traefik installed; only its configuration is applied.
    try:
        _apply(control, _manifest('traefik.yml'))
    except MachineError as e:
        raise ProvisioningError(f"could not configure traefik: {e}") from e


def setup_postgres(control: Machine):
    try:
        control.exec(
            'apply',
            '--server-side',  # See: https://github.com/cloudnative-pg/charts/issues/325
            '--force-conflicts',  # Over an installed version.
            '-f', _CNPG_URL,
            )
    except MachineError as e:
        raise ProvisioningError(f"could not install CNPG: {e}") from e
    try:
        _apply(control, _manifest('cluster.yml'))
    except MachineError as e:
        raise ProvisioningError(f"could not install PG cluster: {e}") from e


def setup_cert_manager(control: Machine, secrets: Machine):
    try:
        control.exec('apply', '-f', _CERT_MANAGER_URL)
    except MachineError as e:
        raise ProvisioningError(f"could not install cert-manager: {e}") from e
    try:
        token = secrets.call('get', 'k8s/cert-manager/cloudflare')
    except MachineError as e:
        raise ProvisioningError(f"could not get cloudflare API key: {e}") from e
    secret = _OPAQUE_SECRET.format(
        name='cert-manager-cloudflare-token',
        key='api-token',
        value=_yaml_str(token),
        )
    try:
        _apply(control, secret.encode())
    except MachineError as e:
        raise ProvisioningError(f"could not store cloudflare secret: {e}") from e
    try:
        _apply(control, _manifest('issuer.yml'))
    except MachineError as e:
        raise ProvisioningError(f"could not create cloudflare issuer: {e}") from e


def setup_container_registry(control: Machine, secrets: Machine):
    try:
        password = secrets.get('get', f'{_REGISTRY_SERVER}/auth')
    except (MachineError, ValueError) as e:
        raise ProvisioningError(f"could not get registry auth secret: {e}") from e
    secret = _BASIC_AUTH_SECRET.format(
        name='registry-auth-secret',
        username=_yaml_str(_REGISTRY_USER),
        password=_yaml_str(password),
        )
    try:
        _apply(control, secret.encode())
    except MachineError as e:
        raise ProvisioningError(f"could not store registry auth secret: {e}") from e
    try:
        _apply(control, _manifest('registry.yml'))
    except MachineError as e:
        raise ProvisioningError(f"could not install registry: {e}") from e
    try:
        control.exec('get', 'secret', 'regcred')
    except CommandFailed:
        _logger.info("Secret regcred does not exist, create it")
    else:
        return
    with trace_discarded():
        try:
            control.exec(
                'create', 'secret', 'docker-registry', 'regcred',
                f'--docker-server={_REGISTRY_SERVER}',
                f'--docker-username={_REGISTRY_USER}',
                f'--docker-password={password}',
                )
        except MachineError as e:
            raise ProvisioningError(f"could not store registry secret: {e}") from e


def run(machines: HostMachines):
    install_autopatch(machines.remote())
    try:
        update_k3s(machines.remote())
    except ProvisioningError as e:
        raise ProvisioningError(f"failed to install or update k3s: {e}") from e
    try:
        setup_traefik(machines.control())
    except ProvisioningError as e:
        raise ProvisioningError(f"failed to set up traefik: {e}") from e
    try:
        setup_postgres(machines.control())
    except ProvisioningError as e:
        raise ProvisioningError(f"failed to set up postgres: {e}") from e
    try:
        setup_cert_manager(machines.control(), machines.secrets())
    except ProvisioningError as e:
        raise ProvisioningError(f"failed to set up cert-manager: {e}") from e
    try:
        setup_container_registry(machines.control(), machines.secrets())
    except ProvisioningError as e:
        raise ProvisioningError(f"failed to setup container registry: {e}") from e


def run_reporting(machines: HostMachines) -> int:
    """Run, print the error if any and tell the exit status."""
    try:
        run(machines)
    except (ProvisioningError, MachineError) as e:
        print(e, file=sys.stderr)
        if is_cancelled(e):
            return 130
        return 1
    _logger.info("Provisioned %r", machines)
    return 0


def _on_interrupt(signum, frame):
    cancel("interrupted")


def main(args: Sequence[str]) -> int:
    parsed_args = _parse_args(args)
    logging.basicConfig(
        level=logging.DEBUG if parsed_args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
        )
    if parsed_args.verbose:
        set_trace(shell_trace)
    settings = HostSettings.from_config(load_config(host=parsed_args.host))
    _logger.info("Provision %s", settings.host)
    if parsed_args.timeout is not None:
        cancel_after(parsed_args.timeout)
    previous_handler = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        with HostMachines(local_machine, settings) as machines:
            return run_reporting(machines)
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        reset_cancellation()


def _parse_args(args: Sequence[str]):
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help="Echo commands to stderr as they are run, like sh -x.")
    parser.add_argument(
        '--timeout', type=float, metavar='SECONDS',
        help="Cancel the whole run after this many seconds.")
    parser.add_argument(
        '--host',
        help="Host to provision instead of the one from config.")
    return parser.parse_args(args)


if __name__ == '__main__':
    sys.exit(main(sys.argv[1:]))
