# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import os
import shlex
from ipaddress import IPv4Address
from ipaddress import IPv6Address

_PROHIBITED_ENV_NAMES = {'PATH', 'HOME', 'USER', 'SHELL', 'PWD', 'TERM'}


def quote_arg(arg):
    return shlex.quote(str(arg))


def command_to_script(command):
    """Join args into a line a POSIX shell parses back into the same args.

    >>> print(command_to_script(['kubectl', 'apply', '-f', '-']))
    kubectl apply -f -
    >>> print(command_to_script(['sh', '-c', 'echo $HOME']))
    sh -c 'echo $HOME'
    """
    return shlex.join(command_to_args(command))


def command_to_args(command):
    str_args = []
    for arg in command:
        if isinstance(arg, str):
            str_args.append(arg)
        elif isinstance(arg, int) and not isinstance(arg, bool):
            str_args.append(str(arg))
        elif isinstance(arg, os.PathLike):
            str_args.append(os.fspath(arg))
        else:
            raise TypeError(f"Unsupported arg type {arg} in command {command}")
    return str_args


def env_values_to_str(env):
    converted_env = {}
    for name, value in env.items():
        if isinstance(value, bool):  # Beware: bool is subclass of int.
            converted_env[name] = 'true' if value else 'false'
            continue
        if isinstance(value, (int, IPv6Address, IPv4Address)):
            converted_env[name] = str(value)
            continue
        if isinstance(value, os.PathLike):
            converted_env[name] = os.fspath(value)
            continue
        if isinstance(value, str):
            converted_env[name] = value
            continue
        if value is None:
            converted_env[name] = ''
            continue
        raise RuntimeError(f"Unexpected value {value!r} of type {type(value)}")
    return converted_env


def command_to_remote_script(command, cwd=None, env=None):
    """Build a line for a remote shell, which only receives a string.

    >>> print(command_to_remote_script(['ls', '-l'], cwd='/var/log', env={'LC_ALL': 'C'}))
    cd /var/log && LC_ALL=C ls -l
    """
    script = command_to_script(command)
    if env is not None:
        assignments = []
        for name, value in env_values_to_str(env).items():
            if name in _PROHIBITED_ENV_NAMES:
                raise ValueError(f"Potential name clash with built-in name: {name}")
            assignments.append(f'{name}={quote_arg(value)}')
        script = ' '.join([*assignments, script])
    if cwd is not None:
        script = command_to_script(['cd', cwd]) + ' && ' + script
    return script
