# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
from subprocess import CalledProcessError
from typing import Optional
from typing import Type


class MachineError(Exception):
    pass


class CommandFailed(MachineError, CalledProcessError):

    def __str__(self):
        stderr = self.stderr.decode(errors='backslashreplace')[:5000]
        if self.returncode is None:
            result = "no exit status"
        else:
            result = f"exit status {self.returncode} (0x{self.returncode:x})"
        return f"Command {self.cmd} died with {result}: {stderr}"


class CommandNotFound(CommandFailed):
    pass


class MachineIOError(MachineError):

    def __init__(self, args, cause):
        super().__init__(f"Command {args} failed to run: {cause}")
        self.cmd = args


class OutputNotText(MachineError):

    def __init__(self, args, cause: UnicodeDecodeError):
        # The output itself is not shown: it may be a secret.
        super().__init__(
            f"Command {args} printed non-UTF-8 output at byte {cause.start}: {cause.reason}")
        self.cmd = args


class Cancelled(MachineError):

    def __init__(self, args, reason):
        super().__init__(f"Command {args} cancelled: {reason}")
        self.cmd = args
        self.reason = reason


class CommandTimedOut(Cancelled):

    def __init__(self, args, timeout_sec, stdout=b'', stderr=b''):
        super().__init__(args, f"timed out after {timeout_sec} seconds")
        self.timeout_sec = timeout_sec
        self.stdout = stdout
        self.stderr = stderr


def caused_by(exc: Optional[BaseException], exc_type: Type[BaseException]) -> bool:
    """Look for the exception type through the chain of wrapping exceptions.

    >>> try:
    ...     try:
    ...         raise CommandNotFound(127, ['spkez'], b'', b'')
    ...     except CommandFailed as e:
    ...         raise RuntimeError(f"could not check spkez: {e}") from e
    ... except RuntimeError as e:
    ...     caused_by(e, CommandNotFound)
    True
    """
    seen = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, exc_type):
            return True
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return False


def is_not_found(exc: Optional[BaseException]) -> bool:
    return caused_by(exc, CommandNotFound)


def is_cancelled(exc: Optional[BaseException]) -> bool:
    return caused_by(exc, Cancelled)
