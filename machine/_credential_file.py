# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

_logger = logging.getLogger(__name__)


@contextmanager
def credential_file(data: bytes, prefix='credential-') -> Iterator[Path]:
    """Keep a secret on disk, readable by the owner only, while in the block."""
    fd, name = tempfile.mkstemp(prefix=prefix)
    path = Path(name)
    try:
        with os.fdopen(fd, 'wb') as f:
            os.fchmod(f.fileno(), 0o600)
            f.write(data)
        _logger.debug("Credential file %s: created", path)
        yield path
    finally:
        path.unlink(missing_ok=True)
        _logger.debug("Credential file %s: removed", path)
