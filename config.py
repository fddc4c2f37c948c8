# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Settings of the host to provision, merged from INI files.

Sections are masks of the provisioned host name, like "[k8s.*]".
"[defaults]" applies to every host and tells which host is provisioned
unless one is given.
Add ";v123" to a section to raise its priority: "[k8s.*;v2]".
Higher versions override lower ones. With equal versions, later files
and later sections override earlier ones.

Run as a script to see the settings in effect.
"""
import fnmatch
import logging
import sys
from configparser import ConfigParser
from pathlib import Path
from typing import Dict
from typing import NamedTuple
from typing import Optional
from typing import Sequence

_logger = logging.getLogger(__name__)

config_files = (
    Path(__file__).with_name('config.ini'),
    Path('~/.config/k3s_host.ini').expanduser(),
    )


class _Section(NamedTuple):
    mask: str
    version: int

    @classmethod
    def parse(cls, header: str) -> '_Section':
        """Get host mask and version.

        >>> _Section.parse('defaults')
        _Section(mask='*', version=0)
        >>> _Section.parse('k8s.*;v2')
        _Section(mask='k8s.*', version=2)
        """
        if header == 'defaults':
            return cls('*', 0)
        mask, _, suffix = header.partition(';')
        if not suffix:
            return cls(mask, 0)
        if not suffix.startswith('v'):
            raise ValueError(f"Unknown {suffix} in [{header}]")
        try:
            return cls(mask, int(suffix[1:]))
        except ValueError:
            raise ValueError(f"Cannot parse {suffix} in [{header}]")


def read_host_config(paths: Sequence[Path], host: Optional[str] = None) -> Dict[str, str]:
    """Merge the sections matching the host; missing files are skipped."""
    parsers = []
    for path in paths:
        parser = ConfigParser(interpolation=None)
        if not parser.read(path):
            _logger.debug("Config %s: not found", path)
            continue
        parsers.append((path, parser))
    if host is None:
        host = _default_host(parsers)
    matching = []
    for file_order, (path, parser) in enumerate(parsers):
        for section_order, header in enumerate(parser.sections()):
            section = _Section.parse(header)
            if not fnmatch.fnmatch(host, section.mask):
                _logger.debug("Config %s: [%s]: not for %s", path, header, host)
                continue
            _logger.info("Config %s: [%s]: applies to %s", path, header, host)
            priority = (section.version, file_order, section_order)
            matching.append((priority, parser.items(header)))
    config = {}
    for _priority, items in sorted(matching, key=lambda entry: entry[0]):
        config.update(items)
    config['host'] = host
    return config


def _default_host(parsers) -> str:
    host = None
    for _path, parser in parsers:
        host = parser.get('defaults', 'host', fallback=host)
    if host is None:
        raise ValueError("No host given and none in [defaults]")
    return host


def load_config(host: Optional[str] = None) -> Dict[str, str]:
    return read_host_config(config_files, host=host)


if __name__ == '__main__':
    for key, value in load_config(*sys.argv[1:2]).items():
        print(key + '=' + value)
