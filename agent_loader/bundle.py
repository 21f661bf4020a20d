"""
Bundle dictionary and local state for the agent loader.

The bundle dictionary maps the symbolic names used in manifests to objects on
the file system. A manifest can never name a path directly: the only paths the
loader will ever read or replace are the ones compiled into this module.
"""

import hashlib
import logging
import os
import platform
import sys
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Tuple, Union

from agent_loader.errors import ReadError, SnapshotError, UnsupportedPlatformError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096

ByteSource = Union[str, "os.PathLike[str]", bytes, bytearray, memoryview]


# DIGEST ENGINE
def sha256_of_bytes(data: Union[bytes, bytearray, memoryview]) -> str:
    h = hashlib.sha256()
    view = memoryview(data)
    for start in range(0, len(view), CHUNK_SIZE):
        h.update(view[start:start + CHUNK_SIZE])
    return h.hexdigest()


def sha256_of_file(path: Union[str, "os.PathLike[str]"]) -> str:
    """
    Hash a file in fixed-size chunks.

    Opening errors propagate unchanged as OSError (FileNotFoundError when the
    path does not exist, so callers can treat that as "absent"). Failures while
    reading are raised as ReadError.
    """
    h = hashlib.sha256()
    with open(path, "rb") as f:
        try:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                h.update(chunk)
        except OSError as e:
            raise ReadError(f"Failed reading {path}: {e}") from e
    return h.hexdigest()


def digest(source: ByteSource) -> str:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return sha256_of_bytes(source)
    return sha256_of_file(source)


# BUNDLE DICTIONARY
@dataclass(frozen=True)
class BundleEntry:
    """A local artifact. An empty sha256 means the file is not on disk."""

    name: str
    path: str
    sha256: str = ""

    @property
    def present(self) -> bool:
        return bool(self.sha256)


BundleDictionary = Mapping[str, Tuple[BundleEntry, ...]]


def build_dictionary(tables: Mapping[str, Iterable[Tuple[str, str]]]) -> BundleDictionary:
    """Freeze per-platform (name, path) tables into a read-only bundle dictionary."""
    frozen = {}
    for plat, rows in tables.items():
        entries = tuple(BundleEntry(name=name, path=path) for name, path in rows)
        names = [e.name for e in entries]
        paths = [e.path for e in entries]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate bundle name for platform {plat}")
        if len(set(paths)) != len(paths):
            raise ValueError(f"Duplicate bundle path for platform {plat}")
        for e in entries:
            if not os.path.isabs(e.path):
                raise ValueError(f"Bundle path for {plat}/{e.name} is not absolute: {e.path}")
        frozen[plat] = entries
    return MappingProxyType(frozen)


BUNDLE_DICTIONARY = build_dictionary({
    "linux": [
        ("agent", "/sbin/mig-agent"),
        ("configuration", "/etc/mig/mig-agent.cfg"),
    ],
    "darwin": [
        ("agent", "/usr/local/bin/mig-agent"),
        ("configuration", "/etc/mig/mig-agent.cfg"),
    ],
})


# HOST IDENTITY
_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv7l": "arm",
    "armv6l": "arm",
}


def host_platform() -> str:
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


def host_architecture() -> str:
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def host_bundle(plat: Optional[str] = None,
                dictionary: BundleDictionary = BUNDLE_DICTIONARY) -> Tuple[BundleEntry, ...]:
    plat = plat or host_platform()
    entries = dictionary.get(plat)
    if not entries:
        raise UnsupportedPlatformError(f"No entry for {plat} in bundle dictionary")
    return entries


# LOCAL STATE SNAPSHOT
def snapshot(plat: Optional[str] = None,
             dictionary: BundleDictionary = BUNDLE_DICTIONARY) -> List[BundleEntry]:
    """
    Hash every bundle entry for the platform.

    A missing file yields an entry with an empty digest. Any other failure
    aborts the whole snapshot with SnapshotError.
    """
    ret: List[BundleEntry] = []
    for template in host_bundle(plat, dictionary):
        try:
            sha = sha256_of_file(template.path)
        except FileNotFoundError:
            sha = ""
        except (OSError, ReadError) as e:
            raise SnapshotError(f"Unable to hash {template.name} at {template.path}: {e}") from e
        ret.append(replace(template, sha256=sha))

    logger.info("Local bundle state initialized")
    for entry in ret:
        logger.info("%s %s -> %s", entry.name, entry.path, entry.sha256 or "(absent)")
    return ret
