import errno
import os

import pytest

from agent_loader import bundle
from agent_loader.bundle import (
    BUNDLE_DICTIONARY,
    BundleEntry,
    build_dictionary,
    digest,
    host_bundle,
    sha256_of_bytes,
    sha256_of_file,
    snapshot,
)
from agent_loader.errors import ReadError, SnapshotError, UnsupportedPlatformError

ABC_SHA256 = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_sha256_of_bytes_known_values():
    assert sha256_of_bytes(b"abc") == ABC_SHA256
    assert sha256_of_bytes(b"") == EMPTY_SHA256


def test_file_and_buffer_digests_agree_across_chunks(tmp_path):
    content = os.urandom(bundle.CHUNK_SIZE * 3 + 17)
    path = tmp_path / "blob"
    path.write_bytes(content)

    assert sha256_of_file(path) == sha256_of_bytes(content)
    assert digest(str(path)) == digest(content) == digest(bytearray(content))


def test_missing_file_is_reported_as_file_not_found(tmp_path):
    with pytest.raises(FileNotFoundError):
        sha256_of_file(tmp_path / "nope")


def test_snapshot_reports_absent_and_present_entries(dictionary, install_dir):
    cfg_path = install_dir / "etc" / "agent.cfg"
    cfg_path.parent.mkdir(parents=True)
    cfg_path.write_bytes(b"abc")

    have = snapshot("linux", dictionary)

    assert [e.name for e in have] == ["agent", "configuration"]
    agent, configuration = have
    assert agent.sha256 == ""
    assert not agent.present
    assert configuration.sha256 == ABC_SHA256
    assert configuration.path == str(cfg_path)


def test_snapshot_does_not_mutate_the_dictionary(dictionary, install_dir):
    cfg_path = install_dir / "etc" / "agent.cfg"
    cfg_path.parent.mkdir(parents=True)
    cfg_path.write_bytes(b"abc")

    snapshot("linux", dictionary)

    assert all(e.sha256 == "" for e in dictionary["linux"])


def test_snapshot_fails_fast_on_unreadable_entry(dictionary, install_dir):
    # A directory where the agent binary should be cannot be hashed.
    (install_dir / "opt" / "x" / "agent").mkdir(parents=True)

    with pytest.raises(SnapshotError):
        snapshot("linux", dictionary)


def test_read_failure_raises_read_error(tmp_path, fail_reads):
    path = tmp_path / "blob"
    path.write_bytes(b"abc")
    fail_reads(bundle)

    with pytest.raises(ReadError) as exc:
        sha256_of_file(path)
    assert exc.value.__cause__.errno == errno.EIO


def test_snapshot_read_failure_is_snapshot_error(dictionary, install_dir, fail_reads):
    agent_path = install_dir / "opt" / "x" / "agent"
    agent_path.parent.mkdir(parents=True)
    agent_path.write_bytes(b"mig-agent")
    fail_reads(bundle)

    with pytest.raises(SnapshotError):
        snapshot("linux", dictionary)


def test_snapshot_unsupported_platform(dictionary):
    with pytest.raises(UnsupportedPlatformError):
        snapshot("plan9", dictionary)


def test_build_dictionary_rejects_duplicate_names():
    with pytest.raises(ValueError):
        build_dictionary({"linux": [("agent", "/a"), ("agent", "/b")]})


def test_build_dictionary_rejects_duplicate_paths():
    with pytest.raises(ValueError):
        build_dictionary({"linux": [("agent", "/a"), ("configuration", "/a")]})


def test_build_dictionary_rejects_relative_paths():
    with pytest.raises(ValueError):
        build_dictionary({"linux": [("agent", "sbin/mig-agent")]})


def test_dictionary_is_read_only():
    with pytest.raises(TypeError):
        BUNDLE_DICTIONARY["linux"] = ()


@pytest.mark.parametrize("plat", ["linux", "darwin"])
def test_compiled_in_tables_cover_agent_and_configuration(plat):
    entries = host_bundle(plat)
    assert {e.name for e in entries} == {"agent", "configuration"}
    assert all(isinstance(e, BundleEntry) and os.path.isabs(e.path) for e in entries)


@pytest.mark.parametrize("machine, expected", [
    ("x86_64", "amd64"),
    ("AMD64", "amd64"),
    ("aarch64", "arm64"),
    ("i686", "386"),
    ("armv7l", "arm"),
])
def test_host_architecture_is_normalised(monkeypatch, machine, expected):
    monkeypatch.setattr(bundle.platform, "machine", lambda: machine)
    assert bundle.host_architecture() == expected


def test_host_platform_linux(monkeypatch):
    monkeypatch.setattr(bundle.sys, "platform", "linux")
    assert bundle.host_platform() == "linux"
