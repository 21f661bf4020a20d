import builtins
import errno
import hashlib
import io
import json
from pathlib import Path
from typing import Dict, Optional

import pytest
import requests
from fastapi.testclient import TestClient
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from agent_loader.bundle import build_dictionary
from agent_loader.loader_client import Config, ManifestClient
from agent_loader.manifest import IdentityParameters
from agent_loader.manifest_server import create_app

API_URL = "https://manifest.test/api/v1/"


def sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def write_manifest(root: Path, operator: str, arch: str, plat: str,
                   files: Dict[str, bytes], digests: Optional[Dict[str, str]] = None) -> Path:
    """Lay out <root>/<operator>/<arch>/<plat>/manifest.json plus files/."""
    digests = digests or {}
    base = root / operator / arch / plat
    (base / "files").mkdir(parents=True, exist_ok=True)
    entries = []
    for name, content in files.items():
        (base / "files" / name).write_bytes(content)
        entries.append({"name": name, "sha256": digests.get(name, sha(content))})
    (base / "manifest.json").write_text(json.dumps({"entries": entries}), encoding="utf-8")
    return base


class AppAdapter(BaseAdapter):
    """Route a requests.Session into an in-process ASGI app."""

    def __init__(self, app):
        super().__init__()
        self.client = TestClient(app)
        self.calls = []

    def send(self, request, **kwargs):
        self.calls.append(request)
        r = self.client.request(
            request.method,
            request.url,
            content=request.body,
            headers=dict(request.headers),
        )
        resp = requests.Response()
        resp.status_code = r.status_code
        resp.reason = r.reason_phrase
        resp.headers = CaseInsensitiveDict(r.headers)
        resp.raw = io.BytesIO(r.content)
        resp._content = r.content
        resp._content_consumed = True
        resp.url = request.url
        resp.request = request
        return resp

    def close(self):
        pass


class _EIOReader:
    """Wraps an open binary file whose reads fail with EIO."""

    def __init__(self, f):
        self._f = f

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self._f.close()

    def read(self, size=-1):
        raise OSError(errno.EIO, "Input/output error")


@pytest.fixture
def fail_reads(monkeypatch):
    """Make binary-mode open() in the given module return files that fail on read."""

    def install(module):
        real_open = builtins.open

        def fake_open(path, mode="r", *args, **kwargs):
            f = real_open(path, mode, *args, **kwargs)
            if "r" in mode and "b" in mode:
                return _EIOReader(f)
            return f

        monkeypatch.setattr(module, "open", fake_open, raising=False)

    return install


@pytest.fixture
def identity():
    return IdentityParameters(operator="acme", platform="linux", architecture="amd64")


@pytest.fixture
def install_dir(tmp_path):
    return tmp_path / "host"


@pytest.fixture
def dictionary(install_dir):
    return build_dictionary({
        "linux": [
            ("agent", str(install_dir / "opt" / "x" / "agent")),
            ("configuration", str(install_dir / "etc" / "agent.cfg")),
        ],
    })


@pytest.fixture
def manifest_root(tmp_path):
    root = tmp_path / "manifests"
    root.mkdir()
    return root


@pytest.fixture
def adapter(manifest_root):
    return AppAdapter(create_app(manifest_root=str(manifest_root)))


@pytest.fixture
def client(adapter):
    session = requests.Session()
    session.mount("https://manifest.test/", adapter)
    return ManifestClient(API_URL, session=session, timeout=(5, 5))


@pytest.fixture
def config(tmp_path, monkeypatch):
    for key in Config._FIELDS:
        monkeypatch.delenv(key, raising=False)
    cfg = Config(tmp_path / "loader.env")
    cfg.API_URL = API_URL
    cfg.OPERATOR = "acme"
    cfg.LOCK_FILE = str(tmp_path / "loader.lock")
    cfg.LOCK_TIMEOUT_SECONDS = 1
    return cfg
