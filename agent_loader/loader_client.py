#!/usr/bin/env python3

"""
Agent loader: keeps the locally installed agent bundle in line with the manifest API.

- Hashes every object in the compiled-in bundle dictionary (missing files are fine).
- Asks the API for the manifest matching this host's operator/arch/os.
- For every object whose SHA256 differs, fetches it, stages it next to the target
  with mode 0700, verifies the staged file and renames it over the live path.
- One object failing verification does not stop the others. A staged file that
  fails verification is left on disk for inspection.
- Config is hot-reloaded from loader.env and/or environment variables.
"""

import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar
from urllib.parse import urljoin

import requests
from filelock import FileLock, Timeout
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from agent_loader import envelope
from agent_loader.bundle import (
    BUNDLE_DICTIONARY,
    BundleDictionary,
    BundleEntry,
    host_architecture,
    host_platform,
    sha256_of_file,
    snapshot,
)
from agent_loader.errors import (
    LoaderError,
    ManifestFormatError,
    ProtocolError,
    ReadError,
    StagedIntegrityError,
)
from agent_loader.manifest import (
    DEFAULT_OPERATOR,
    FetchResponse,
    IdentityParameters,
    Manifest,
    ManifestEntry,
    decompress,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Optional config file that we hot-reload
ENV_FILE_PATH = Path(os.getenv("LOADER_ENV_FILE", "/etc/mig/loader.env"))

# Staged objects live next to their target so the final rename stays on one filesystem.
STAGE_SUFFIX = ".loader"
STAGE_MODE = 0o700

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2

DEFAULT_ENV_CONTENT = """# Agent loader defaults (auto-generated)
# You can edit this file; the loader hot-reloads it each cycle.

# Manifest API base URL
API_URL=https://localhost/api/v1/

# Operator tag; empty means "default"
OPERATOR=

# 0 runs one cycle and exits; otherwise seconds between cycles
POLL_INTERVAL_SECONDS=0

CONNECT_TIMEOUT_SECONDS=10
READ_TIMEOUT_SECONDS=60
MAX_ARTIFACT_SIZE_BYTES=209715200
# Cap on a single API response body (base64 inflates payloads by a third)
MAX_RESPONSE_SIZE_BYTES=314572800
LOCK_FILE=/var/lock/mig-loader.lock
"""


def ensure_default_env(path: Path = ENV_FILE_PATH) -> bool:
    try:
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(DEFAULT_ENV_CONTENT, encoding="utf-8")
            os.chmod(path, 0o644)
            return True
    except OSError as e:
        logger.warning("Could not create default env at %s: %s", path, e)
    return False


# HTTP SESSION (retries/backoff)
def build_session() -> requests.Session:
    # 500 is how the API reports integrity failures; those must not be retried.
    retry = Retry(
        total=5,
        connect=5,
        read=5,
        backoff_factor=0.6,
        status_forcelist=(429, 502, 503, 504),
        allowed_methods=frozenset({"POST"}),
        respect_retry_after_header=True,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    sess = requests.Session()
    sess.mount("https://", adapter)
    sess.mount("http://", adapter)
    sess.headers.update({"User-Agent": "mig-loader/1.0"})
    return sess


# CONFIG (hot-reloaded)
def _parse_bool(v: str) -> bool:
    return v.strip().lower() in ("1", "true", "yes", "on")


class Config:
    API_URL: str = "https://localhost/api/v1/"
    OPERATOR: str = ""
    POLL_INTERVAL_SECONDS: int = 0
    CONNECT_TIMEOUT_SECONDS: int = 10
    READ_TIMEOUT_SECONDS: int = 60
    MAX_ARTIFACT_SIZE_BYTES: int = 200 * 1024 * 1024
    MAX_RESPONSE_SIZE_BYTES: int = 300 * 1024 * 1024
    ALLOW_INSECURE_HTTP: bool = False
    LOCK_FILE: str = "/var/lock/mig-loader.lock"
    LOCK_TIMEOUT_SECONDS: int = 30
    LOG_FILE: str = ""

    _FIELDS: Dict[str, Callable[[str], Any]] = {
        "API_URL": str.strip,
        "OPERATOR": str.strip,
        "POLL_INTERVAL_SECONDS": int,
        "CONNECT_TIMEOUT_SECONDS": int,
        "READ_TIMEOUT_SECONDS": int,
        "MAX_ARTIFACT_SIZE_BYTES": int,
        "MAX_RESPONSE_SIZE_BYTES": int,
        "ALLOW_INSECURE_HTTP": _parse_bool,
        "LOCK_FILE": str.strip,
        "LOCK_TIMEOUT_SECONDS": int,
        "LOG_FILE": str.strip,
    }

    def __init__(self, env_file: Path = ENV_FILE_PATH):
        self.env_file = Path(env_file)
        self._env_mtime: Optional[float] = None

    def _apply(self, kv: Dict[str, str]):
        for key, convert in self._FIELDS.items():
            if key in kv:
                try:
                    setattr(self, key, convert(kv[key]))
                except ValueError as e:
                    raise RuntimeError(f"Invalid value for {key}: {kv[key]!r}") from e

    def _from_env_vars(self):
        self._apply({k: v for k, v in os.environ.items() if k in self._FIELDS})

    def _from_env_file(self):
        if not self.env_file.exists():
            return
        try:
            text = self.env_file.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to read %s: %s", self.env_file, e)
            return

        kv: Dict[str, str] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            kv[k.strip()] = v.strip()
        self._apply(kv)

    def validate(self):
        if not self.API_URL:
            raise RuntimeError("API_URL is not set")
        if not self.API_URL.lower().startswith("https://") and not self.ALLOW_INSECURE_HTTP:
            raise RuntimeError(f"API_URL must be HTTPS: {self.API_URL}")
        if self.POLL_INTERVAL_SECONDS < 0:
            raise RuntimeError("POLL_INTERVAL_SECONDS must not be negative")
        if self.CONNECT_TIMEOUT_SECONDS <= 0 or self.READ_TIMEOUT_SECONDS <= 0:
            raise RuntimeError("Timeouts must be positive")

    def load(self, first_load=False) -> bool:
        before = self.to_dict()
        try:
            mtime = self.env_file.stat().st_mtime if self.env_file.exists() else None
        except OSError:
            mtime = None

        if first_load or (mtime != self._env_mtime):
            if not first_load:
                logger.info("Config file change detected; reloading settings from %s", self.env_file)
            self._from_env_file()
            self._env_mtime = mtime

        self._from_env_vars()
        self.validate()

        after = self.to_dict()
        changed = (before != after)
        if changed and not first_load:
            logger.info("Active settings updated: %s", json.dumps(after))
        return changed

    @property
    def total_timeout(self) -> Tuple[int, int]:
        return (self.CONNECT_TIMEOUT_SECONDS, self.READ_TIMEOUT_SECONDS)

    def to_dict(self) -> dict:
        return {key: getattr(self, key) for key in self._FIELDS}


def host_identity(cfg: Config) -> IdentityParameters:
    return IdentityParameters(
        operator=cfg.OPERATOR or DEFAULT_OPERATOR,
        platform=host_platform(),
        architecture=host_architecture(),
    )


# MANIFEST PROTOCOL CLIENT
def _parse_manifest(value: Any) -> Manifest:
    try:
        return Manifest.from_dict(value)
    except ManifestFormatError as e:
        raise ProtocolError(f"Malformed manifest in response: {e}") from e


class ManifestClient:
    """Client side of the fetch-manifest and fetch-artifact requests."""

    MANIFEST_ENDPOINT = "manifest/"
    FETCH_ENDPOINT = "manifest/fetch/"

    def __init__(self, api_url: str, session: Optional[requests.Session] = None,
                 timeout: Tuple[int, int] = (10, 60), max_artifact_bytes: Optional[int] = None,
                 max_response_bytes: Optional[int] = None):
        self.api_url = api_url if api_url.endswith("/") else api_url + "/"
        self.session = session or build_session()
        self.timeout = timeout
        self.max_artifact_bytes = max_artifact_bytes
        self.max_response_bytes = max_response_bytes

    def _read_body(self, resp: requests.Response, url: str) -> bytes:
        limit = self.max_response_bytes
        content_length = resp.headers.get("Content-Length")
        if limit is not None and content_length is not None:
            try:
                clen = int(content_length)
            except ValueError:
                clen = None
            if clen is not None and clen > limit:
                raise ProtocolError(f"{url} response too large: {clen} > {limit}")

        body = bytearray()
        try:
            for chunk in resp.iter_content(chunk_size=8192):
                if not chunk:
                    continue
                body.extend(chunk)
                if limit is not None and len(body) > limit:
                    raise ProtocolError(f"{url} response exceeded cap: {len(body)} > {limit}")
        except requests.RequestException as e:
            raise ProtocolError(f"Reading response from {url} failed: {e}") from e
        return bytes(body)

    def _send(self, endpoint: str, identity: IdentityParameters, parse: Callable[[Any], T]) -> T:
        """POST the identity as the `parameters` form field and parse the first envelope value."""
        url = urljoin(self.api_url, endpoint)
        try:
            resp = self.session.post(url, data={"parameters": identity.to_json()},
                                     timeout=self.timeout, stream=True)
        except requests.RequestException as e:
            raise ProtocolError(f"Request to {url} failed: {e}") from e

        try:
            raw = self._read_body(resp, url)
        finally:
            resp.close()
        try:
            body = json.loads(raw)
        except ValueError as e:
            raise ProtocolError(f"{url} returned HTTP {resp.status_code} with a non-JSON body") from e

        if resp.status_code != 200:
            detail = envelope.error_message(body) or resp.reason
            raise ProtocolError(f"{url} returned HTTP {resp.status_code}: {detail}")
        return parse(envelope.first_value(body))

    def request_manifest(self, identity: IdentityParameters) -> Manifest:
        identity.validate()
        logger.info("Requesting manifest from %s", urljoin(self.api_url, self.MANIFEST_ENDPOINT))
        return self._send(self.MANIFEST_ENDPOINT, identity, _parse_manifest)

    def request_artifact(self, identity: IdentityParameters, name: str) -> bytes:
        """Fetch one manifest object and return its decompressed content."""
        params = identity.for_object(name)
        params.validate_fetch()
        fetched = self._send(self.FETCH_ENDPOINT, params, FetchResponse.from_dict)
        return decompress(fetched.data, self.max_artifact_bytes)


# RECONCILIATION
@dataclass
class ReconcileReport:
    updated: List[str] = field(default_factory=list)
    current: List[str] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def stage_path(target: str) -> str:
    return target + STAGE_SUFFIX


def stage_artifact(entry: BundleEntry, content: bytes, expected_sha: str) -> str:
    """
    Write content next to the entry's path and verify it against expected_sha.

    The staged file is created owner-only (0700) and fsynced before hashing.
    On mismatch it is left in place and StagedIntegrityError is raised.
    """
    staged = stage_path(entry.path)
    os.makedirs(os.path.dirname(entry.path), exist_ok=True)
    flags = os.O_CREAT | os.O_TRUNC | os.O_WRONLY | getattr(os, "O_NOFOLLOW", 0)
    fd = os.open(staged, flags, STAGE_MODE)
    with os.fdopen(fd, "wb") as f:
        # O_CREAT's mode is ignored for an existing file.
        os.fchmod(f.fileno(), STAGE_MODE)
        f.write(content)
        f.flush()
        os.fsync(f.fileno())

    actual = sha256_of_file(staged)
    if actual != expected_sha:
        raise StagedIntegrityError(entry.name, expected_sha, actual)
    return staged


def fetch_and_replace(client: ManifestClient, identity: IdentityParameters,
                      entry: BundleEntry, want: ManifestEntry) -> None:
    content = client.request_artifact(identity, entry.name)
    staged = stage_artifact(entry, content, want.sha256)
    # Rename is the only operation that touches the live path.
    os.replace(staged, entry.path)
    logger.info("Replaced %s at %s (sha256 %s)", entry.name, entry.path, want.sha256)


def reconcile(have: Sequence[BundleEntry], manifest: Manifest,
              identity: IdentityParameters, client: ManifestClient) -> ReconcileReport:
    """
    Compare local state with the manifest and refresh every object that differs.

    Objects the manifest does not list are left alone. Staging and verification
    failures are recorded per object; protocol errors abort the run.
    """
    report = ReconcileReport()
    for entry in have:
        want = manifest.get(entry.name)
        if want is None:
            logger.debug("%s not in manifest, ignoring", entry.name)
            report.ignored.append(entry.name)
            continue

        logger.info("Comparing %s %s", entry.name, entry.path)
        logger.info("We have %s", entry.sha256 or "(absent)")
        logger.info("API has %s", want.sha256)
        if entry.sha256 == want.sha256:
            report.current.append(entry.name)
            continue

        logger.info("Refreshing %s", entry.name)
        try:
            fetch_and_replace(client, identity, entry, want)
        except (StagedIntegrityError, ReadError, OSError) as e:
            logger.error("Failed to update %s: %s", entry.name, e)
            report.failed[entry.name] = str(e)
            continue
        report.updated.append(entry.name)
    return report


def run_cycle(cfg: Config, client: Optional[ManifestClient] = None,
              identity: Optional[IdentityParameters] = None,
              dictionary: BundleDictionary = BUNDLE_DICTIONARY) -> ReconcileReport:
    identity = identity or host_identity(cfg)
    identity.validate()
    if client is None:
        client = ManifestClient(cfg.API_URL, timeout=cfg.total_timeout,
                                max_artifact_bytes=cfg.MAX_ARTIFACT_SIZE_BYTES,
                                max_response_bytes=cfg.MAX_RESPONSE_SIZE_BYTES)

    with FileLock(cfg.LOCK_FILE, timeout=cfg.LOCK_TIMEOUT_SECONDS):
        have = snapshot(identity.platform, dictionary)
        manifest = client.request_manifest(identity)
        return reconcile(have, manifest, identity, client)


def run_once(cfg: Config, **kwargs) -> int:
    try:
        report = run_cycle(cfg, **kwargs)
    except Timeout:
        logger.error("Another loader holds %s; aborting this cycle", cfg.LOCK_FILE)
        return EXIT_FATAL
    except LoaderError as e:
        logger.error("Update cycle failed: %s", e)
        return EXIT_FATAL

    if report.failed:
        logger.warning("Update cycle finished with %d failure(s): %s",
                       len(report.failed), ", ".join(sorted(report.failed)))
        return EXIT_PARTIAL
    logger.info("Update cycle complete (%d updated, %d current)", len(report.updated), len(report.current))
    return EXIT_OK


# MAIN LOOP
def main_loop(cfg: Config) -> int:
    while True:
        try:
            cfg.load()  # hot-reload
            status = run_once(cfg)
            if cfg.POLL_INTERVAL_SECONDS <= 0:
                return status
            time.sleep(cfg.POLL_INTERVAL_SECONDS)
        except Exception:
            logger.exception("Unhandled exception in main loop; sleeping briefly.")
            if cfg.POLL_INTERVAL_SECONDS <= 0:
                return EXIT_FATAL
            time.sleep(60)


def setup_logging(log_file: str = "") -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(os.path.expanduser(log_file)))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )


def main() -> None:
    created = ensure_default_env(ENV_FILE_PATH)
    cfg = Config(ENV_FILE_PATH)
    try:
        cfg.load(first_load=True)
    except RuntimeError as e:
        setup_logging()
        logger.error("Fatal configuration error: %s", e)
        sys.exit(EXIT_FATAL)

    setup_logging(cfg.LOG_FILE)
    if created:
        logger.info("Created default env at %s", ENV_FILE_PATH)
    sys.exit(main_loop(cfg))


if __name__ == "__main__":
    main()
