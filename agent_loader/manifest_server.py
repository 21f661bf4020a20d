#!/usr/bin/env python3

"""
Manifest API: tells loaders which agent bundle they should be running and serves
the bundle objects.

Manifests are laid out as MANIFEST_ROOT/<operator>/<arch>/<os>/manifest.json with
the objects they reference under files/ next to them. An operator without its
own manifest gets the one under MANIFEST_ROOT/default/<arch>/<os>/. Objects are
re-hashed against the manifest on every request and never served on mismatch.
"""

import gzip
import hashlib
import io
import logging
import os
import sys
import uuid
from typing import Tuple

from fastapi import FastAPI, Form, Request
from fastapi.responses import JSONResponse

from agent_loader import envelope
from agent_loader.bundle import CHUNK_SIZE
from agent_loader.errors import (
    IntegrityError,
    LoaderError,
    ManifestFormatError,
    ManifestNotFoundError,
    ReadError,
    UnknownArtifactError,
    ValidationError,
)
from agent_loader.manifest import DEFAULT_OPERATOR, FetchResponse, IdentityParameters, Manifest

logger = logging.getLogger(__name__)

# Configuration
MANIFEST_ROOT = os.getenv("MANIFEST_ROOT", "/var/lib/mig/manifests")
API_PREFIX    = os.getenv("MANIFEST_API_PREFIX", "/api/v1").rstrip("/")
HOST          = os.getenv("MANIFEST_HOST", "127.0.0.1")
PORT          = int(os.getenv("MANIFEST_PORT", "8080"))
LOG_FILE      = os.getenv("MANIFEST_LOG_FILE", "")


# MANIFEST RESOLUTION
def resolve(manifest_root: str, identity: IdentityParameters) -> Tuple[str, Manifest]:
    """
    Locate the manifest for a loader, returning the directory it was found in.

    The operator's own manifest wins outright when it loads; otherwise the
    default operator's manifest is used. Nothing is merged.
    """
    # Parameters become path components below, so validate before anything else.
    identity.validate()

    primary = os.path.join(manifest_root, identity.operator, identity.architecture, identity.platform)
    secondary = os.path.join(manifest_root, DEFAULT_OPERATOR, identity.architecture, identity.platform)
    roots = [primary] if primary == secondary else [primary, secondary]

    for root in roots:
        path = os.path.join(root, "manifest.json")
        try:
            manifest = Manifest.load(path)
        except FileNotFoundError:
            logger.debug("No manifest at %s", path)
            continue
        except (OSError, ManifestFormatError) as e:
            logger.warning("Unable to load manifest %s: %s", path, e)
            continue
        logger.info("Resolved manifest %s (%d entries)", path, len(manifest))
        return root, manifest

    raise ManifestNotFoundError(
        f"Unable to locate manifest for {identity.operator}/{identity.architecture}/{identity.platform}"
    )


def load_artifact(root: str, manifest: Manifest, name: str) -> bytes:
    """
    Load, verify and gzip an object listed in the manifest.

    The file is hashed and compressed in one pass; if its digest differs from
    the manifest the compressed bytes are discarded and IntegrityError raised.
    """
    entry = manifest.get(name)
    if entry is None:
        raise UnknownArtifactError(f"Requested object {name} does not exist in manifest")

    # Only the manifest's own entry name is used to build the path.
    path = os.path.join(root, "files", entry.name)
    h = hashlib.sha256()
    buf = io.BytesIO()
    with open(path, "rb") as f, gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz:
        try:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                h.update(chunk)
                gz.write(chunk)
        except OSError as e:
            raise ReadError(f"Failed reading {path}: {e}") from e

    actual = h.hexdigest()
    if actual != entry.sha256:
        logger.error("Object %s does not match manifest (want %s, have %s)", path, entry.sha256, actual)
        raise IntegrityError(entry.name, entry.sha256, actual)
    return buf.getvalue()


# HTTP API
def _status_for(exc: Exception) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, (ManifestNotFoundError, UnknownArtifactError)):
        return 404
    return 500


def _error_response(resource: dict, opid: str, exc: Exception) -> JSONResponse:
    status = _status_for(exc)
    if isinstance(exc, LoaderError):
        message = str(exc)
        logger.warning("[%s] %s: %s", opid, type(exc).__name__, exc)
    elif isinstance(exc, OSError):
        message = "unable to load manifest object"
        logger.error("[%s] %s", opid, exc)
    else:
        message = "internal server error"
        logger.exception("[%s] Unexpected error", opid)
    envelope.set_error(resource, opid, message)
    return JSONResponse(resource, status_code=status)


def create_app(manifest_root: str = MANIFEST_ROOT, prefix: str = API_PREFIX) -> FastAPI:
    app = FastAPI(title="Agent Manifest API", version="1.0")

    @app.post(f"{prefix}/manifest/")
    def get_agent_manifest(request: Request, parameters: str = Form("")):
        """Return the manifest a loader should reconcile against."""
        href = str(request.url)
        opid = uuid.uuid4().hex[:12]
        resource = envelope.new_resource(href)
        try:
            identity = IdentityParameters.from_json(parameters)
            identity.validate()
            logger.info("[%s] Received manifest request %s", opid, identity.to_json())
            _, manifest = resolve(manifest_root, identity)
        except Exception as e:
            return _error_response(resource, opid, e)
        envelope.add_item(resource, href, "manifest", manifest.to_dict())
        return JSONResponse(resource, status_code=200)

    @app.post(f"{prefix}/manifest/fetch/")
    def get_manifest_file(request: Request, parameters: str = Form("")):
        """Return one manifest object, gzip-compressed and base64-encoded."""
        href = str(request.url)
        opid = uuid.uuid4().hex[:12]
        resource = envelope.new_resource(href)
        try:
            identity = IdentityParameters.from_json(parameters)
            identity.validate_fetch()
            logger.info("[%s] Received manifest file request %s", opid, identity.to_json())
            root, manifest = resolve(manifest_root, identity)
            data = load_artifact(root, manifest, identity.object)
        except Exception as e:
            return _error_response(resource, opid, e)
        envelope.add_item(resource, href, "content", FetchResponse(data=data).to_dict())
        return JSONResponse(resource, status_code=200)

    return app


app = create_app()


def setup_logging(log_file: str = LOG_FILE) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )


def main() -> None:
    import uvicorn

    setup_logging()
    if not os.path.isdir(MANIFEST_ROOT):
        logger.error("Manifest root %s does not exist. Exiting.", MANIFEST_ROOT)
        sys.exit(1)
    logger.info("Serving manifests from %s on %s:%d", MANIFEST_ROOT, HOST, PORT)
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    main()
