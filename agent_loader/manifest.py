"""
Manifest data model shared by the loader and the manifest API.

Identity parameters travel as a JSON document in the `parameters` form field.
Manifests are `{"entries": [{"name": ..., "sha256": ...}]}`, and artifact
payloads are `{"data": base64(gzip(content))}`.
"""

import base64
import binascii
import gzip
import io
import json
import re
import zlib
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Iterator, List, Optional, Sequence

from agent_loader.errors import DecodeError, ManifestFormatError, ValidationError

# Identity values become directory names on the server, so only plain
# alphanumerics are accepted.
IDENTITY_PATTERN = re.compile(r"^[A-Za-z0-9]+$")
# Artifact names become file names under files/.
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
SHA256_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")

DEFAULT_OPERATOR = "default"


@dataclass(frozen=True)
class IdentityParameters:
    operator: str
    platform: str
    architecture: str
    object: Optional[str] = None

    def validate(self) -> None:
        for field in ("operator", "platform", "architecture"):
            value = getattr(self, field)
            if not isinstance(value, str) or not value:
                raise ValidationError(f"Invalid manifest parameters: {field} is empty")
            if not IDENTITY_PATTERN.fullmatch(value):
                raise ValidationError(f"Bad characters in manifest parameter {field}")

    def validate_fetch(self) -> None:
        self.validate()
        if not isinstance(self.object, str) or not self.object:
            raise ValidationError("Invalid fetch parameters: object is empty")
        if not NAME_PATTERN.fullmatch(self.object):
            raise ValidationError("Bad characters in fetch parameter object")

    def for_object(self, name: str) -> "IdentityParameters":
        return replace(self, object=name)

    def to_json(self) -> str:
        payload = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(payload, sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> "IdentityParameters":
        """Parse the `parameters` form value. Does not validate."""
        try:
            raw = json.loads(text)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Manifest parameters are not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise ValidationError("Manifest parameters must be a JSON object")
        obj = raw.get("object")
        return cls(
            operator=raw.get("operator", ""),
            platform=raw.get("platform", ""),
            architecture=raw.get("architecture", ""),
            object=obj if obj else None,
        )


@dataclass(frozen=True)
class ManifestEntry:
    name: str
    sha256: str


class Manifest:
    """Ordered manifest entries, looked up by name."""

    def __init__(self, entries: Sequence[ManifestEntry] = ()):
        self._entries = tuple(entries)
        self._by_name: Dict[str, ManifestEntry] = {}
        for entry in self._entries:
            if entry.name in self._by_name:
                raise ManifestFormatError(f"Duplicate manifest entry {entry.name}")
            self._by_name[entry.name] = entry

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Manifest):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"Manifest({list(self._entries)!r})"

    def get(self, name: str) -> Optional[ManifestEntry]:
        return self._by_name.get(name)

    def to_dict(self) -> Dict[str, Any]:
        return {"entries": [asdict(e) for e in self._entries]}

    @classmethod
    def from_dict(cls, data: Any) -> "Manifest":
        if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
            raise ManifestFormatError("Manifest must be an object with an entries list")
        entries: List[ManifestEntry] = []
        for raw in data["entries"]:
            if not isinstance(raw, dict):
                raise ManifestFormatError(f"Manifest entry is not an object: {raw!r}")
            name = raw.get("name")
            sha = raw.get("sha256")
            if not isinstance(name, str) or not NAME_PATTERN.fullmatch(name):
                raise ManifestFormatError(f"Invalid manifest entry name: {name!r}")
            if not isinstance(sha, str) or not SHA256_PATTERN.fullmatch(sha):
                raise ManifestFormatError(f"Invalid sha256 for manifest entry {name}")
            entries.append(ManifestEntry(name=name, sha256=sha.lower()))
        return cls(entries)

    @classmethod
    def load(cls, path: str) -> "Manifest":
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except ValueError as e:
                raise ManifestFormatError(f"Manifest {path} is not valid JSON: {e}") from e
        return cls.from_dict(data)


# ARTIFACT CODEC
def compress(content: bytes) -> bytes:
    return gzip.compress(content, mtime=0)


def decompress(data: bytes, max_bytes: Optional[int] = None) -> bytes:
    """Inflate a gzip payload, refusing output larger than max_bytes."""
    out = io.BytesIO()
    try:
        with gzip.GzipFile(fileobj=io.BytesIO(data), mode="rb") as gz:
            for chunk in iter(lambda: gz.read(64 * 1024), b""):
                out.write(chunk)
                if max_bytes is not None and out.tell() > max_bytes:
                    raise DecodeError(f"Decompressed artifact exceeds {max_bytes} bytes")
    except (OSError, EOFError, zlib.error) as e:
        raise DecodeError(f"Unable to decompress artifact: {e}") from e
    return out.getvalue()


@dataclass(frozen=True)
class FetchResponse:
    """Compressed artifact content as carried in the envelope."""

    data: bytes

    def to_dict(self) -> Dict[str, str]:
        return {"data": base64.b64encode(self.data).decode("ascii")}

    @classmethod
    def from_dict(cls, value: Any) -> "FetchResponse":
        if not isinstance(value, dict) or not isinstance(value.get("data"), str):
            raise DecodeError("Fetch response must be an object with a data string")
        try:
            return cls(data=base64.b64decode(value["data"], validate=True))
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"Fetch response data is not valid base64: {e}") from e
