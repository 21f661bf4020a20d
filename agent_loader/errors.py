"""
Error taxonomy shared by the loader and the manifest API.

Validation and digest failures are never retried within a cycle. Snapshot and
protocol failures abort the whole cycle; staged-integrity failures only abort
the artifact they belong to.
"""


class LoaderError(Exception):
    """Base class for every error raised by agent_loader."""


class ValidationError(LoaderError):
    """Identity parameters are missing or contain characters outside the allowed set."""


class ReadError(LoaderError):
    """A source was opened but reading from it failed before end of stream."""


class SnapshotError(LoaderError):
    """Local state could not be computed for one of the bundle entries."""


class UnsupportedPlatformError(LoaderError):
    """The bundle dictionary has no entries for the requested platform."""


class ProtocolError(LoaderError):
    """Transport failure or a response that does not have the expected shape."""


class DecodeError(ProtocolError):
    """An artifact payload could not be base64-decoded or decompressed."""


class ManifestFormatError(LoaderError):
    """A manifest document does not have the expected structure."""


class ManifestNotFoundError(LoaderError):
    """Neither the operator manifest nor the default manifest could be loaded."""


class UnknownArtifactError(LoaderError):
    """The requested artifact name is not listed in the resolved manifest."""


class DigestMismatchError(LoaderError):
    def __init__(self, name, expected, actual):
        super().__init__(f"{name}: expected sha256 {expected}, got {actual}")
        self.name = name
        self.expected = expected
        self.actual = actual


class IntegrityError(DigestMismatchError):
    """Server-side content differs from the digest recorded in its own manifest."""


class StagedIntegrityError(DigestMismatchError):
    """A staged artifact does not match the manifest digest and was not installed."""
