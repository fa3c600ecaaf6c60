"""Repository bootstrap: credential file and ``restic init``."""
from __future__ import annotations

import base64
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import RepositoryConfig
from .errors import RepositoryExistsError, RepositoryNotInitializedError

LOGGER = logging.getLogger(__name__)

CREDENTIAL_BYTES = 32
CREDENTIAL_MODE = 0o600


class RepositoryStore(Protocol):
    """Snapshot store operations used during bootstrap."""

    def init(self) -> None: ...

    def is_initialized(self) -> bool: ...


@dataclass(frozen=True, slots=True)
class InitResult:
    """Outcome of :func:`initialize_repository`."""

    repository: Path
    password_file: Path
    credential_created: bool

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation (the credential is never included)."""
        return {
            "repository": str(self.repository),
            "password_file": str(self.password_file),
            "credential_created": self.credential_created,
        }


def generate_credential() -> str:
    """Return a new base64-encoded random credential."""
    return base64.b64encode(secrets.token_bytes(CREDENTIAL_BYTES)).decode("ascii")


def write_credential_file(path: Path) -> bool:
    """Create *path* holding a fresh credential, readable by the owner only.

    An existing file is kept (its mode is tightened) so a repository it
    already protects stays readable. Returns True when a new file was written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, CREDENTIAL_MODE)
    except FileExistsError:
        LOGGER.info("Reusing existing credential file %s.", path)
        os.chmod(path, CREDENTIAL_MODE)
        return False
    with os.fdopen(fd, "w", encoding="ascii") as handle:
        handle.write(generate_credential())
        handle.write("\n")
    # Exact mode, independent of umask.
    os.chmod(path, CREDENTIAL_MODE)
    LOGGER.info("Credential file written to %s.", path)
    return True


def initialize_repository(store: RepositoryStore, settings: RepositoryConfig) -> InitResult:
    """Write the credential file and create the repository.

    Refuses when the repository directory already exists.
    """
    if settings.path.exists():
        raise RepositoryExistsError(
            f"Repository directory {settings.path} already exists; refusing to initialise."
        )
    created = write_credential_file(settings.password_file)
    LOGGER.info("Initialising repository at %s...", settings.path)
    store.init()
    return InitResult(
        repository=settings.path,
        password_file=settings.password_file,
        credential_created=created,
    )


def require_repository(store: RepositoryStore, settings: RepositoryConfig) -> None:
    """Raise :class:`RepositoryNotInitializedError` unless the repository opens."""
    if not store.is_initialized():
        raise RepositoryNotInitializedError(
            f"Repository not found or not readable at {settings.path}. "
            "Run 'snapctl repo init' first."
        )


__all__ = [
    "CREDENTIAL_MODE",
    "InitResult",
    "generate_credential",
    "initialize_repository",
    "require_repository",
    "write_credential_file",
]
