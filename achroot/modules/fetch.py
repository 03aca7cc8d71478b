"""
modules/fetch.py - verified downloads

An artifact is only ever visible at its destination after its sha256 matched
the pinned value: data goes to a temporary file next to the destination and
is renamed over it once verified.
"""

from __future__ import annotations

import hashlib
import os
import tempfile
from dataclasses import dataclass
from typing import Iterable, List, Tuple

import requests

from achroot import VERSION
from achroot.modules import log
from achroot.modules.errors import IntegrityError, TransportError
from achroot.modules.utils import digest_matches, ensure_dir

logger = log.get_logger("fetch")

DEFAULT_TIMEOUT = (10, 60)  # (connect, read) seconds
CHUNK = 1 << 16


@dataclass(frozen=True)
class TrustedArtifact:
    url: str
    sha256: str
    dest_dir: str
    name: str = ""

    @property
    def filename(self) -> str:
        return self.name or os.path.basename(self.url.split("?", 1)[0])

    @property
    def path(self) -> str:
        return os.path.join(self.dest_dir, self.filename)


def _discard(path: str) -> None:
    if os.path.lexists(path):
        os.remove(path)


def fetch(url: str, expected_sha256: str, dest_dir: str, name: str = "",
          timeout: Tuple[float, float] = DEFAULT_TIMEOUT) -> str:
    """
    Downloads url into dest_dir and returns the path once its sha256 equals
    expected_sha256.

    Raises TransportError when the download fails and IntegrityError on a
    digest mismatch; in both cases nothing is left at the destination.
    """
    artifact = TrustedArtifact(url=url, sha256=expected_sha256, dest_dir=dest_dir, name=name)
    return fetch_artifact(artifact, timeout=timeout)


def fetch_artifact(artifact: TrustedArtifact, timeout: Tuple[float, float] = DEFAULT_TIMEOUT) -> str:
    ensure_dir(artifact.dest_dir)
    dest = artifact.path
    # never reuse a same-named file from an earlier run
    _discard(dest)

    logger.info("Downloading %s -> %s", artifact.url, dest)
    fd, tmp = tempfile.mkstemp(prefix=f".{artifact.filename}.", dir=artifact.dest_dir)
    h = hashlib.sha256()
    try:
        with os.fdopen(fd, "wb") as f:
            try:
                with requests.get(artifact.url, stream=True, timeout=timeout,
                                  headers={"User-Agent": f"achroot/{VERSION}"}) as r:
                    r.raise_for_status()
                    for chunk in r.iter_content(chunk_size=CHUNK):
                        if chunk:
                            h.update(chunk)
                            f.write(chunk)
            except requests.RequestException as e:
                raise TransportError(f"failed to download {artifact.url}: {e}") from e

        actual = h.hexdigest()
        if not digest_matches(actual, artifact.sha256):
            raise IntegrityError(
                f"checksum mismatch for {artifact.url}: expected {artifact.sha256}, got {actual}")

        os.replace(tmp, dest)
    except BaseException:
        _discard(tmp)
        raise

    logger.debug("Verified %s (sha256 %s)", dest, actual)
    return dest


def fetch_all(artifacts: Iterable[TrustedArtifact],
              timeout: Tuple[float, float] = DEFAULT_TIMEOUT) -> List[str]:
    """Fetches every artifact in order; the first failure aborts the rest."""
    return [fetch_artifact(a, timeout=timeout) for a in artifacts]
