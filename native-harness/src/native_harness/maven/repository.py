from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx

from native_harness import __version__
from native_harness.errors import RepositoryError, StageTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_REPOSITORIES = (
    "https://dl.google.com/dl/android/maven2",
    "https://repo.maven.apache.org/maven2",
)


@dataclass(frozen=True)
class Download:
    url: str
    content: bytes


class RepositoryClient:
    """Fetch files from a prioritized list of Maven repositories.

    The first repository that serves the path wins; repositories are never
    merged. A 404 moves on to the next repository, anything else is an error.
    """

    def __init__(
        self,
        repositories: Sequence[str] = DEFAULT_REPOSITORIES,
        *,
        timeout_s: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._repositories = [str(r).rstrip("/") for r in repositories]
        self._timeout_s = float(timeout_s)
        self._client = httpx.Client(
            timeout=self._timeout_s,
            follow_redirects=True,
            headers={"User-Agent": f"native-harness/{__version__}"},
            transport=transport,
        )

    @property
    def repositories(self) -> list[str]:
        return list(self._repositories)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "RepositoryClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def get(self, path: str) -> Optional[Download]:
        """Return the first hit for `path`, or None if every repository 404s."""

        for repo in self._repositories:
            url = f"{repo}/{path.lstrip('/')}"
            logger.debug("GET %s", url)
            try:
                resp = self._client.get(url)
            except httpx.TimeoutException as e:
                raise StageTimeoutError(f"download {url}", self._timeout_s) from e
            except httpx.HTTPError as e:
                raise RepositoryError(f"request to {url} failed: {e}") from e

            if resp.status_code == 404:
                continue
            if resp.status_code != 200:
                raise RepositoryError(f"unexpected HTTP {resp.status_code} from {url}")
            return Download(url=url, content=resp.content)
        return None
