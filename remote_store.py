import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple
from urllib.parse import quote

import httpx

from errors import ConflictError, NotFoundError, TransientIOError

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class RemoteLocator:
    """Coordinates of the mirrored ledger object."""
    owner: str
    repo: str
    path: str
    branch: str = "main"

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}/{self.path}@{self.branch}"

@dataclass(frozen=True)
class RemoteBlob:
    content: bytes
    version: str

class RemoteStore(Protocol):
    async def fetch(self, locator: RemoteLocator) -> RemoteBlob:
        """Return the object and its version token, or raise NotFoundError."""
        ...

    async def commit(
        self,
        locator: RemoteLocator,
        content: bytes,
        message: str,
        expected_version: Optional[str] = None,
    ) -> str:
        """
        Write a new revision and return its version token.

        With expected_version the write only lands if the object is still at
        that revision (ConflictError otherwise). Without it the write creates
        or replaces the object unconditionally.
        """
        ...

class GitHubContentsStore:
    """RemoteStore backed by a file in a GitHub repository."""

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.github.com",
        timeout: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _url(self, locator: RemoteLocator) -> str:
        return f"{self.api_url}/repos/{locator.owner}/{locator.repo}/contents/{quote(locator.path)}"

    def _headers(self, accept: str = "application/vnd.github+json") -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": accept,
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def fetch(self, locator: RemoteLocator) -> RemoteBlob:
        try:
            async with self._client() as client:
                response = await client.get(
                    self._url(locator),
                    params={"ref": locator.branch},
                    headers=self._headers(),
                )
                if response.status_code == 404:
                    raise NotFoundError(f"{locator} does not exist")
                response.raise_for_status()
                data = response.json()
                if not isinstance(data, dict):
                    raise TransientIOError(f"{locator} is not a file")

                if data.get("encoding") == "base64":
                    content = base64.b64decode(data.get("content", ""))
                else:
                    # Files over the inline size limit come back without content
                    raw = await client.get(
                        self._url(locator),
                        params={"ref": locator.branch},
                        headers=self._headers("application/vnd.github.raw"),
                    )
                    raw.raise_for_status()
                    content = raw.content

                return RemoteBlob(content=content, version=data["sha"])

        except httpx.HTTPStatusError as e:
            raise TransientIOError(
                f"GitHub GET failed {e.response.status_code}: {e.response.text}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise TransientIOError(f"GitHub GET failed: {str(e)}") from e
        except (ValueError, KeyError) as e:
            raise TransientIOError(f"GitHub GET returned an unexpected body: {str(e)}") from e

    async def commit(
        self,
        locator: RemoteLocator,
        content: bytes,
        message: str,
        expected_version: Optional[str] = None,
    ) -> str:
        status, body = await self._put(locator, content, message, expected_version)

        if status == 422 and expected_version is None:
            # Create-or-replace: the object already exists, so write over its current revision
            logger.info("%s already exists, replacing it unconditionally", locator)
            try:
                current = await self.fetch(locator)
            except NotFoundError:
                current = None
            status, body = await self._put(
                locator, content, message, current.version if current else None
            )

        if status in (409, 422):
            raise ConflictError(
                f"{locator} is no longer at version {expected_version}: {body.get('message', '')}"
            )
        if status >= 400:
            raise TransientIOError(f"GitHub PUT failed {status}: {body}", status_code=status)

        try:
            return body["content"]["sha"]
        except (KeyError, TypeError) as e:
            raise TransientIOError(f"GitHub PUT returned an unexpected body: {body}") from e

    async def _put(
        self,
        locator: RemoteLocator,
        content: bytes,
        message: str,
        sha: Optional[str],
    ) -> Tuple[int, dict]:
        payload = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": locator.branch,
        }
        if sha:
            payload["sha"] = sha

        try:
            async with self._client() as client:
                response = await client.put(
                    self._url(locator),
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise TransientIOError(f"GitHub PUT failed: {str(e)}") from e

        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}
        return response.status_code, body

class InMemoryRemoteStore:
    """
    RemoteStore kept in process memory.

    Used by the ``memory`` backend and by tests. Version tokens are
    increasing integers rendered as strings.
    """

    def __init__(self):
        self._objects: Dict[RemoteLocator, RemoteBlob] = {}
        self._counter = 0
        self._lock = asyncio.Lock()
        self.commits = 0

    def seed(self, locator: RemoteLocator, content: bytes) -> str:
        """Place an object directly, bypassing version checks."""
        self._counter += 1
        version = str(self._counter)
        self._objects[locator] = RemoteBlob(content=content, version=version)
        return version

    def peek(self, locator: RemoteLocator) -> Optional[RemoteBlob]:
        return self._objects.get(locator)

    async def fetch(self, locator: RemoteLocator) -> RemoteBlob:
        blob = self._objects.get(locator)
        if blob is None:
            raise NotFoundError(f"{locator} does not exist")
        return blob

    async def commit(
        self,
        locator: RemoteLocator,
        content: bytes,
        message: str,
        expected_version: Optional[str] = None,
    ) -> str:
        async with self._lock:
            current = self._objects.get(locator)
            if expected_version is not None:
                if current is None or current.version != expected_version:
                    raise ConflictError(
                        f"{locator} is at version {current.version if current else None}, "
                        f"expected {expected_version}"
                    )
            self.commits += 1
            return self.seed(locator, content)
