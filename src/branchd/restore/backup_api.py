"""Minimal Crunchy Bridge API client for backup-based restores.

Only two calls are needed: find a cluster by name and mint a backup token
(short-lived object-store credentials for the cluster's pgBackRest
repository).

Usage:
    async with BackupApiClient(api_key) as client:
        cluster = await client.find_cluster_by_name("prod")
        token = await client.create_backup_token(cluster.id)
        conf = token.render_pgbackrest_config(Path("/opt/branchd/r/data"))
"""

import logging
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, Field

from branchd.errors import BranchdError, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.crunchybridge.com"


class BackupApiError(BranchdError):
    """Raised when the backup repository API returns an error."""

    pass


class Cluster(BaseModel):
    id: str
    name: str
    state: str = ""
    major_version: int = 0


class BackupToken(BaseModel):
    """Credentials for reading a cluster's pgBackRest repository."""

    type: str  # "s3", "gcs" or "azure"
    repo_path: str
    stanza: str
    aws: dict[str, Any] = Field(default_factory=dict)
    gcp: dict[str, Any] = Field(default_factory=dict)
    azure: dict[str, Any] = Field(default_factory=dict)

    def render_pgbackrest_config(self, data_dir: Path) -> str:
        """pgBackRest INI reading this repository into ``data_dir``.

        Raises:
            BackupApiError: If the repository type is not supported.
        """
        lines = ["[global]", f"repo1-type={self.type}", f"repo1-path={self.repo_path}"]

        if self.type == "s3":
            region = self.aws.get("s3_region", "us-east-1")
            lines += [
                f"repo1-s3-bucket={self.aws.get('s3_bucket', '')}",
                f"repo1-s3-endpoint=s3.{region}.amazonaws.com",
                f"repo1-s3-region={region}",
                f"repo1-s3-key={self.aws.get('s3_key', '')}",
                f"repo1-s3-key-secret={self.aws.get('s3_key_secret', '')}",
            ]
            if self.aws.get("s3_token"):
                lines.append(f"repo1-s3-token={self.aws['s3_token']}")
        elif self.type == "azure":
            lines += [
                f"repo1-azure-account={self.azure.get('azure_account', '')}",
                f"repo1-azure-container={self.azure.get('azure_container', '')}",
                "repo1-azure-key-type=sas",
                f"repo1-azure-key={self.azure.get('azure_key', '')}",
            ]
        elif self.type == "gcs":
            lines += [
                f"repo1-gcs-bucket={self.gcp.get('gcs_bucket', '')}",
                "repo1-gcs-key-type=token",
                f"repo1-gcs-key={self.gcp.get('gcs_key', '')}",
            ]
        else:
            raise BackupApiError(f"unsupported backup repository type: {self.type}")

        lines += [
            "log-level-console=info",
            "",
            f"[{self.stanza}]",
            f"pg1-path={data_dir}",
            "",
        ]
        return "\n".join(lines)


class BackupApiClient:
    """Async client for the Crunchy Bridge REST API.

    Args:
        api_key: Bearer token.
        base_url: API root.
        timeout: Per-request timeout in seconds.
        transport: Optional ``httpx`` transport (tests use ``MockTransport``).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "BackupApiClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise BackupApiError(
                f"{method} {path} failed: {e.response.status_code} {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise BackupApiError(f"{method} {path} failed: {e}") from e
        return response.json()

    async def list_clusters(self) -> list[Cluster]:
        data = await self._request("GET", "/clusters")
        return [Cluster(**item) for item in data.get("clusters", [])]

    async def find_cluster_by_name(self, name: str) -> Cluster:
        """Return the cluster with exactly this name.

        Raises:
            NotFoundError: If no cluster matches.
        """
        for cluster in await self.list_clusters():
            if cluster.name == name:
                return cluster
        raise NotFoundError(f"cluster '{name}' not found")

    async def create_backup_token(self, cluster_id: str) -> BackupToken:
        data = await self._request("POST", f"/clusters/{cluster_id}/backup-tokens")
        return BackupToken(**data)
