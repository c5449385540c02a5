from __future__ import annotations

import gzip
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from stack_backup.errors import ArtifactNotFoundError, ExecutionFailedError
from stack_backup.targets import Target

from .base import COPY_CHUNK, AdapterContext, gunzip_file, require_mode, scratch_file

LOG = logging.getLogger(__name__)

DEFAULT_PORT = 6333
BACKEND_NAME = "http"


class QdrantAdapter:
    """Two-phase HTTP snapshot flow: create server-side, then download."""

    engine = "qdrant"
    supported_modes = frozenset({"network", "container"})
    restore_modes = supported_modes
    extensions = (".snapshot.gz",)
    default_unit = None

    def __init__(
        self,
        context: AdapterContext,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self._ctx = context
        self._session_factory = session_factory

    def logical_units(self, target: Target) -> List[str]:
        if target.databases:
            return list(target.databases)
        require_mode(target, self.supported_modes, "Collection discovery")
        payload = self._request(target, "get", "/collections", "list collections")
        result = payload.get("result") if isinstance(payload, dict) else None
        collections = result.get("collections") if isinstance(result, dict) else None
        if not isinstance(collections, list):
            raise ExecutionFailedError(
                target.key, BACKEND_NAME, None, str(payload)[:500], message=f"Unexpected collection listing from {target.key}"
            )
        return [item["name"] for item in collections if isinstance(item, dict) and item.get("name")]

    def artifact_extension(self, target: Target) -> str:
        return ".snapshot.gz"

    def required_tools(self, target: Target) -> List[str]:
        return []

    def overwrite_warning(self, target: Target, unit: str) -> str:
        return f"This will REPLACE collection '{unit}' on {self._base_url(target)}"

    def dump(self, target: Target, unit: str, output: Path) -> None:
        require_mode(target, self.supported_modes, "Dump")
        # Creation is synchronous: wait=true returns the finished snapshot description
        payload = self._request(
            target, "post", f"/collections/{unit}/snapshots", "create snapshot", params={"wait": "true"}
        )
        snapshot_name = (payload.get("result") or {}).get("name")
        if not snapshot_name:
            raise ArtifactNotFoundError(f"Qdrant did not return a snapshot name for collection '{unit}'")
        LOG.info("Created snapshot %s for collection %s", snapshot_name, unit)

        session = self._session(target)
        url = f"{self._base_url(target)}/collections/{unit}/snapshots/{snapshot_name}"
        written = 0
        try:
            with session.get(url, stream=True, timeout=self._ctx.settings.http_timeout) as response:
                self._check(target, response, "download snapshot")
                with gzip.open(output, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=COPY_CHUNK):
                        if chunk:
                            fh.write(chunk)
                            written += len(chunk)
        except requests.RequestException as exc:
            raise ExecutionFailedError(target.key, BACKEND_NAME, None, str(exc)) from exc
        finally:
            session.close()

        if written == 0:
            raise ArtifactNotFoundError(f"Snapshot {snapshot_name} of collection '{unit}' was empty")

    def restore(self, target: Target, unit: str, artifact: Path) -> None:
        require_mode(target, self.restore_modes, "Restore")
        session = self._session(target)
        url = f"{self._base_url(target)}/collections/{unit}/snapshots/upload"
        with scratch_file(artifact.parent, ".snapshot") as raw:
            gunzip_file(artifact, raw)
            try:
                with raw.open("rb") as fh:
                    response = session.post(
                        url,
                        params={"priority": "snapshot", "wait": "true"},
                        files={"snapshot": (f"{unit}.snapshot", fh)},
                        timeout=self._ctx.settings.http_timeout,
                    )
                self._check(target, response, "upload snapshot")
            except requests.RequestException as exc:
                raise ExecutionFailedError(target.key, BACKEND_NAME, None, str(exc)) from exc
            finally:
                session.close()

    # Internal helpers ------------------------------------------------------
    def _base_url(self, target: Target) -> str:
        host = target.host or (target.container if target.mode == "container" else None)
        scheme = "https" if target.ssl else "http"
        return f"{scheme}://{host}:{target.port or DEFAULT_PORT}"

    def _session(self, target: Target) -> requests.Session:
        session = self._session_factory()
        api_key = self._ctx.secrets.resolve(target.api_key_env)
        if api_key:
            session.headers.update({"api-key": api_key})
        return session

    def _request(
        self,
        target: Target,
        method: str,
        path: str,
        action: str,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        session = self._session(target)
        try:
            response = session.request(
                method.upper(),
                f"{self._base_url(target)}{path}",
                params=params,
                timeout=self._ctx.settings.http_timeout,
            )
            self._check(target, response, action)
            return response.json()
        except requests.RequestException as exc:
            raise ExecutionFailedError(target.key, BACKEND_NAME, None, str(exc)) from exc
        except ValueError as exc:
            raise ExecutionFailedError(target.key, BACKEND_NAME, None, f"invalid JSON from {action}: {exc}") from exc
        finally:
            session.close()

    @staticmethod
    def _check(target: Target, response: requests.Response, action: str) -> None:
        if response.status_code >= 400:
            LOG.error("Qdrant %s failed: %s %s", action, response.status_code, response.text[:500])
            raise ExecutionFailedError(
                target.key,
                BACKEND_NAME,
                response.status_code,
                response.text[:500],
                message=f"Qdrant {action} for '{target.key}' failed with HTTP {response.status_code}",
            )
