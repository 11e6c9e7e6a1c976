"""
Helm release actions.

Drives the ``helm`` executable with ``--output json`` and parses the
results into typed release snapshots. Each action is one subprocess; the
caller's task cancellation kills and reaps the child process.
"""

import asyncio
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import yaml

from ..errors import BackendError

logger = logging.getLogger(__name__)

_FRACTION = re.compile(r"\.(\d+)")


class HelmCommandError(BackendError):
    """``helm`` exited with a non-zero status."""

    def __init__(self, command: str, stderr: str):
        super().__init__(stderr.strip() or "helm command failed", command)
        self.stderr = stderr


class ReleaseNotFoundError(HelmCommandError):
    """The named release does not exist."""


def parse_helm_time(value: Any) -> Optional[datetime]:
    """Parse both timestamp layouts helm emits.

    ``helm list`` prints Go's default layout
    (``2024-01-02 15:04:05.123456789 +0000 UTC``) while ``status`` and
    ``history`` print RFC 3339 with nanoseconds.
    """
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith(" UTC"):
        text = text[: -len(" UTC")]
    # Python only accepts microseconds
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    text = text.replace("Z", "+00:00")
    for layout in ("%Y-%m-%d %H:%M:%S.%f %z", "%Y-%m-%d %H:%M:%S %z"):
        try:
            return datetime.strptime(text, layout)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


@dataclass
class HelmRelease:
    """A release snapshot."""

    name: str
    namespace: str
    revision: int
    status: str
    chart: str
    chart_version: str = ""
    app_version: str = ""
    description: str = ""
    first_deployed: Optional[datetime] = None
    last_deployed: Optional[datetime] = None
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_status_json(cls, data: dict[str, Any]) -> "HelmRelease":
        """Create from ``helm status|install|upgrade --output json``."""
        info = data.get("info") or {}
        metadata = (data.get("chart") or {}).get("metadata") or {}
        return cls(
            name=str(data.get("name", "")),
            namespace=str(data.get("namespace", "")),
            revision=int(data.get("version", 0)),
            status=str(info.get("status", "")),
            chart=str(metadata.get("name", "")),
            chart_version=str(metadata.get("version", "")),
            app_version=str(metadata.get("appVersion", "")),
            description=str(info.get("description", "")),
            first_deployed=parse_helm_time(info.get("first_deployed")),
            last_deployed=parse_helm_time(info.get("last_deployed")),
            config=data.get("config") or {},
        )

    @classmethod
    def from_list_json(cls, data: dict[str, Any]) -> "HelmRelease":
        """Create from a ``helm list --output json`` entry.

        The list output joins chart name and version as ``name-version``.
        """
        chart_ref = str(data.get("chart", ""))
        chart, _, chart_version = chart_ref.rpartition("-")
        if not chart:
            chart, chart_version = chart_ref, ""
        return cls(
            name=str(data.get("name", "")),
            namespace=str(data.get("namespace", "")),
            revision=int(data.get("revision", 0)),
            status=str(data.get("status", "")),
            chart=chart,
            chart_version=chart_version,
            app_version=str(data.get("app_version", "")),
            last_deployed=parse_helm_time(data.get("updated")),
        )


@dataclass
class HelmRevision:
    """A single revision entry from ``helm history``."""

    revision: int
    status: str
    chart: str
    app_version: str
    description: str
    updated: Optional[datetime]

    @property
    def chart_version(self) -> str:
        return self.chart.rpartition("-")[2] if "-" in self.chart else ""

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "HelmRevision":
        return cls(
            revision=int(data.get("revision", 0)),
            status=str(data.get("status", "")),
            chart=str(data.get("chart", "")),
            app_version=str(data.get("app_version", "")),
            description=str(data.get("description", "")),
            updated=parse_helm_time(data.get("updated")),
        )


def _label_arg(labels: dict[str, str]) -> str:
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


class HelmClient:
    """Async wrapper over the helm CLI."""

    def __init__(
        self,
        binary: str = "helm",
        kubeconfig: Optional[str] = None,
        kube_context: Optional[str] = None,
        timeout: int = 600,
        debug: bool = False,
        username: str = "",
        password: str = "",
    ):
        self.binary = binary
        self.kubeconfig = kubeconfig
        self.kube_context = kube_context
        self.timeout = timeout
        self.debug = debug
        self.username = username
        self.password = password

    def _global_args(self) -> list[str]:
        args = []
        if self.kubeconfig:
            args += ["--kubeconfig", self.kubeconfig]
        if self.kube_context:
            args += ["--kube-context", self.kube_context]
        if self.debug:
            args.append("--debug")
        return args

    def _credential_args(self) -> list[str]:
        if not self.username:
            return []
        return ["--username", self.username, "--password", self.password]

    async def run(self, *args: str) -> str:
        """Run one helm command and return stdout."""
        command = " ".join(args[:2])
        cmd = [self.binary, *args, *self._global_args()]
        logger.debug("Running helm %s", command)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise BackendError(str(e), f"helm {command}") from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await asyncio.shield(proc.wait())
            raise

        if proc.returncode != 0:
            message = stderr.decode(errors="replace")
            if "not found" in message and "release" in message:
                raise ReleaseNotFoundError(f"helm {command}", message)
            raise HelmCommandError(f"helm {command}", message)
        return stdout.decode()

    async def _run_json(self, *args: str) -> Any:
        output = await self.run(*args, "--output", "json")
        try:
            return json.loads(output) if output.strip() else None
        except json.JSONDecodeError as e:
            raise BackendError(f"malformed helm output: {e}", f"helm {args[0]}") from e

    async def version(self) -> str:
        return (await self.run("version", "--short")).strip()

    async def list_releases(
        self,
        namespace: Optional[str] = None,
        max_results: Optional[int] = None,
        selector: Optional[str] = None,
    ) -> list[HelmRelease]:
        """List releases in every state. No namespace means all namespaces.

        ``selector`` filters on release labels (``k=v,k2!=v2``).
        """
        scope = ["--namespace", namespace] if namespace else ["--all-namespaces"]
        if max_results:
            scope += ["--max", str(max_results)]
        if selector:
            scope += ["--selector", selector]
        data = await self._run_json("list", "--all", *scope)
        return [HelmRelease.from_list_json(item) for item in data or []]

    async def get_release(self, name: str, namespace: str) -> HelmRelease:
        data = await self._run_json("status", name, "--namespace", namespace)
        return HelmRelease.from_status_json(data or {})

    async def history(self, name: str, namespace: str, max_revisions: int = 10) -> list[HelmRevision]:
        data = await self._run_json(
            "history", name, "--namespace", namespace, "--max", str(max_revisions)
        )
        return [HelmRevision.from_json(item) for item in data or []]

    async def get_values(self, name: str, namespace: str) -> dict[str, Any]:
        data = await self._run_json("get", "values", name, "--namespace", namespace)
        return data or {}

    async def install(
        self,
        name: str,
        chart: str,
        namespace: str,
        values: Optional[dict[str, Any]] = None,
        version: Optional[str] = None,
        repo: Optional[str] = None,
        description: Optional[str] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> HelmRelease:
        args = [
            "install", name, chart,
            "--namespace", namespace, "--create-namespace",
            "--wait", "--timeout", f"{self.timeout}s",
        ]
        if version:
            args += ["--version", version]
        if repo:
            args += ["--repo", repo, *self._credential_args()]
        if description:
            args += ["--description", description]
        if labels:
            args += ["--labels", _label_arg(labels)]
        return await self._with_values("install", args, values)

    async def upgrade(
        self,
        name: str,
        chart: str,
        namespace: str,
        values: Optional[dict[str, Any]] = None,
        version: Optional[str] = None,
        repo: Optional[str] = None,
        reuse_values: bool = False,
        max_history: Optional[int] = None,
        description: Optional[str] = None,
        labels: Optional[dict[str, str]] = None,
    ) -> HelmRelease:
        """Upgrade a release. Labels are merged into the existing release labels."""
        args = [
            "upgrade", name, chart,
            "--namespace", namespace,
            "--wait", "--timeout", f"{self.timeout}s",
        ]
        if version:
            args += ["--version", version]
        if repo:
            args += ["--repo", repo, *self._credential_args()]
        if description:
            args += ["--description", description]
        if reuse_values:
            args.append("--reuse-values")
        if max_history:
            args += ["--history-max", str(max_history)]
        if labels:
            args += ["--labels", _label_arg(labels)]
        return await self._with_values("upgrade", args, values)

    async def _with_values(
        self, action: str, args: list[str], values: Optional[dict[str, Any]]
    ) -> HelmRelease:
        if not values:
            data = await self._run_json(*args)
            return HelmRelease.from_status_json(data or {})

        fd, path = tempfile.mkstemp(prefix=f"deploygate-{action}-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(values, f)
            data = await self._run_json(*args, "--values", path)
        finally:
            os.unlink(path)
        return HelmRelease.from_status_json(data or {})

    async def uninstall(self, name: str, namespace: str) -> None:
        await self.run("uninstall", name, "--namespace", namespace, "--wait")

    async def rollback(self, name: str, namespace: str, revision: int) -> None:
        await self.run(
            "rollback", name, str(revision),
            "--namespace", namespace, "--wait", "--timeout", f"{self.timeout}s",
        )

    async def push(self, chart_path: str, remote: str) -> str:
        return await self.run("push", chart_path, remote)
