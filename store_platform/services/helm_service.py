"""
Helm wrapper — installs and uninstalls store releases.

Install does NOT use --wait: helm creates the resources immediately and
the store manager's own readiness polling handles waiting for pods.
Both install and uninstall are idempotent.
"""

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from store_platform.config import Settings
from store_platform.exceptions import ExternalToolError
from store_platform.models import InstallResult

logger = logging.getLogger("helm")

# Release states that block a fresh install and must be force-removed first
STUCK_STATES = {"pending-install", "pending-upgrade", "pending-rollback", "failed"}

# Extra time the helm process gets beyond its own --timeout before it is killed
PROCESS_TIMEOUT_MARGIN = 10.0

# Values that must never appear in logs
SECRET_KEYS = {"mysql.rootPassword", "mysql.password", "wordpress.adminPassword"}


@dataclass
class HelmResult:
    returncode: int
    stdout: str
    stderr: str


HelmRunner = Callable[[list[str], float], Awaitable[HelmResult]]


def redact(args: list[str]) -> str:
    """Render a helm command line with secret --set values masked."""
    shown = []
    for arg in args:
        key, sep, _ = arg.partition("=")
        shown.append(f"{key}=***" if sep and key in SECRET_KEYS else arg)
    return " ".join(["helm"] + shown)


async def run_helm(args: list[str], timeout: float) -> HelmResult:
    """Execute a helm CLI command, killing it if it outlives `timeout`."""
    logger.info(f"helm> {redact(args)}")
    try:
        proc = await asyncio.create_subprocess_exec(
            "helm",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ExternalToolError("helm binary not found on PATH") from e
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise ExternalToolError(f"Helm command timed out after {timeout:.0f}s: {redact(args)}") from e
    result = HelmResult(proc.returncode, out.decode("utf-8"), err.decode("utf-8"))
    if result.stdout:
        logger.debug(f"helm stdout: {result.stdout[:800]}")
    if result.stderr:
        logger.warning(f"helm stderr: {result.stderr[:800]}")
    return result


def generate_password(length: int = 24) -> str:
    return secrets.token_urlsafe(length)[:length]


@dataclass
class InstallParameters:
    """Deployment-specific parameters for one store release."""
    store_id: str
    store_name: str
    host: str
    admin_path: str = "/wp-admin"
    extra: dict[str, str] = field(default_factory=dict)

    @property
    def urls(self) -> InstallResult:
        store_url = f"http://{self.host}"
        return InstallResult(storeUrl=store_url, adminUrl=f"{store_url}{self.admin_path}")


class PackageDeployer:
    """Installs/uninstalls the store chart into a namespace via helm."""

    def __init__(self, settings: Settings, runner: Optional[HelmRunner] = None):
        self.settings = settings
        self._run = runner or run_helm

    async def _helm(self, args: list[str], check: bool = True) -> HelmResult:
        result = await self._run(args, self.settings.HELM_TIMEOUT + PROCESS_TIMEOUT_MARGIN)
        if check and result.returncode != 0:
            raise ExternalToolError(
                f"Helm command failed (rc={result.returncode}): {result.stderr[:500]}"
            )
        return result

    async def release_status(self, release_id: str, namespace: str) -> Optional[str]:
        """
        Status string of a release (e.g. 'deployed', 'pending-install',
        'failed'), or None if it does not exist.
        """
        r = await self._helm(["status", release_id, "-n", namespace, "-o", "json"], check=False)
        if r.returncode != 0:
            return None
        try:
            return json.loads(r.stdout).get("info", {}).get("status", "unknown")
        except ValueError:
            return "unknown"

    async def release_exists(self, release_id: str, namespace: str) -> bool:
        return await self.release_status(release_id, namespace) is not None

    def _values(self, params: InstallParameters) -> dict[str, str]:
        # Fresh credentials on every real install; never reused
        return {
            "storeName": params.store_name,
            "storeId": params.store_id,
            "wordpress.host": params.host,
            "wordpress.adminUser": "admin",
            "wordpress.adminPassword": generate_password(16),
            "wordpress.adminEmail": f"admin@{params.host}",
            "mysql.rootPassword": generate_password(),
            "mysql.database": "wordpress",
            "mysql.user": "wordpress",
            "mysql.password": generate_password(),
            "ingress.host": params.host,
            "ingress.className": self.settings.INGRESS_CLASS,
            **params.extra,
        }

    async def install(
        self, release_id: str, namespace: str, params: InstallParameters
    ) -> InstallResult:
        """
        Install the store chart. Idempotent: an existing healthy release is
        left alone and the same URLs are returned; a stuck release is
        cleaned up and installed fresh.
        """
        status = await self.release_status(release_id, namespace)
        if status in STUCK_STATES:
            logger.warning(f"Helm release {release_id} is stuck in '{status}' — cleaning up")
            await self._helm(["uninstall", release_id, "-n", namespace, "--no-hooks"], check=False)
            status = None
        if status is not None:
            logger.info(f"Helm release {release_id} already exists, skipping install (idempotent)")
            return params.urls

        set_args = []
        for k, v in self._values(params).items():
            set_args += ["--set", f"{k}={v}"]

        logger.info(f"Installing Helm release {release_id} in {namespace}")
        r = await self._helm([
            "install", release_id, self.settings.HELM_CHART_PATH,
            "-n", namespace,
            "--timeout", f"{int(self.settings.HELM_TIMEOUT)}s",
        ] + set_args, check=False)
        if r.returncode != 0:
            if "already exists" in r.stderr:
                logger.warning(f"Release {release_id} already exists (race condition)")
            else:
                raise ExternalToolError(f"Helm install failed: {r.stderr[:500] or r.stdout[:500]}")
        return params.urls

    async def uninstall(self, release_id: str, namespace: str) -> None:
        """Uninstall a release; a missing release counts as success."""
        r = await self._helm([
            "uninstall", release_id, "-n", namespace,
            "--timeout", f"{int(self.settings.HELM_TIMEOUT)}s",
        ], check=False)
        if r.returncode == 0:
            logger.info(f"Helm release {release_id} uninstalled")
        elif "not found" in r.stderr:
            logger.info(f"Helm release {release_id} not found — skipping uninstall")
        else:
            raise ExternalToolError(f"Helm uninstall failed: {r.stderr[:500]}")
