"""Thin wrapper around the ``helm`` binary.

Every call shells out with ``subprocess.run(capture_output=True, text=True)``
and a timeout. Helm reports a missing release only through its stderr text,
so ``_is_not_found`` is the one place output is matched as a string.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)


class HelmError(Exception):
    """Raised when a helm command fails."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


def _is_not_found(stderr: str) -> bool:
    return "not found" in (stderr or "").lower()


def _clean_stderr(stderr: str) -> str:
    """Drop K8s client-go log noise (I0216... lines) to find the real error."""
    lines = (stderr or "").strip().splitlines()
    error_lines = [ln for ln in lines if not ln.lstrip().startswith(("I0", "W0", '"Warning'))]
    return "\n".join(error_lines).strip()[:500] or (stderr or "").strip()[:500] or "Unknown error"


class HelmClient:
    """Runs helm repo / status / upgrade --install / uninstall."""

    def __init__(self, binary: str = "helm", kube_context: str = ""):
        self.binary = binary
        self.kube_context = kube_context

    def is_available(self) -> bool:
        """Check that the helm binary is on PATH."""
        return shutil.which(self.binary) is not None

    def _run(self, args: list[str], timeout: int = 60) -> subprocess.CompletedProcess:
        cmd = [self.binary, *args]
        if self.kube_context:
            cmd.extend(["--kube-context", self.kube_context])
        logger.debug("Running: %s", " ".join(cmd))
        try:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise HelmError(f"helm {args[0]} timed out after {timeout}s") from e
        except FileNotFoundError as e:
            raise HelmError(f"{self.binary} not found on PATH") from e

    # -------------------------------------------------------------------------
    # Repositories
    # -------------------------------------------------------------------------

    def repo_names(self) -> list[str]:
        """Names of configured chart repositories (empty if none)."""
        result = self._run(["repo", "list", "-o", "json"], timeout=30)
        if result.returncode != 0:
            # helm exits non-zero when no repositories are configured
            if "no repositories" in (result.stderr or "").lower():
                return []
            raise HelmError(f"helm repo list failed: {_clean_stderr(result.stderr)}", result.stderr)
        try:
            return [r.get("name", "") for r in json.loads(result.stdout or "[]")]
        except json.JSONDecodeError as e:
            raise HelmError(f"Unparseable helm repo list output: {e}") from e

    def repo_add(self, name: str, url: str) -> bool:
        """Add a chart repository unless one with that name exists.

        Returns:
            True if added, False if already present
        """
        if name in self.repo_names():
            return False
        result = self._run(["repo", "add", name, url], timeout=30)
        if result.returncode != 0:
            raise HelmError(f"helm repo add {name} failed: {_clean_stderr(result.stderr)}", result.stderr)
        update = self._run(["repo", "update", name], timeout=60)
        if update.returncode != 0:
            logger.warning("helm repo update %s failed: %s", name, _clean_stderr(update.stderr))
        return True

    # -------------------------------------------------------------------------
    # Releases
    # -------------------------------------------------------------------------

    def release_exists(self, name: str, namespace: str | None = None) -> bool:
        """Check release presence with ``helm status``.

        Raises:
            HelmError: If helm fails for any reason other than "not found"
        """
        args = ["status", name]
        if namespace:
            args.extend(["--namespace", namespace])
        result = self._run(args, timeout=30)
        if result.returncode == 0:
            return True
        if _is_not_found(result.stderr):
            return False
        raise HelmError(f"helm status {name} failed: {_clean_stderr(result.stderr)}", result.stderr)

    def upgrade_install(
        self,
        release: str,
        chart: str,
        namespace: str,
        version: str = "",
        values_file: Path | None = None,
        set_values: Mapping[str, str] | None = None,
        set_string_values: Mapping[str, str] | None = None,
        timeout: str = "1200s",
    ) -> None:
        """Run ``helm upgrade --install``.

        Raises:
            HelmError: On non-zero exit or timeout
        """
        args = ["upgrade", "--install", release, chart, "--namespace", namespace]
        if version:
            args.extend(["--version", version])
        if values_file is not None:
            args.extend(["--values", str(values_file)])
        for key, val in (set_values or {}).items():
            args.extend(["--set", f"{key}={val}"])
        for key, val in (set_string_values or {}).items():
            args.extend(["--set-string", f"{key}={val}"])
        args.extend(["--timeout", timeout])

        # Give helm its own timeout plus a minute before killing it
        seconds = int(timeout.rstrip("s")) if timeout.rstrip("s").isdigit() else 1200
        result = self._run(args, timeout=seconds + 60)
        if result.returncode != 0:
            raise HelmError(
                f"helm upgrade --install {release} failed: {_clean_stderr(result.stderr)}",
                result.stderr,
            )

    def uninstall(self, release: str, namespace: str | None = None) -> bool:
        """Uninstall a release.

        Returns:
            True if removed, False if it was already absent

        Raises:
            HelmError: On any failure other than "not found"
        """
        args = ["uninstall", release]
        if namespace:
            args.extend(["--namespace", namespace])
        result = self._run(args, timeout=300)
        if result.returncode == 0:
            return True
        if _is_not_found(result.stderr):
            return False
        raise HelmError(f"helm uninstall {release} failed: {_clean_stderr(result.stderr)}", result.stderr)
