"""
Install steps and the on-disk journal that makes them resumable.

Each step can verify its own output. A step that the journal records as done
and that still verifies is skipped; anything else has its partial output
discarded and runs again. Steps may record named checkpoints so that a resumed
run can skip the finished part of a long step (for example, wheels already
downloaded but not yet installed).
"""

from __future__ import annotations

import asyncio
import hashlib
import importlib.metadata
import json
import logging
import os
import re
import shutil
import sys
import time
import venv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from deskhost import __version__
from deskhost.config.settings import ShellConfig
from deskhost.core.errors import InstallationError, InstallErrorKind

logger = logging.getLogger(__name__)

STATE_DIR = ".deskhost"
JOURNAL_FILENAME = "install-journal.json"
MARKER_FILENAME = "install.json"
LAYOUT_VERSION = 1
LAYOUT_DIRS: tuple[str, ...] = ("models", "user", "input", "output", "custom_nodes")


def state_dir(base_path: Path) -> Path:
    return Path(base_path) / STATE_DIR


def venv_dir(base_path: Path) -> Path:
    return base_path / ".venv"


def marker_path(base_path: Path) -> Path:
    return state_dir(base_path) / MARKER_FILENAME


def read_marker(base_path: Path) -> Optional[Dict[str, Any]]:
    try:
        payload = json.loads(marker_path(base_path).read_text(encoding="utf-8"))
    except (FileNotFoundError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _write_json_atomic(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    os.replace(tmp, path)


class InstallJournal:
    """Per-step completion record persisted under ``<base>/.deskhost``."""

    def __init__(self, base_path: Path) -> None:
        self.path = state_dir(base_path) / JOURNAL_FILENAME
        self._data: Dict[str, Any] = {"version": 1, "steps": {}}
        self.load()

    def load(self) -> None:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except json.JSONDecodeError:
            logger.warning("Install journal %s is corrupt; starting fresh", self.path)
            return
        if isinstance(payload, dict) and isinstance(payload.get("steps"), dict):
            self._data = payload

    def _save(self) -> None:
        _write_json_atomic(self.path, self._data)

    def _entry(self, step: str) -> Dict[str, Any]:
        return self._data["steps"].setdefault(step, {"status": "pending", "checkpoints": {}})

    def is_done(self, step: str) -> bool:
        return self._data["steps"].get(step, {}).get("status") == "done"

    def checkpoint(self, step: str, name: str) -> Optional[Dict[str, Any]]:
        return self._data["steps"].get(step, {}).get("checkpoints", {}).get(name)

    def record_checkpoint(self, step: str, name: str, **details: Any) -> None:
        entry = self._entry(step)
        entry["status"] = "partial"
        entry["checkpoints"][name] = {"at": time.time(), **details}
        self._save()

    def mark_done(self, step: str) -> None:
        entry = self._entry(step)
        entry["status"] = "done"
        entry["completed_at"] = time.time()
        self._save()

    def clear_step(self, step: str) -> None:
        if self._data["steps"].pop(step, None) is not None:
            self._save()

    def as_dict(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self._data))


@dataclass
class StepContext:
    base_path: Path
    config: ShellConfig
    journal: InstallJournal
    step: str = ""
    report: Callable[[int, str], None] = field(default=lambda percent, message: None)

    @property
    def state_dir(self) -> Path:
        return state_dir(self.base_path)

    @property
    def venv_dir(self) -> Path:
        return venv_dir(self.base_path)

    def checkpoint(self, name: str) -> Optional[Dict[str, Any]]:
        return self.journal.checkpoint(self.step, name)

    def record_checkpoint(self, name: str, **details: Any) -> None:
        self.journal.record_checkpoint(self.step, name, **details)

    async def run_command(
        self,
        command: Sequence[str],
        *,
        failure_kind: InstallErrorKind = InstallErrorKind.TRANSIENT_IO,
        timeout: Optional[float] = None,
    ) -> str:
        """Run a child process; it is killed if the awaiting task is cancelled."""
        logger.info("Running %s", " ".join(str(part) for part in command))
        try:
            proc = await asyncio.create_subprocess_exec(
                *[str(part) for part in command],
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise InstallationError.from_os_error(exc, context=self.step) from exc
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise InstallationError(
                failure_kind, f"{self.step}: command timed out after {timeout}s"
            )
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        if proc.returncode != 0:
            tail = "\n".join(output.strip().splitlines()[-20:])
            raise InstallationError(
                failure_kind,
                f"{self.step}: command exited with {proc.returncode}",
                details={"exit_code": proc.returncode, "output": tail},
            )
        return output


class InstallStep:
    """One resumable unit of installation work."""

    name = "step"
    title = "Step"

    def verify(self, ctx: StepContext) -> bool:
        """Return True when this step's output is present and valid."""
        return False

    def discard(self, ctx: StepContext) -> None:
        """Remove partial or corrupt output before re-running."""

    async def run(self, ctx: StepContext) -> None:
        raise NotImplementedError


class LayoutStep(InstallStep):
    name = "layout"
    title = "Creating directories"

    def verify(self, ctx: StepContext) -> bool:
        return all((ctx.base_path / name).is_dir() for name in LAYOUT_DIRS)

    async def run(self, ctx: StepContext) -> None:
        def _make() -> None:
            for name in LAYOUT_DIRS:
                (ctx.base_path / name).mkdir(parents=True, exist_ok=True)

        await asyncio.to_thread(_make)


def venv_python(venv_dir: Path) -> Path:
    if os.name == "nt":
        return venv_dir / "Scripts" / "python.exe"
    for name in ("python3", "python"):
        candidate = venv_dir / "bin" / name
        if candidate.exists():
            return candidate
    return venv_dir / "bin" / "python"


class EnvironmentStep(InstallStep):
    name = "environment"
    title = "Creating Python environment"

    def verify(self, ctx: StepContext) -> bool:
        return venv_python(ctx.venv_dir).exists() and (ctx.venv_dir / "pyvenv.cfg").exists()

    def discard(self, ctx: StepContext) -> None:
        shutil.rmtree(ctx.venv_dir, ignore_errors=True)

    async def run(self, ctx: StepContext) -> None:
        ctx.report(10, f"Creating virtual environment at {ctx.venv_dir}")
        builder = venv.EnvBuilder(with_pip=True, clear=True, upgrade=False)
        await asyncio.to_thread(builder.create, str(ctx.venv_dir))
        if not venv_python(ctx.venv_dir).exists():
            raise InstallationError(
                InstallErrorKind.TRANSIENT_IO,
                "Virtual environment was created but has no python executable",
            )


def requirements_hash(requirements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    for item in sorted(requirements):
        digest.update(item.encode("utf-8"))
        digest.update(b"\n")
    digest.update(sys.version.encode("utf-8"))
    return digest.hexdigest()


def canonical_name(name: str) -> str:
    return re.sub(r"[-_.]+", "-", name).lower()


def requirement_name(requirement: str) -> str:
    """Project name of a requirement string such as ``uvicorn[standard]>=0.27``."""
    return canonical_name(re.split(r"[\s<>=!~;\[@]", requirement.strip(), maxsplit=1)[0])


def site_packages(venv_dir: Path) -> List[Path]:
    if os.name == "nt":
        candidates = [venv_dir / "Lib" / "site-packages"]
    else:
        candidates = sorted((venv_dir / "lib").glob("python*/site-packages"))
    return [path for path in candidates if path.is_dir()]


def installed_projects(venv_dir: Path) -> Set[str]:
    """Canonical names of the distributions installed in ``venv_dir``."""
    paths = [str(path) for path in site_packages(venv_dir)]
    if not paths:
        return set()
    names = set()
    for dist in importlib.metadata.distributions(path=paths):
        name = dist.metadata["Name"]
        if name:
            names.add(canonical_name(name))
    return names


class DependenciesStep(InstallStep):
    name = "dependencies"
    title = "Installing dependencies"

    def _wheel_dir(self, ctx: StepContext) -> Path:
        return ctx.state_dir / "wheels"

    def _hash(self, ctx: StepContext) -> str:
        return requirements_hash(ctx.config.requirements)

    def _checkpoint_valid(self, ctx: StepContext, name: str) -> bool:
        entry = ctx.checkpoint(name)
        return bool(entry) and entry.get("hash") == self._hash(ctx)

    def _downloaded(self, ctx: StepContext) -> bool:
        wheels = self._wheel_dir(ctx)
        return (
            self._checkpoint_valid(ctx, "downloaded")
            and wheels.is_dir()
            and any(wheels.iterdir())
        )

    def verify(self, ctx: StepContext) -> bool:
        if not (self._checkpoint_valid(ctx, "installed") and venv_python(ctx.venv_dir).exists()):
            return False
        installed = installed_projects(ctx.venv_dir)
        missing = sorted(
            name
            for name in map(requirement_name, ctx.config.requirements)
            if name not in installed
        )
        if missing:
            logger.info("Environment is missing %s; reinstalling dependencies", ", ".join(missing))
            return False
        return True

    def discard(self, ctx: StepContext) -> None:
        if not self._downloaded(ctx):
            shutil.rmtree(self._wheel_dir(ctx), ignore_errors=True)

    async def run(self, ctx: StepContext) -> None:
        requirements = list(ctx.config.requirements)
        if not requirements:
            ctx.record_checkpoint("installed", hash=self._hash(ctx))
            return
        python = str(venv_python(ctx.venv_dir))
        wheels = self._wheel_dir(ctx)
        timeout = ctx.config.pip_timeout

        if self._downloaded(ctx):
            ctx.report(50, "Dependencies already downloaded")
        else:
            ctx.report(5, "Downloading dependencies")
            wheels.mkdir(parents=True, exist_ok=True)
            await ctx.run_command(
                [python, "-m", "pip", "download", "--dest", str(wheels), *requirements],
                failure_kind=InstallErrorKind.NETWORK_FAILURE,
                timeout=timeout,
            )
            ctx.record_checkpoint("downloaded", hash=self._hash(ctx))
            ctx.report(50, "Dependencies downloaded")

        ctx.report(55, "Installing dependencies")
        await ctx.run_command(
            [
                python,
                "-m",
                "pip",
                "install",
                "--no-index",
                "--find-links",
                str(wheels),
                *requirements,
            ],
            failure_kind=InstallErrorKind.TRANSIENT_IO,
            timeout=timeout,
        )
        ctx.record_checkpoint("installed", hash=self._hash(ctx))
        ctx.report(100, "Dependencies installed")


class FinalizeStep(InstallStep):
    name = "finalize"
    title = "Finalizing installation"

    def verify(self, ctx: StepContext) -> bool:
        marker = read_marker(ctx.base_path)
        return bool(marker) and marker.get("layout_version") == LAYOUT_VERSION

    def discard(self, ctx: StepContext) -> None:
        marker_path(ctx.base_path).unlink(missing_ok=True)

    async def run(self, ctx: StepContext) -> None:
        payload = {
            "layout_version": LAYOUT_VERSION,
            "app_version": __version__,
            "installed_at": time.time(),
            "python": sys.version.split()[0],
        }
        await asyncio.to_thread(_write_json_atomic, marker_path(ctx.base_path), payload)


def default_steps() -> List[InstallStep]:
    return [LayoutStep(), EnvironmentStep(), DependenciesStep(), FinalizeStep()]
