from __future__ import annotations

import os
import shutil
from pathlib import Path

from deskhost.install.steps import (
    DependenciesStep,
    EnvironmentStep,
    InstallJournal,
    StepContext,
    requirement_name,
    requirements_hash,
)


def _fake_venv(venv: Path, projects: list[str]) -> Path:
    """Lay out a venv skeleton with ``.dist-info`` metadata for ``projects``."""
    if os.name == "nt":
        python = venv / "Scripts" / "python.exe"
        site = venv / "Lib" / "site-packages"
    else:
        python = venv / "bin" / "python"
        site = venv / "lib" / "python3.12" / "site-packages"
    python.parent.mkdir(parents=True, exist_ok=True)
    python.write_text("", encoding="utf-8")
    (venv / "pyvenv.cfg").write_text("home = /usr/bin\n", encoding="utf-8")
    site.mkdir(parents=True, exist_ok=True)
    for project in projects:
        info = site / f"{project}-1.0.dist-info"
        info.mkdir()
        (info / "METADATA").write_text(
            f"Metadata-Version: 2.1\nName: {project}\nVersion: 1.0\n", encoding="utf-8"
        )
    return site


def _context(shell_config, step: str) -> StepContext:
    config = shell_config.with_overrides(requirements=("fastapi>=0.110", "uvicorn[standard]"))
    journal = InstallJournal(config.base_path)
    return StepContext(base_path=config.base_path, config=config, journal=journal, step=step)


def test_requirement_names_are_canonical():
    assert requirement_name("uvicorn[standard]>=0.27") == "uvicorn"
    assert requirement_name("Typing_Extensions ; python_version<'3.11'") == "typing-extensions"
    assert requirement_name("fastapi") == "fastapi"


def test_dependencies_verify_checks_installed_distributions(shell_config):
    ctx = _context(shell_config, "dependencies")
    step = DependenciesStep()
    _fake_venv(ctx.venv_dir, ["fastapi", "uvicorn"])

    assert not step.verify(ctx)
    ctx.record_checkpoint("installed", hash=requirements_hash(ctx.config.requirements))
    assert step.verify(ctx)

    (ctx.venv_dir / "pyvenv.cfg").unlink()
    env_ctx = _context(shell_config, "environment")
    assert not EnvironmentStep().verify(env_ctx)


def test_rebuilt_environment_forces_dependencies_to_rerun(shell_config):
    ctx = _context(shell_config, "dependencies")
    ctx.record_checkpoint("installed", hash=requirements_hash(ctx.config.requirements))
    ctx.journal.mark_done("dependencies")
    _fake_venv(ctx.venv_dir, ["fastapi", "uvicorn"])
    assert DependenciesStep().verify(ctx)

    # The environment step discards the venv and creates an empty one.
    EnvironmentStep().discard(ctx)
    assert not ctx.venv_dir.exists()
    _fake_venv(ctx.venv_dir, [])

    reloaded = _context(shell_config, "dependencies")
    assert reloaded.journal.is_done("dependencies")
    assert not DependenciesStep().verify(reloaded)


def test_partially_installed_environment_fails_verification(shell_config):
    ctx = _context(shell_config, "dependencies")
    ctx.record_checkpoint("installed", hash=requirements_hash(ctx.config.requirements))
    site = _fake_venv(ctx.venv_dir, ["fastapi", "uvicorn"])
    shutil.rmtree(site / "uvicorn-1.0.dist-info")
    assert not DependenciesStep().verify(ctx)
