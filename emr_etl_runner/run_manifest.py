# emr_etl_runner/run_manifest.py
from __future__ import annotations

import json
import platform
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from emr_etl_runner.plan import PipelinePlan
from emr_etl_runner.steps import step_to_dict


@dataclass(frozen=True)
class PlanManifest:
    """Reproducible record of what a run submitted (or would submit)."""

    created_utc: str
    python: str
    platform: str
    git_commit: str | None
    command: str
    run_id: str
    jobflow_name: str
    release: str
    applications: list[str]
    bootstrap_actions: list[dict[str, Any]]
    steps: list[dict[str, Any]]
    loader_logs: list[dict[str, str]]


def _safe_git_commit(repo_root: Path) -> str | None:
    """Best-effort git commit retrieval."""
    try:
        r = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=str(repo_root),
            check=False,
            capture_output=True,
            text=True,
        )
    except OSError:
        return None
    if r.returncode == 0:
        return r.stdout.strip() or None
    return None


def build_plan_manifest(plan: PipelinePlan, *, command: str, repo_root: str | Path | None = None) -> PlanManifest:
    topology = plan.topology
    return PlanManifest(
        created_utc=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        python=sys.version.replace("\n", " "),
        platform=f"{platform.system()} {platform.release()} ({platform.machine()})",
        git_commit=_safe_git_commit(Path(repo_root)) if repo_root is not None else None,
        command=command,
        run_id=plan.run_id,
        jobflow_name=topology.name,
        release=topology.release_label or f"ami-{topology.ami_version}",
        applications=list(topology.applications),
        bootstrap_actions=[{"path": a.path, "args": list(a.args)} for a in topology.bootstrap_actions],
        steps=[step_to_dict(s) for s in plan.all_steps()],
        loader_logs=[{"target": r.target_name, "log_key": r.log_key} for r in plan.loader_logs],
    )


def write_plan_manifest(
    plan: PipelinePlan,
    output_path: str | Path,
    *,
    command: str,
    repo_root: str | Path | None = None,
) -> Path:
    """Write ``plan`` as pretty-printed JSON to ``output_path``."""
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    manifest = build_plan_manifest(plan, command=command, repo_root=repo_root)
    out.write_text(json.dumps(manifest.__dict__, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return out
