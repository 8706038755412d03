"""Load deployment definitions from a YAML or JSON deployment file.

File format (YAML example)::

    pull:
      - git_clone:
          repository: https://example.com/acme/flows.git
          branch: main
    deployments:
      - name: nightly
        entrypoint: flows/etl.py:etl
        parameters: {n: 1}
        schedules:
          - cron: "0 2 * * *"
            timezone: Europe/Berlin
          - interval: 3600
            anchor_date: 2024-01-01T00:00:00Z
        work_pool:
          name: k8s
          work_queue_name: critical
          job_variables: {image: "acme/etl:latest"}

A deployment's own ``pull`` section replaces the file-level one.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

import yaml

from deployments.models import DeploymentCreate, DeploymentSchedule, PullStep

# keys that select the rule kind of a schedule entry
_RULE_KEYS = ("cron", "interval", "rrule")


def load_deployment_file(path: str) -> list[DeploymentCreate]:
    with open(path) as f:
        data = yaml.safe_load(f) if path.endswith((".yaml", ".yml")) else json.load(f)
    return parse_deployment_document(data or {})


def parse_deployment_document(data: dict[str, Any]) -> list[DeploymentCreate]:
    """Turn a parsed deployment file into validated create payloads."""
    if not isinstance(data, dict):
        raise ValueError("Deployment file must contain a mapping at the top level")
    shared_pull = _pull_steps(data.get("pull") or [])
    entries = data.get("deployments") or []
    if not isinstance(entries, list):
        raise ValueError("'deployments' must be a list")
    return [_deployment(entry, shared_pull) for entry in entries]


def _deployment(entry: dict[str, Any], shared_pull: list[PullStep]) -> DeploymentCreate:
    entry = dict(entry)
    entrypoint = entry.get("entrypoint", "")
    work_pool = entry.pop("work_pool", None) or {}
    pull = entry.pop("pull", None)

    entry.setdefault("flow_id", entrypoint.rsplit(":", 1)[-1] if entrypoint else "")
    key = f"{entry['flow_id']}/{entry.get('name', '')}"
    entry["schedules"] = [
        _schedule(s, f"{key}/{i}") for i, s in enumerate(entry.get("schedules") or [])
    ]
    entry["pull_steps"] = _pull_steps(pull) if pull is not None else shared_pull
    if work_pool:
        entry["work_pool_name"] = work_pool.get("name")
        entry["work_queue_name"] = work_pool.get("work_queue_name")
        entry["job_variables"] = work_pool.get("job_variables") or {}
    return DeploymentCreate.model_validate(entry)


def _schedule(entry: dict[str, Any], key: str) -> DeploymentSchedule:
    """Schedules without an explicit id get one derived from *key*, so
    reloading the same file keeps their dispatch cursors."""
    kinds = [k for k in _RULE_KEYS if k in entry]
    if len(kinds) != 1:
        raise ValueError(
            f"Schedule entry must set exactly one of {', '.join(_RULE_KEYS)}: {entry}"
        )
    rule = {k: v for k, v in entry.items() if k not in ("active", "id")}
    rule["kind"] = kinds[0]
    schedule = {
        "id": entry.get("id") or str(uuid.uuid5(uuid.NAMESPACE_URL, key)),
        "rule": rule,
        "active": entry.get("active", True),
    }
    return DeploymentSchedule.model_validate(schedule)


def _pull_steps(steps: list[Any]) -> list[PullStep]:
    """``[{action: {inputs}}]`` → PullStep list."""
    result = []
    for step in steps:
        if not isinstance(step, dict) or len(step) != 1:
            raise ValueError(f"Pull step must be a single-key mapping: {step!r}")
        (action, inputs), = step.items()
        result.append(PullStep(action=action, inputs=inputs or {}))
    return result
