"""
Pipeline definition loader.

Reads the declarative YAML pipeline format:

    name: webapp
    failurePolicy: fail_at_end
    targets:
      staging:
        deployCommand: kubectl set image deployment/web web=registry/web:${VERSION} -n staging
        healthCheckUrl: https://staging.example.com/health
    stages:
      - name: install
        run: npm ci
      - name: lint
        parallel: checks
        run: npm run lint
      - name: test
        parallel: checks
        run: npm test
        retry: {attempts: 2, backoff: fixed, delay: 5}
      - name: deploy-staging
        when: {branch: develop}
        deploy: {target: staging}

Keys may be camelCase or snake_case. A stage without ``dependsOn`` depends
on the stage declared before it (or on the whole parallel group before it),
which mirrors a Jenkinsfile's sequential stages; ``dependsOn: []`` opts out.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from shipyard.deployment.domain.models import DeploymentTarget
from shipyard.pipeline.application.actions import CommandAction, DeployAction, RollbackAction
from shipyard.pipeline.domain.conditions import StageCondition
from shipyard.pipeline.domain.enums import FailurePolicy, SkipPolicy
from shipyard.pipeline.domain.graph import StageGraph, build_graph
from shipyard.pipeline.domain.models import (
    ApprovalConfig,
    PipelineConfig,
    RetryPolicy,
    StageDefinition,
)
from shipyard.shared.domain.base_model import to_snake_case
from shipyard.shared.domain.exceptions import PipelineDefinitionError
from shipyard.shared.infrastructure.config import settings

_PIPELINE_KEYS = {"name", "failure_policy", "parallel_limit", "approval_timeout", "variables", "targets", "stages"}
_STAGE_KEYS = {
    "name", "run", "deploy", "rollback", "approval", "depends_on", "parallel", "when",
    "retry", "non_blocking", "skip_policy", "timeout", "cwd",
}
_TARGET_KEYS = {
    "health_check_url", "health_command", "deploy_command", "health_timeout",
    "poll_interval", "current_version", "rollback_version",
}


@dataclass
class PipelineDefinition:
    """A parsed pipeline file."""

    name: str
    stages: list[StageDefinition]
    config: PipelineConfig = field(default_factory=PipelineConfig)
    targets: dict[str, DeploymentTarget] = field(default_factory=dict)
    variables: dict[str, str] = field(default_factory=dict)
    source: Optional[Path] = None

    def build_graph(self) -> StageGraph:
        return build_graph(self.stages, name=self.name)


def load_pipeline(path: str | Path) -> PipelineDefinition:
    """
    Load a pipeline definition from a YAML file.

    Raises:
        PipelineDefinitionError: missing file, invalid YAML, or invalid definition
    """
    path = Path(path)
    if not path.exists():
        raise PipelineDefinitionError(f"Pipeline file not found: {path}", context={"path": str(path)})

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise PipelineDefinitionError(f"Invalid YAML in {path}: {e}", context={"path": str(path)})

    return parse_pipeline(data, source=path)


def parse_pipeline(data: Any, source: Optional[Path] = None) -> PipelineDefinition:
    """Build a PipelineDefinition from already-parsed YAML data."""
    if not isinstance(data, Mapping):
        raise PipelineDefinitionError("Pipeline definition must be a mapping")

    data = _normalize(data, _PIPELINE_KEYS, "pipeline")
    name = str(data.get("name") or (source.stem if source else "pipeline"))

    variables = data.get("variables") or {}
    if not isinstance(variables, Mapping):
        raise PipelineDefinitionError("'variables' must be a mapping")

    targets = {
        target_name: _parse_target(target_name, spec)
        for target_name, spec in (data.get("targets") or {}).items()
    }

    raw_stages = data.get("stages")
    if not isinstance(raw_stages, list) or not raw_stages:
        raise PipelineDefinitionError("'stages' must be a non-empty list")

    stages = _parse_stages(raw_stages, targets)

    return PipelineDefinition(
        name=name,
        stages=stages,
        config=PipelineConfig(
            failure_policy=_enum(FailurePolicy, data.get("failure_policy", settings.failure_policy), "failurePolicy"),
            parallel_limit=int(data.get("parallel_limit", settings.parallel_limit)),
            approval_timeout=_optional_float(data.get("approval_timeout", settings.approval_timeout)),
        ),
        targets=targets,
        variables={str(k): str(v) for k, v in variables.items()},
        source=source,
    )


def _parse_stages(raw_stages: list, targets: Mapping[str, DeploymentTarget]) -> list[StageDefinition]:
    stages: list[StageDefinition] = []
    anchor: list[str] = []
    group_base: list[str] = []
    current_group: Optional[str] = None
    seen_groups: set[str] = set()

    for position, raw in enumerate(raw_stages):
        if not isinstance(raw, Mapping):
            raise PipelineDefinitionError(f"Stage #{position + 1} must be a mapping")
        spec = _normalize(raw, _STAGE_KEYS, f"stage #{position + 1}")
        name = spec.get("name")
        if not name:
            raise PipelineDefinitionError(f"Stage #{position + 1} has no name")
        name = str(name)

        group = spec.get("parallel")
        group = str(group) if group else None

        if group:
            if group != current_group:
                if group in seen_groups:
                    raise PipelineDefinitionError(
                        f"Members of parallel group '{group}' must be declared together",
                        context={"stage": name, "group": group},
                    )
                seen_groups.add(group)
                current_group = group
                group_base = anchor
                anchor = [group]
            default_deps = group_base
        else:
            current_group = None
            default_deps = anchor
            anchor = [name]

        if "depends_on" in spec:
            depends_on = spec["depends_on"] or []
            if isinstance(depends_on, str):
                depends_on = [depends_on]
        else:
            depends_on = default_deps

        stages.append(
            StageDefinition(
                name=name,
                action=_parse_action(name, spec, targets),
                depends_on=tuple(str(d) for d in depends_on),
                condition=StageCondition.from_spec(spec["when"]) if spec.get("when") is not None else None,
                parallel_group=group,
                retryable="retry" in spec and spec["retry"] not in (None, False, 0),
                retry=_parse_retry(spec.get("retry")),
                skip_policy=_enum(SkipPolicy, spec.get("skip_policy", SkipPolicy.SKIP_IS_SUCCESS.value), "skipPolicy"),
                non_blocking=bool(spec.get("non_blocking", False)),
                approval=_parse_approval(spec.get("approval")),
                timeout=_optional_float(spec.get("timeout")),
            )
        )

    return stages


def _parse_action(name: str, spec: Mapping[str, Any], targets: Mapping[str, DeploymentTarget]):
    kinds = [key for key in ("run", "deploy", "rollback") if spec.get(key)]
    if len(kinds) > 1:
        raise PipelineDefinitionError(
            f"Stage '{name}' may only define one of run/deploy/rollback, got {kinds}",
            context={"stage": name},
        )
    if not kinds:
        return None

    kind = kinds[0]
    if kind == "run":
        command = spec["run"]
        if isinstance(command, list):
            command = " && ".join(str(c) for c in command)
        timeout = _optional_float(spec.get("timeout"))
        return CommandAction(str(command), cwd=spec.get("cwd"), timeout=timeout)

    value = spec[kind]
    if isinstance(value, str):
        value = {"target": value}
    if not isinstance(value, Mapping) or not value.get("target"):
        raise PipelineDefinitionError(f"Stage '{name}': '{kind}' needs a target", context={"stage": name})
    target = str(value["target"])
    if target not in targets:
        raise PipelineDefinitionError(
            f"Stage '{name}' references unknown target '{target}'",
            context={"stage": name, "target": target},
        )
    if kind == "deploy":
        return DeployAction(target, version=str(value.get("version", "${BUILD_ID}")))
    return RollbackAction(target)


def _parse_retry(value: Any) -> RetryPolicy:
    if value in (None, False, 0):
        return RetryPolicy(max_attempts=1)
    if value is True:
        return RetryPolicy(max_attempts=settings.default_retry_attempts, delay=settings.default_retry_delay)
    if isinstance(value, int):
        return RetryPolicy(max_attempts=value, delay=settings.default_retry_delay)
    if not isinstance(value, Mapping):
        raise PipelineDefinitionError(f"Invalid retry block: {value!r}")

    value = _normalize(value, {"attempts", "backoff", "delay", "max_delay"}, "retry")
    backoff = str(value.get("backoff", "exponential")).lower()
    if backoff not in ("fixed", "exponential"):
        raise PipelineDefinitionError(f"retry.backoff must be 'fixed' or 'exponential', got '{backoff}'")
    return RetryPolicy(
        max_attempts=int(value.get("attempts", settings.default_retry_attempts)),
        backoff=backoff,
        delay=float(value.get("delay", settings.default_retry_delay)),
        max_delay=float(value.get("max_delay", 300.0)),
    )


def _parse_approval(value: Any) -> Optional[ApprovalConfig]:
    if value in (None, False):
        return None
    if value is True:
        return ApprovalConfig()
    if isinstance(value, str):
        return ApprovalConfig(message=value)
    if not isinstance(value, Mapping):
        raise PipelineDefinitionError(f"Invalid approval block: {value!r}")
    value = _normalize(value, {"message", "timeout"}, "approval")
    return ApprovalConfig(
        message=str(value.get("message", "Proceed?")),
        timeout=_optional_float(value.get("timeout")),
    )


def _parse_target(name: str, spec: Any) -> DeploymentTarget:
    spec = _normalize(spec or {}, _TARGET_KEYS, f"target '{name}'")
    return DeploymentTarget(
        name=str(name),
        current_version=_optional_str(spec.get("current_version")),
        rollback_version=_optional_str(spec.get("rollback_version")),
        health_check_url=spec.get("health_check_url"),
        health_command=spec.get("health_command"),
        deploy_command=spec.get("deploy_command"),
        health_timeout=_optional_float(spec.get("health_timeout")),
        poll_interval=_optional_float(spec.get("poll_interval")),
    )


def _normalize(spec: Any, allowed: set[str], where: str) -> dict[str, Any]:
    """Shallow camelCase -> snake_case key conversion with unknown-key check."""
    if not isinstance(spec, Mapping):
        raise PipelineDefinitionError(f"{where} must be a mapping")
    normalized = {to_snake_case(str(key)).replace("-", "_"): value for key, value in spec.items()}
    unknown = set(normalized) - allowed
    if unknown:
        raise PipelineDefinitionError(f"Unknown keys in {where}: {sorted(unknown)}")
    return normalized


def _enum(enum_type, value: Any, key: str):
    try:
        return enum_type(str(value).lower().replace("-", "_"))
    except ValueError:
        valid = [member.value for member in enum_type]
        raise PipelineDefinitionError(f"Invalid {key} '{value}', expected one of {valid}")


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
