# config.py
from __future__ import annotations

import os
import runpy
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    ValidationError,
    field_validator,
    model_validator,
)

from .dag import execution_order
from .errors import ConfigurationError
from .matrix import DEFAULT_TARGET_ENV, expand
from .model import (
    CargoInstall,
    CommandInstall,
    Job,
    PipInstall,
    Preinstalled,
    RustupInstall,
    SecretSpec,
    Step,
    ToolSpec,
    TriggerSpec,
    Workflow,
)
from .trigger import TriggerEvaluator

DEFAULT_SETTINGS_PATH = ".releaseci/config.yaml"
WORKFLOW_FILENAMES = ("releaseci.yml", "releaseci.yaml", "release_workflow.py")


def _scalar_to_str(v: Any) -> Any:
    # YAML turns `JOBS: 4` into an int and `version: 1.70` into the float 1.7;
    # the float has already lost digits, so it has to be quoted in the file
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, float):
        raise ValueError(f"{v!r} was read as a number; quote it (e.g. \"1.70\") to keep it as written")
    if isinstance(v, int):
        return str(v)
    return v


def _one_or_many(v: Any) -> Any:
    if isinstance(v, str):
        return [v]
    return v


Str = Annotated[str, BeforeValidator(_scalar_to_str)]
StrList = Annotated[List[Str], BeforeValidator(_one_or_many)]


# ---------------------------------------------------------------------
# Orchestrator settings
# ---------------------------------------------------------------------

class Settings(BaseModel):
    """Orchestrator-level settings (not part of any workflow)."""

    workdir: str = "."
    database_url: Optional[str] = None
    output_tail: int = 4000
    kill_grace: float = 5.0


def load_settings(path: Optional[str] = None) -> Settings:
    """Load settings from YAML.

    Args:
        path: Optional path to config file. Falls back to RELEASECI_CONFIG env
            variable or '.releaseci/config.yaml' in the current directory.
    """
    config_path = path or os.getenv("RELEASECI_CONFIG", DEFAULT_SETTINGS_PATH)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        try:
            settings = Settings(**data)
        except ValidationError as e:
            raise ConfigurationError(f"invalid settings file {config_path}", details={"errors": _errors(e)}) from e
    else:
        settings = Settings()

    env_db_url = os.getenv("RELEASECI_DATABASE_URL")
    if env_db_url:
        settings.database_url = env_db_url
    env_workdir = os.getenv("RELEASECI_WORKDIR")
    if env_workdir:
        settings.workdir = env_workdir
    return settings


# ---------------------------------------------------------------------
# Workflow file schema (tagged variants, validated once)
# ---------------------------------------------------------------------

class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ShellStepConfig(_Strict):
    kind: Literal["shell"] = "shell"
    name: str
    run: str = Field(min_length=1)
    cwd: Optional[str] = None
    env: Dict[str, Str] = Field(default_factory=dict)
    secrets: StrList = Field(default_factory=list)
    requires_env: StrList = Field(default_factory=list)
    continue_on_error: bool = False
    retries: int = Field(0, ge=0)
    retry_backoff: float = Field(2.0, ge=0)
    timeout: Optional[float] = Field(None, gt=0)
    targets: Optional[StrList] = None
    target_env: str = DEFAULT_TARGET_ENV


class CheckoutStepConfig(_Strict):
    kind: Literal["checkout"]
    name: str = "Checkout"
    repo: Optional[str] = None
    ref: Optional[str] = None
    path: str = "."


def _step_kind(v: Any) -> str:
    if isinstance(v, dict):
        return v.get("kind", "shell")
    return getattr(v, "kind", "shell")


StepConfig = Annotated[
    Union[
        Annotated[ShellStepConfig, Tag("shell")],
        Annotated[CheckoutStepConfig, Tag("checkout")],
    ],
    Discriminator(_step_kind),
]


class PreinstalledConfig(_Strict):
    method: Literal["preinstalled"] = "preinstalled"


class CargoConfig(_Strict):
    method: Literal["cargo"]
    locked: bool = False


class PipConfig(_Strict):
    method: Literal["pip"]
    package: Optional[str] = None


class RustupConfig(_Strict):
    method: Literal["rustup"]
    profile: str = "minimal"
    override: bool = False
    components: StrList = Field(default_factory=list)


class CommandConfig(_Strict):
    method: Literal["command"]
    command: str = Field(min_length=1)


InstallConfig = Annotated[
    Union[PreinstalledConfig, CargoConfig, PipConfig, RustupConfig, CommandConfig],
    Field(discriminator="method"),
]


class ToolConfig(_Strict):
    name: str
    version: Str = "*"
    install: InstallConfig = Field(default_factory=PreinstalledConfig)
    binary: Optional[str] = None

    @field_validator("install", mode="before")
    @classmethod
    def _shorthand(cls, v: Any) -> Any:
        # `install: cargo` == `install: {method: cargo}`
        if isinstance(v, str):
            return {"method": v}
        return v


class TriggerConfig(_Strict):
    tags: Optional[StrList] = None
    branches: Optional[StrList] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "TriggerConfig":
        if (self.tags is None) == (self.branches is None):
            raise ValueError("trigger must set exactly one of 'tags' or 'branches'")
        return self


class SecretConfig(_Strict):
    from_env: Optional[str] = None
    required: bool = True


class JobConfig(_Strict):
    steps: List[StepConfig] = Field(min_length=1)
    needs: StrList = Field(default_factory=list)
    env: Dict[str, Str] = Field(default_factory=dict)
    requires: StrList = Field(default_factory=list)


class WorkflowConfig(_Strict):
    name: str = "release"
    trigger: TriggerConfig = Field(default_factory=lambda: TriggerConfig(tags=["*"]))
    tools: List[ToolConfig] = Field(default_factory=list)
    secrets: Dict[str, Union[SecretConfig, str, None]] = Field(default_factory=dict)
    env: Dict[str, Str] = Field(default_factory=dict)
    jobs: Dict[str, JobConfig] = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _on_key(cls, data: Any) -> Any:
        # YAML 1.1 reads a bare `on:` key as boolean True
        if isinstance(data, dict):
            data = dict(data)
            for key in (True, "on"):
                if key in data:
                    if "trigger" in data:
                        raise ValueError("use either 'on' or 'trigger', not both")
                    data["trigger"] = data.pop(key)
            trigger = data.get("trigger")
            # accept the familiar `on: {push: {tags: [...]}}` shape too
            if isinstance(trigger, dict) and set(trigger) == {"push"}:
                data["trigger"] = trigger["push"]
        return data


def _errors(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def _install(cfg: Any):
    if isinstance(cfg, CargoConfig):
        return CargoInstall(locked=cfg.locked)
    if isinstance(cfg, PipConfig):
        return PipInstall(package=cfg.package)
    if isinstance(cfg, RustupConfig):
        return RustupInstall(profile=cfg.profile, override=cfg.override, components=tuple(cfg.components))
    if isinstance(cfg, CommandConfig):
        return CommandInstall(command=cfg.command)
    return Preinstalled()


def _steps(cfg: Any) -> List[Step]:
    if isinstance(cfg, CheckoutStepConfig):
        data = {"path": cfg.path}
        if cfg.repo:
            data["repo"] = cfg.repo
        if cfg.ref:
            data["ref"] = cfg.ref
        return [Step(name=cfg.name, kind="checkout", data=data)]

    step = Step(
        name=cfg.name,
        run=cfg.run,
        cwd=cfg.cwd,
        env=dict(cfg.env),
        secrets=tuple(cfg.secrets),
        requires_env=tuple(cfg.requires_env),
        continue_on_error=cfg.continue_on_error,
        retries=cfg.retries,
        retry_backoff=cfg.retry_backoff,
        timeout=cfg.timeout,
    )
    if cfg.targets is None:
        return [step]
    return expand(step, cfg.targets, cfg.target_env)


def to_workflow(cfg: WorkflowConfig) -> Workflow:
    if cfg.trigger.tags is not None:
        trigger = TriggerSpec(event="tag", patterns=tuple(cfg.trigger.tags))
    else:
        trigger = TriggerSpec(event="branch", patterns=tuple(cfg.trigger.branches or ()))

    secrets: List[SecretSpec] = []
    for name, value in cfg.secrets.items():
        if value is None:
            secrets.append(SecretSpec(name=name))
        elif isinstance(value, str):
            secrets.append(SecretSpec(name=name, from_env=value))
        else:
            secrets.append(SecretSpec(name=name, from_env=value.from_env, required=value.required))

    jobs: List[Job] = []
    for name, jc in cfg.jobs.items():
        steps: List[Step] = []
        for sc in jc.steps:
            steps.extend(_steps(sc))
        jobs.append(Job(name=name, steps=steps, needs=list(jc.needs), env=dict(jc.env), requires=list(jc.requires)))

    return Workflow(
        name=cfg.name,
        jobs=jobs,
        trigger=trigger,
        tools=[ToolSpec(name=t.name, version=t.version, install=_install(t.install), binary=t.binary) for t in cfg.tools],
        secrets=secrets,
        env=dict(cfg.env),
    )


def parse_workflow(data: Any, *, source: str = "<workflow>") -> Workflow:
    """Parse a decoded YAML document into a validated Workflow."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"{source}: workflow must be a mapping, got {type(data).__name__}")
    try:
        cfg = WorkflowConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"{source}: invalid workflow", details={"errors": _errors(e)}) from e
    return validate_workflow(to_workflow(cfg))


# ---------------------------------------------------------------------
# Eager validation (shared by YAML and Python workflows)
# ---------------------------------------------------------------------

def validate_workflow(workflow: Workflow) -> Workflow:
    """
    Check everything that can be checked without running anything.
    Returns the workflow unchanged so it can be chained.
    """
    if not isinstance(workflow, Workflow):
        raise ConfigurationError(f"expected a Workflow, got {type(workflow).__name__}")

    TriggerEvaluator(workflow.trigger)

    if not workflow.jobs:
        raise ConfigurationError("workflow has no jobs")
    execution_order(workflow.jobs)

    tool_names = [t.name for t in workflow.tools]
    if len(set(tool_names)) != len(tool_names):
        raise ConfigurationError(f"duplicate tool names: {sorted({n for n in tool_names if tool_names.count(n) > 1})}")

    secret_names = {s.name for s in workflow.secrets}
    if len(secret_names) != len(workflow.secrets):
        raise ConfigurationError("duplicate secret names")

    for j in workflow.jobs:
        if not j.steps:
            raise ConfigurationError(f"job {j.name!r} has no steps", job=j.name)
        unknown_tools = sorted(set(j.requires) - set(tool_names))
        if unknown_tools:
            raise ConfigurationError(f"job requires undeclared tool(s): {unknown_tools}", job=j.name)

        seen = set()
        for s in j.steps:
            if s.name in seen:
                raise ConfigurationError(f"duplicate step name {s.name!r}", job=j.name, step=s.name)
            seen.add(s.name)
            if s.kind not in ("shell", "checkout"):
                raise ConfigurationError(f"unknown step kind {s.kind!r}", job=j.name, step=s.name)
            if s.kind == "shell" and not s.run.strip():
                raise ConfigurationError("shell step has an empty command", job=j.name, step=s.name)
            if s.retries < 0 or s.retry_backoff < 0:
                raise ConfigurationError("retries/retry_backoff must be >= 0", job=j.name, step=s.name)
            if s.timeout is not None and s.timeout <= 0:
                raise ConfigurationError("timeout must be > 0", job=j.name, step=s.name)
            undeclared = sorted(set(s.secrets) - secret_names)
            if undeclared:
                raise ConfigurationError(
                    f"step uses undeclared secret(s): {undeclared}", job=j.name, step=s.name
                )

    return workflow


# ---------------------------------------------------------------------
# Workflow loading (YAML file or Python module)
# ---------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load and validate a workflow.

    `.yml` / `.yaml` files are parsed declaratively. `.py` files must define
    either:
      - workflow() -> Workflow
      - WORKFLOW = Workflow(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        try:
            data = yaml.safe_load(wf_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{wf_path.name}: invalid YAML: {e}") from e
        return parse_workflow(data, source=wf_path.name)

    if wf_path.suffix != ".py":
        raise ConfigurationError(f"workflow must be a .yml/.yaml or .py file, got: {wf_path.name}")

    module_name = f"releaseci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    workflow = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        workflow = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        workflow = globals_dict["WORKFLOW"]

    if not isinstance(workflow, Workflow):
        raise ConfigurationError(
            f"{wf_path.name}: workflow module must define workflow() -> Workflow or WORKFLOW = Workflow(...). "
            "Build one with `from releaseci import wf, job, sh`."
        )
    return validate_workflow(workflow)


def find_workflow_files(directory: str | Path = ".") -> List[Path]:
    """Default workflow files plus any *_workflow.py in `directory`."""
    d = Path(directory)
    found: List[Path] = [d / name for name in WORKFLOW_FILENAMES if (d / name).exists()]
    for p in sorted(d.glob("*_workflow.py")):
        if p not in found:
            found.append(p)
    return found
