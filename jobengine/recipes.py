"""
Job type registry.

A recipe says which commands back a job type and in what order. Argument,
working directory and environment values are format templates filled from
the request (target, environment, params) and the service configuration.
A phase marked as preview stops at an approval checkpoint once it has run.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from . import config
from .errors import InvalidJobRequest, UnknownJobType

logger = logging.getLogger("jobengine.recipes")

# cdk diff markers for added/removed/modified resources and security changes
DEFAULT_CHANGE_PATTERN = r"^\s*(\[[+\-~]\]|[+\-~]\s)|IAM Statement Changes|Security Group Changes"

BASE_ENV = {
    # output is rendered in a browser, not a terminal
    "NO_COLOR": "1",
    "FORCE_COLOR": "0",
}

CDK_ENV = {"NODE_OPTIONS": "--max_old_space_size=8192"}


def _render(template: str, values: Mapping[str, Any]) -> str:
    try:
        return template.format_map(values)
    except KeyError as e:
        raise InvalidJobRequest(f"Missing parameter: {e.args[0]}")
    except (ValueError, IndexError) as e:
        raise InvalidJobRequest(f"Bad template {template!r}: {e}")


@dataclass
class Phase:
    argv: List[str]
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    ok_exit_codes: Tuple[int, ...] = (0,)
    preview: bool = False
    change_pattern: Optional[str] = None

    def render(self, values: Mapping[str, Any]) -> "Phase":
        pattern = self.change_pattern
        if self.preview and pattern is None:
            pattern = DEFAULT_CHANGE_PATTERN
        return Phase(
            argv=[_render(arg, values) for arg in self.argv],
            cwd=_render(self.cwd, values) if self.cwd else None,
            env={k: _render(v, values) for k, v in self.env.items()},
            ok_exit_codes=tuple(self.ok_exit_codes),
            preview=self.preview,
            change_pattern=pattern,
        )

    def has_changes(self, lines: List[str]) -> bool:
        if not self.change_pattern:
            return bool(lines)
        regex = re.compile(self.change_pattern)
        return any(regex.search(line) for line in lines)

    @property
    def command(self) -> str:
        return " ".join(self.argv)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Phase":
        argv = data.get("argv")
        if isinstance(argv, str):
            argv = argv.split()
        if not argv:
            raise ValueError("phase needs a non-empty argv")
        preview = bool(data.get("preview", False))
        default_codes = (0, 1) if preview else (0,)
        return cls(
            argv=[str(a) for a in argv],
            cwd=data.get("cwd"),
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            ok_exit_codes=tuple(int(c) for c in data.get("ok_exit_codes", default_codes)),
            preview=preview,
            change_pattern=data.get("change_pattern"),
        )


@dataclass
class JobPlan:
    """A recipe rendered for one request, ready for the supervisor"""
    job_type: str
    phases: List[Phase]
    env: Dict[str, str]


@dataclass
class JobRecipe:
    name: str
    phases: List[Phase]
    deploys: bool = False
    required_params: List[str] = field(default_factory=list)
    description: str = ""

    @property
    def requires_approval(self) -> bool:
        return any(p.preview for p in self.phases)

    def plan(
        self,
        target: str,
        environment: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        stage: Optional[str] = None,
        workdir: Optional[str] = None,
        stack_aliases: Optional[Dict[str, str]] = None,
    ) -> JobPlan:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        missing = [p for p in self.required_params if not str(params.get(p, "")).strip()]
        if missing:
            raise InvalidJobRequest(f"Missing {', '.join(missing)} for {self.name} job")

        stage = stage or config.INFRA_STAGE
        values = {
            **{str(k): str(v) for k, v in params.items()},
            "target": target,
            "environment": environment or "",
            "stage": stage,
            "workdir": workdir or config.JOB_WORKDIR,
            "stack": stack_name(target, environment, stack_aliases),
        }
        env = dict(os.environ)
        env.update(BASE_ENV)
        env.update({
            "STACK": target,
            "SUFFIX": environment or "",
            "INFRA_STAGE": stage,
            "REACT_APP_STAGE": stage,
        })
        return JobPlan(
            job_type=self.name,
            phases=[phase.render(values) for phase in self.phases],
            env=env,
        )

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "JobRecipe":
        phases = [Phase.from_dict(p) for p in data.get("phases") or []]
        if not phases:
            raise ValueError(f"recipe {name} has no phases")
        return cls(
            name=name,
            phases=phases,
            deploys=bool(data.get("deploys", False)),
            required_params=list(data.get("required_params") or []),
            description=data.get("description", ""),
        )


def stack_name(target: str, environment: Optional[str], aliases: Optional[Dict[str, str]] = None) -> str:
    """CDK stack for a target: alias if there is one, else target-environment"""
    aliases = config.STACK_ALIASES if aliases is None else aliases
    if target in aliases:
        return aliases[target]
    if environment:
        return f"{target}-{environment}"
    return target


def _cdk(command: str, *extra: str, stack: str = "{stack}", preview: bool = False) -> Phase:
    return Phase(
        argv=["yarn", "cdk", command, stack, *extra],
        cwd="{workdir}/infrastructure",
        env=dict(CDK_ENV),
        # cdk diff exits 1 when there are differences
        ok_exit_codes=(0, 1) if command == "diff" else (0,),
        preview=preview,
    )


def builtin_recipes() -> Dict[str, JobRecipe]:
    web = "{workdir}/clients/web"
    return {
        "build": JobRecipe(
            name="build",
            phases=[Phase(argv=["yarn", "build", "{target}"], cwd="{workdir}/backend")],
            description="Build one lambda, a lambda family, or all",
        ),
        "build-frontend": JobRecipe(
            name="build-frontend",
            phases=[
                Phase(argv=["yarn", "install", "--frozen-lockfile"], cwd=web),
                Phase(argv=["yarn", "build"], cwd=web),
            ],
        ),
        "diff": JobRecipe(name="diff", phases=[_cdk("diff")]),
        "synth": JobRecipe(name="synth", phases=[_cdk("synth")]),
        "deploy": JobRecipe(
            name="deploy",
            phases=[
                _cdk("diff", preview=True),
                _cdk("deploy", "--require-approval", "never"),
            ],
            deploys=True,
            description="cdk diff, wait for approval, cdk deploy",
        ),
        "deploy-lambda": JobRecipe(
            name="deploy-lambda",
            phases=[
                Phase(
                    argv=[
                        "aws", "lambda", "update-function-code",
                        "--function-name", "{aws_function_name}",
                        "--zip-file", "fileb://{zip_path}",
                        "--no-cli-pager",
                    ],
                    cwd="{workdir}/backend",
                ),
            ],
            deploys=True,
            required_params=["aws_function_name", "zip_path"],
        ),
        "tail-logs": JobRecipe(
            name="tail-logs",
            phases=[Phase(argv=["aws", "logs", "tail", "/aws/lambda/{target}", "--follow", "--format", "short"])],
            description="Follow a lambda's CloudWatch logs until cancelled",
        ),
        "build-deploy-all": JobRecipe(
            name="build-deploy-all",
            phases=[
                Phase(argv=["yarn", "build", "all"], cwd="{workdir}/backend"),
                _cdk("diff", stack="{target}", preview=True),
                _cdk("deploy", "--require-approval", "never", stack="{target}"),
            ],
            deploys=True,
            description="Build everything, then diff/approve/deploy the target stack",
        ),
    }


def load_recipes(path: str) -> Dict[str, JobRecipe]:
    """Read recipes from a YAML file with a top-level `recipes` mapping"""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    recipes = {}
    for name, body in (data.get("recipes") or {}).items():
        recipes[name] = JobRecipe.from_dict(name, body or {})
    logger.info(f"Loaded {len(recipes)} job recipes from {path}", extra={"component": "recipes"})
    return recipes


class RecipeRegistry:
    """Job types known to the engine"""

    def __init__(self, recipes: Optional[Dict[str, JobRecipe]] = None):
        self._recipes: Dict[str, JobRecipe] = dict(recipes if recipes is not None else builtin_recipes())

    @classmethod
    def from_config(cls, path: Optional[str] = None) -> "RecipeRegistry":
        registry = cls()
        path = path if path is not None else config.JOB_RECIPES_FILE
        if path:
            registry.register_all(load_recipes(path))
        return registry

    def register(self, recipe: JobRecipe):
        self._recipes[recipe.name] = recipe

    def register_all(self, recipes: Dict[str, JobRecipe]):
        for recipe in recipes.values():
            self.register(recipe)

    def get(self, job_type: str) -> JobRecipe:
        recipe = self._recipes.get(job_type)
        if recipe is None:
            raise UnknownJobType(job_type)
        return recipe

    def names(self) -> List[str]:
        return sorted(self._recipes)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._recipes
