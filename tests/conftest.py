# tests/conftest.py
import asyncio
import os
import sys
import time

import pytest
import pytest_asyncio

from jobengine.config import RuntimeConfig
from jobengine.controller import JobController
from jobengine.recipes import JobRecipe, Phase, RecipeRegistry

PY = sys.executable


def py(code: str):
    """argv running a Python snippet; braces must be doubled (templates)"""
    return [PY, "-c", code]


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    # an unreaped zombie is dead for our purposes
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except (OSError, IndexError):
        return True


def wait_pid_gone(pid: int, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    return not pid_alive(pid)


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02):
    """Poll predicate on the running loop until it returns truthy"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        value = predicate()
        if value:
            return value
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def make_recipes() -> RecipeRegistry:
    return RecipeRegistry({
        "quick": JobRecipe(
            name="quick",
            phases=[Phase(argv=py("print('> building'); print('done')"))],
        ),
        "build": JobRecipe(
            name="build",
            phases=[Phase(argv=py(
                "import time; print('> building {target}', flush=True); "
                "print('step 2', flush=True); time.sleep(30); print('never')"
            ))],
        ),
        "forking": JobRecipe(
            name="forking",
            phases=[Phase(argv=py(
                "import subprocess, time; p = subprocess.Popen(['sleep', '60']); "
                "print('child', p.pid, flush=True); time.sleep(60)"
            ))],
        ),
        "stubborn": JobRecipe(
            name="stubborn",
            phases=[Phase(argv=["sh", "-c", "trap '' TERM; echo ready; sleep 60"])],
        ),
        "fail": JobRecipe(
            name="fail",
            phases=[Phase(argv=py("import sys; print('compiling'); print('error: boom'); sys.exit(3)"))],
        ),
        "progress": JobRecipe(
            name="progress",
            phases=[Phase(argv=py("print('10%'); print('60%'); print('40%')"))],
        ),
        "missing": JobRecipe(
            name="missing",
            phases=[Phase(argv=["/nonexistent/definitely-not-a-tool"])],
        ),
        "deploy": JobRecipe(
            name="deploy",
            deploys=True,
            phases=[
                Phase(
                    argv=py("import sys; print('+ resourceX'); sys.exit(1)"),
                    preview=True,
                    ok_exit_codes=(0, 1),
                ),
                Phase(argv=py(
                    "import pathlib; pathlib.Path(r'{marker}').write_text('applied'); print('deployed {target}')"
                )),
            ],
        ),
        "deploy-nochange": JobRecipe(
            name="deploy-nochange",
            deploys=True,
            phases=[
                Phase(argv=py("print('There were no differences')"), preview=True, ok_exit_codes=(0, 1)),
                Phase(argv=py("print('should not run')")),
            ],
        ),
        "deploy-badpreview": JobRecipe(
            name="deploy-badpreview",
            deploys=True,
            phases=[
                Phase(argv=py("import sys; print('synth failed'); sys.exit(2)"), preview=True, ok_exit_codes=(0, 1)),
                Phase(argv=py("print('should not run')")),
            ],
        ),
    })


@pytest.fixture
def recipes():
    return make_recipes()


@pytest.fixture
def marker(tmp_path):
    return str(tmp_path / "applied.txt")


@pytest_asyncio.fixture
async def controller(recipes):
    """Engine with short timeouts; stopped after the test"""
    engine = JobController(
        recipes=recipes,
        runtime=RuntimeConfig(environment="dev-alice", protected=["prod"]),
        grace=0.5,
        drain_timeout=0.5,
        approval_timeout=0,
        max_active_jobs=0,
    )
    yield engine
    await engine.shutdown()


@pytest.fixture
def client(recipes, tmp_path):
    """TestClient over an app whose engine runs the test recipes"""
    from fastapi.testclient import TestClient
    from jobengine.history import JobHistory
    from jobengine.main import create_app

    def factory():
        history = JobHistory(f"sqlite:///{tmp_path / 'jobs.db'}", limit=50)
        history.init()
        return JobController(
            recipes=recipes,
            runtime=RuntimeConfig(environment="dev-alice", protected=["prod", "production"]),
            history=history,
            grace=0.5,
            drain_timeout=0.5,
        )

    app = create_app(controller_factory=factory, configure_logging=False)
    with TestClient(app) as test_client:
        yield test_client
