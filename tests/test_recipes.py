"""
Tests for job recipes: rendering, stack names and YAML overrides
"""

import pytest

from jobengine.errors import InvalidJobRequest, UnknownJobType
from jobengine.recipes import (
    DEFAULT_CHANGE_PATTERN,
    JobRecipe,
    Phase,
    RecipeRegistry,
    builtin_recipes,
    load_recipes,
    stack_name,
)


class TestStackName:

    def test_alias(self):
        aliases = {"static-backend": "backend"}
        assert stack_name("static-backend", "dev", aliases) == "backend"

    def test_environment_suffix(self):
        assert stack_name("frontend", "dev-alice", {}) == "frontend-dev-alice"

    def test_no_environment(self):
        assert stack_name("frontend", None, {}) == "frontend"


class TestBuiltinRecipes:

    def setup_method(self):
        self.registry = RecipeRegistry()

    def test_known_types(self):
        for name in ("build", "build-frontend", "diff", "synth", "deploy",
                     "deploy-lambda", "tail-logs", "build-deploy-all"):
            assert name in self.registry

    def test_unknown_type(self):
        with pytest.raises(UnknownJobType):
            self.registry.get("teleport")

    def test_deploy_plan(self):
        plan = self.registry.get("deploy").plan(
            "frontend", environment="dev-alice", workdir="/repo", stack_aliases={}, stage="qa",
        )
        preview, apply = plan.phases
        assert preview.preview is True
        assert preview.argv == ["yarn", "cdk", "diff", "frontend-dev-alice"]
        assert preview.cwd == "/repo/infrastructure"
        assert preview.ok_exit_codes == (0, 1)
        assert preview.change_pattern == DEFAULT_CHANGE_PATTERN
        assert apply.argv[-2:] == ["--require-approval", "never"]
        assert apply.ok_exit_codes == (0,)
        assert plan.env["NO_COLOR"] == "1"
        assert plan.env["STACK"] == "frontend"
        assert plan.env["SUFFIX"] == "dev-alice"
        assert plan.env["INFRA_STAGE"] == "qa"

    def test_deploys_flag(self):
        recipes = builtin_recipes()
        assert recipes["deploy"].deploys
        assert recipes["deploy-lambda"].deploys
        assert recipes["build-deploy-all"].deploys
        assert not recipes["build"].deploys
        assert recipes["deploy"].requires_approval
        assert not recipes["diff"].requires_approval

    def test_deploy_lambda_requires_params(self):
        recipe = self.registry.get("deploy-lambda")
        with pytest.raises(InvalidJobRequest) as exc:
            recipe.plan("payments", params={"zip_path": "dist/payments.zip"})
        assert "aws_function_name" in str(exc.value)

        plan = recipe.plan("payments", params={"aws_function_name": "payments-dev", "zip_path": "dist/p.zip"})
        argv = plan.phases[0].argv
        assert "payments-dev" in argv
        assert "fileb://dist/p.zip" in argv

    def test_tail_logs_targets_function_log_group(self):
        plan = self.registry.get("tail-logs").plan("payments-dev")
        assert "/aws/lambda/payments-dev" in plan.phases[0].argv
        assert "--follow" in plan.phases[0].argv


class TestChangeDetection:

    def test_cdk_markers(self):
        phase = Phase(argv=["x"], preview=True).render({})
        assert phase.has_changes(["Resources", "[+] AWS::S3::Bucket Bucket"])
        assert phase.has_changes(["[~] AWS::Lambda::Function Fn"])
        assert phase.has_changes(["IAM Statement Changes"])
        assert not phase.has_changes(["Stack frontend-dev", "There were no differences"])

    def test_missing_template_key(self):
        with pytest.raises(InvalidJobRequest):
            Phase(argv=["echo", "{nope}"]).render({})


class TestYamlRecipes:

    def test_load_and_override(self, tmp_path):
        path = tmp_path / "recipes.yaml"
        path.write_text(
            "recipes:\n"
            "  lint:\n"
            "    description: Lint a package\n"
            "    phases:\n"
            "      - argv: yarn lint {target}\n"
            "        cwd: '{workdir}/backend'\n"
            "  build:\n"
            "    phases:\n"
            "      - argv: [make, '{target}']\n"
            "  release:\n"
            "    deploys: true\n"
            "    phases:\n"
            "      - argv: [./plan.sh]\n"
            "        preview: true\n"
            "      - argv: [./apply.sh]\n"
        )
        loaded = load_recipes(str(path))
        assert set(loaded) == {"lint", "build", "release"}
        assert loaded["lint"].phases[0].argv == ["yarn", "lint", "{target}"]
        assert loaded["release"].phases[0].ok_exit_codes == (0, 1)
        assert loaded["release"].deploys

        registry = RecipeRegistry.from_config(str(path))
        assert registry.get("build").phases[0].argv == ["make", "{target}"]
        assert "deploy" in registry
        assert registry.get("lint").plan("api", workdir="/repo").phases[0].cwd == "/repo/backend"

    def test_recipe_without_phases(self):
        with pytest.raises(ValueError):
            JobRecipe.from_dict("empty", {"phases": []})
