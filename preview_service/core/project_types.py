"""
Project type detection and per-type build strategies.

Detection order (first match wins):
1. No package.json -> static
2. vite.config.{js,ts,mjs} -> vite
3. next.config.{js,ts,mjs} -> nextjs
4. dependency "next" -> nextjs
5. dependency "vite" or "@vitejs/plugin-react" -> vite
6. dependency "react" -> react
7. otherwise -> static

Every command is an argv list. No shell=True anywhere.
"""
import json
import logging
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from preview_service.core.errors import BuildValidationError

logger = logging.getLogger(__name__)

MANIFEST_NAME = "package.json"

VITE_CONFIGS = ("vite.config.js", "vite.config.ts", "vite.config.mjs")
NEXT_CONFIGS = ("next.config.js", "next.config.ts", "next.config.mjs")

# Lifecycle scripts that would run arbitrary code during install
DANGEROUS_SCRIPTS = ("preinstall", "install", "postinstall")

# Type-check candidates in order; failures of the last two do not count
CHECK_SCRIPTS = ("type-check", "tsc", "type", "lint", "build")
NON_CRITICAL_CHECKS = frozenset(["lint", "build"])
TSC_FALLBACK = ["npx", "tsc", "--noEmit"]


class ProjectType(str, Enum):
    """Detected project type."""
    STATIC = "static"
    REACT = "react"
    VITE = "vite"
    NEXTJS = "nextjs"


@dataclass
class CheckCommand:
    """One type-check attempt."""
    name: str
    command: list[str]
    critical: bool = True


@dataclass
class ServeCommand:
    """How to start the preview server."""
    command: list[str]
    env: dict[str, str]


# =============================================================================
# Manifest helpers
# =============================================================================

def load_manifest(root: Path) -> Optional[dict]:
    """Parsed package.json, {} if unreadable, None if absent."""
    path = root / MANIFEST_NAME
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        logger.warning("manifest_unreadable")
        return {}
    return data if isinstance(data, dict) else {}


def manifest_dependencies(manifest: Optional[dict]) -> dict:
    """dependencies merged with devDependencies."""
    if not manifest:
        return {}
    deps: dict = {}
    for key in ("dependencies", "devDependencies"):
        section = manifest.get(key)
        if isinstance(section, dict):
            deps.update(section)
    return deps


def manifest_scripts(manifest: Optional[dict]) -> dict:
    if not manifest:
        return {}
    scripts = manifest.get("scripts")
    return scripts if isinstance(scripts, dict) else {}


def detect_project_type(root: Path) -> tuple[ProjectType, Optional[dict]]:
    """
    Detect the project type from files under root.

    Returns:
        Tuple of (ProjectType, parsed manifest or None)
    """
    manifest = load_manifest(root)
    if manifest is None:
        return ProjectType.STATIC, None

    if any((root / name).exists() for name in VITE_CONFIGS):
        return ProjectType.VITE, manifest
    if any((root / name).exists() for name in NEXT_CONFIGS):
        return ProjectType.NEXTJS, manifest

    deps = manifest_dependencies(manifest)
    if "next" in deps:
        return ProjectType.NEXTJS, manifest
    if "vite" in deps or "@vitejs/plugin-react" in deps:
        return ProjectType.VITE, manifest
    if "react" in deps:
        return ProjectType.REACT, manifest
    return ProjectType.STATIC, manifest


# =============================================================================
# Strategies
# =============================================================================

class BuildStrategy:
    """Install, check, build and serve commands for one project type."""

    project_type: ProjectType = ProjectType.STATIC
    package_manager: Optional[str] = None
    # Any one of these must be declared in the manifest
    required_dependencies: tuple[str, ...] = ()

    def validate(self, root: Path, manifest: Optional[dict]) -> None:
        """
        Reject projects before any process is spawned.

        Raises:
            BuildValidationError: missing manifest, install-time scripts, or
                missing framework dependency
        """
        if manifest is None:
            raise BuildValidationError(f"{MANIFEST_NAME} is required for {self.project_type.value} projects")

        scripts = manifest_scripts(manifest)
        dangerous = [name for name in DANGEROUS_SCRIPTS if name in scripts]
        if dangerous:
            raise BuildValidationError(f"Install scripts are not allowed: {', '.join(dangerous)}")

        deps = manifest_dependencies(manifest)
        if self.required_dependencies and not any(dep in deps for dep in self.required_dependencies):
            raise BuildValidationError(
                f"Missing required dependency for {self.project_type.value}: "
                f"{' or '.join(self.required_dependencies)}"
            )

    def install_command(self) -> Optional[list[str]]:
        if not self.package_manager:
            return None
        return [self.package_manager, "install"]

    def check_plan(self, root: Path, manifest: Optional[dict]) -> list[CheckCommand]:
        """
        Type-check attempts, or [] when the project is not TypeScript.

        Missing type-check scripts are replaced by a direct compiler run;
        lint and build only run if the script exists.
        """
        if not manifest or not (root / "tsconfig.json").is_file():
            return []
        if "typescript" not in manifest_dependencies(manifest):
            return []

        scripts = manifest_scripts(manifest)
        runner = self.package_manager or "npm"
        plan = [
            CheckCommand(name, [runner, "run", name], name not in NON_CRITICAL_CHECKS)
            for name in CHECK_SCRIPTS
            if name in scripts
        ]
        if not any(check.critical for check in plan):
            plan.insert(0, CheckCommand("tsc", list(TSC_FALLBACK)))
        return plan

    def build_command(self) -> Optional[list[str]]:
        return None

    def serve_command(self, port: int, host: str, manifest: Optional[dict]) -> ServeCommand:
        raise NotImplementedError

    @staticmethod
    def serve_env(port: int, host: str) -> dict[str, str]:
        return {"PORT": str(port), "HOST": host, "BROWSER": "none"}


class StaticStrategy(BuildStrategy):
    """Plain files served as-is; no install or build."""

    project_type = ProjectType.STATIC

    def validate(self, root: Path, manifest: Optional[dict]) -> None:
        if manifest:
            scripts = manifest_scripts(manifest)
            dangerous = [name for name in DANGEROUS_SCRIPTS if name in scripts]
            if dangerous:
                raise BuildValidationError(f"Install scripts are not allowed: {', '.join(dangerous)}")

    def check_plan(self, root: Path, manifest: Optional[dict]) -> list[CheckCommand]:
        return []

    def serve_command(self, port: int, host: str, manifest: Optional[dict]) -> ServeCommand:
        return ServeCommand(
            command=[sys.executable, "-m", "http.server", str(port), "--bind", host],
            env=self.serve_env(port, host),
        )


class BundlerFrameworkStrategy(BuildStrategy):
    """Vite dev server."""

    project_type = ProjectType.VITE
    package_manager = "npm"
    required_dependencies = ("vite", "@vitejs/plugin-react")

    def serve_command(self, port: int, host: str, manifest: Optional[dict]) -> ServeCommand:
        if "dev" in manifest_scripts(manifest):
            command = ["npm", "run", "dev", "--", "--port", str(port), "--host", host]
        else:
            command = ["npx", "vite", "--port", str(port), "--host", host]
        return ServeCommand(command=command, env=self.serve_env(port, host))


class GenericFrameworkStrategy(BundlerFrameworkStrategy):
    """React app without a recognizable meta framework."""

    project_type = ProjectType.REACT
    required_dependencies = ("react",)

    def serve_command(self, port: int, host: str, manifest: Optional[dict]) -> ServeCommand:
        scripts = manifest_scripts(manifest)
        if "dev" not in scripts and "start" in scripts:
            # Create-react-app style servers read PORT/HOST from the environment
            return ServeCommand(command=["npm", "start"], env=self.serve_env(port, host))
        return super().serve_command(port, host, manifest)


class MetaFrameworkStrategy(BuildStrategy):
    """Next.js: production build, then next start."""

    project_type = ProjectType.NEXTJS
    package_manager = "pnpm"
    required_dependencies = ("next",)

    def build_command(self) -> Optional[list[str]]:
        return ["pnpm", "run", "build"]

    def serve_command(self, port: int, host: str, manifest: Optional[dict]) -> ServeCommand:
        return ServeCommand(
            command=["pnpm", "start", "-p", str(port), "-H", host],
            env=self.serve_env(port, host),
        )


STRATEGIES: dict[ProjectType, BuildStrategy] = {
    ProjectType.STATIC: StaticStrategy(),
    ProjectType.REACT: GenericFrameworkStrategy(),
    ProjectType.VITE: BundlerFrameworkStrategy(),
    ProjectType.NEXTJS: MetaFrameworkStrategy(),
}


def get_strategy(project_type: ProjectType) -> BuildStrategy:
    """Strategy for a detected project type."""
    return STRATEGIES[project_type]
