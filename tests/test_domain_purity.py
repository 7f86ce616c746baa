"""
Layering guardrail tests.

These tests ensure the pure layers of deploy-spine don't import modules
that would couple them to a live engine or the network.

PURE MODULES (no I/O imports):
- deployspine.models      (declarative specs)
- deployspine.planner     (wave computation)
- deployspine.results     (outcome models)
- deployspine.cancellation

SUBPROCESS is only allowed in deployspine.engine: every container runtime
call goes through the ``ContainerEngine`` protocol.
"""

import ast
from pathlib import Path

PACKAGE_DIR = Path(__file__).parent.parent / "src" / "deployspine"

PURE_MODULES = ["models.py", "planner.py", "results.py", "cancellation.py"]

FORBIDDEN_IN_PURE = {
    # Process / network I/O
    "subprocess",
    "socket",
    "httpx",
    "requests",
    # Filesystem-side helpers that belong to the provisioner
    "shutil",
    "tempfile",
    # Higher layers
    "deployspine.engine",
    "deployspine.driver",
    "deployspine.secrets",
    "deployspine.cli",
}


def extract_imports(file_path: Path) -> list[str]:
    """Extract all import statements from a Python file."""
    tree = ast.parse(file_path.read_text(encoding="utf-8"))

    imports = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                imports.append(alias.name)
        elif isinstance(node, ast.ImportFrom):
            if node.module:
                imports.append(node.module)

    return imports


def _is_forbidden(module: str, forbidden: set[str]) -> bool:
    return any(module == f or module.startswith(f + ".") for f in forbidden)


def test_pure_modules_have_no_io_imports():
    violations = []
    for name in PURE_MODULES:
        path = PACKAGE_DIR / name
        for imp in extract_imports(path):
            if _is_forbidden(imp, FORBIDDEN_IN_PURE):
                violations.append(f"{name}: imports '{imp}'")

    assert not violations, "Layering violation:\n" + "\n".join(violations)


def test_only_engine_spawns_processes():
    offenders = []
    for path in PACKAGE_DIR.rglob("*.py"):
        if path.name == "engine.py" and path.parent == PACKAGE_DIR:
            continue
        if "subprocess" in extract_imports(path):
            offenders.append(str(path.relative_to(PACKAGE_DIR)))

    assert not offenders, f"subprocess imported outside engine.py: {offenders}"
