"""
Kernel boundary checks.

1. change_control/** may NOT import change_config.  Configuration flows
   into the kernel through change_config.bridges only.

2. Domain modules stay pure: change_control.domain never imports
   SQLAlchemy, services or models.

3. Kernel services never commit; the request pipeline owns the
   transaction.

4. Log calls never pass an ``extra`` key that collides with a
   LogRecord attribute; logging raises KeyError on those.

These tests read source code via AST and never import it.
"""

import ast
import logging
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]


def _python_files(package: str) -> list[Path]:
    return sorted((ROOT / package).rglob("*.py"))


def _extract_imports(path: Path) -> list[tuple[int, str]]:
    tree = ast.parse(path.read_text(), filename=str(path))
    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom) and node.module:
            results.append((node.lineno, node.module))
    return results


def _violations(paths: list[Path], prefixes: tuple[str, ...]) -> list[str]:
    found = []
    for path in paths:
        for lineno, module in _extract_imports(path):
            if any(module == p or module.startswith(f"{p}.") for p in prefixes):
                found.append(f"  {path.relative_to(ROOT)}:{lineno} imports '{module}'")
    return found


class TestKernelNoUpwardDependencies:
    def test_kernel_does_not_import_config(self):
        violations = _violations(_python_files("change_control"), ("change_config",))
        assert not violations, "change_control must not import change_config:\n" + "\n".join(violations)

    def test_config_reaches_kernel_only_through_bridges(self):
        kernel_importers = [
            path.name
            for path in _python_files("change_config")
            if _violations([path], ("change_control",))
        ]
        assert kernel_importers == ["bridges.py"]


class TestDomainPurity:
    FORBIDDEN = ("sqlalchemy", "change_control.services", "change_control.models", "change_control.db")

    def test_domain_has_no_infrastructure_imports(self):
        violations = _violations(_python_files("change_control/domain"), self.FORBIDDEN)
        assert not violations, "domain modules must stay pure:\n" + "\n".join(violations)


def _is_session(node: ast.expr) -> bool:
    if isinstance(node, ast.Name):
        return node.id == "session"
    return isinstance(node, ast.Attribute) and node.attr in ("session", "_session")


class TestServicesDoNotCommit:
    def test_only_pipeline_commits(self):
        committers = []
        for path in _python_files("change_control/services"):
            tree = ast.parse(path.read_text(), filename=str(path))
            for node in ast.walk(tree):
                if (
                    isinstance(node, ast.Call)
                    and isinstance(node.func, ast.Attribute)
                    and node.func.attr == "commit"
                    and _is_session(node.func.value)
                ):
                    committers.append(path.name)
        assert set(committers) <= {"request_pipeline.py"}


_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _extra_keys(path: Path) -> list[tuple[int, str]]:
    tree = ast.parse(path.read_text(), filename=str(path))
    keys = []
    for node in ast.walk(tree):
        if not isinstance(node, ast.Call):
            continue
        for kw in node.keywords:
            if kw.arg == "extra" and isinstance(kw.value, ast.Dict):
                keys.extend(
                    (k.lineno, k.value)
                    for k in kw.value.keys
                    if isinstance(k, ast.Constant) and isinstance(k.value, str)
                )
    return keys


class TestLogExtraKeys:
    def test_extra_keys_do_not_shadow_record_attributes(self):
        clashes = [
            f"  {path.relative_to(ROOT)}:{lineno} extra key '{key}'"
            for package in ("change_control", "change_config")
            for path in _python_files(package)
            for lineno, key in _extra_keys(path)
            if key in _RECORD_ATTRIBUTES
        ]
        assert not clashes, "log extra keys shadow LogRecord attributes:\n" + "\n".join(clashes)
