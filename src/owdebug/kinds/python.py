"""Python source kind.

Local dependencies are relative imports and absolute imports that resolve
to a module or package under the project root.  Absolute imports are
searched in the entry file's directory first and then the root, for every
file in the walk, matching the ``sys.path`` the bootstrap sets up.  An
entry is a *script* when it defines a top-level ``def main`` and a *module*
when it only binds ``main`` by import or assignment.
"""

from __future__ import annotations

import ast
import json
from pathlib import Path

from owdebug.errors import ResolutionError
from owdebug.kinds._walk import is_within, package, read_source, to_posix
from owdebug.types import SourcePayload

NAME = "python"
BOOTSTRAP_NAME = "__owdebug_main__.py"
SUFFIXES = (".py",)


def _parse(file: Path) -> ast.Module:
    try:
        return ast.parse(read_source(file), filename=str(file))
    except SyntaxError as exc:
        raise ResolutionError(f"Syntax error in {file}: {exc.msg} (line {exc.lineno})") from exc


def _module_file(base: Path, parts: list[str]) -> Path | None:
    """File implementing module *parts* relative to *base*, if any."""
    target = base.joinpath(*parts) if parts else base
    init = target / "__init__.py"
    if init.is_file():
        return init
    source = target.with_name(target.name + ".py")
    if parts and source.is_file():
        return source
    return None


def _package_inits(base: Path, parts: list[str]) -> list[Path]:
    """``__init__.py`` files executed on the way to module *parts*."""
    inits = []
    for i in range(1, len(parts)):
        init = base.joinpath(*parts[:i]) / "__init__.py"
        if init.is_file():
            inits.append(init)
    return inits


def _relative_base(file: Path, level: int) -> Path:
    base = file.parent
    for _ in range(level - 1):
        base = base.parent
    return base


def _absolute_import(
    entry_dir: Path, root: Path, module: str, names: list[str]
) -> list[Path]:
    parts = module.split(".")
    for search in (entry_dir, root):
        target = _module_file(search, parts)
        if target is None:
            continue
        if not is_within(target.resolve(), root):
            return []
        found = _package_inits(search, parts) + [target]
        for name in names:
            sub = _module_file(search, [*parts, name])
            if sub is not None:
                found.append(sub)
        return found
    return []  # installed library or stdlib


def _relative_import(file: Path, node: ast.ImportFrom) -> list[Path]:
    base = _relative_base(file, node.level)
    parts = node.module.split(".") if node.module else []
    found: list[Path] = []
    init = _module_file(base, [])
    if init is not None:
        found.append(init)
    if parts:
        target = _module_file(base, parts)
        if target is None:
            raise ResolutionError(
                f"Cannot find module {'.' * node.level}{node.module} imported from {file}"
            )
        found.extend(_package_inits(base, parts))
        found.append(target)
    for alias in node.names:
        sub = _module_file(base, [*parts, alias.name]) if alias.name != "*" else None
        if sub is not None:
            found.append(sub)
        elif not parts and init is None:
            # without a package __init__ the name can only be a sibling module
            raise ResolutionError(f"Cannot find module .{alias.name} imported from {file}")
    return found


def find_imports(file: Path, root: Path, entry_dir: Path) -> list[Path]:
    if file.suffix != ".py":
        return []
    found: list[Path] = []
    for node in ast.walk(_parse(file)):
        if isinstance(node, ast.Import):
            for alias in node.names:
                found.extend(_absolute_import(entry_dir, root, alias.name, []))
        elif isinstance(node, ast.ImportFrom):
            if node.level:
                found.extend(_relative_import(file, node))
            elif node.module:
                names = [a.name for a in node.names if a.name != "*"]
                found.extend(_absolute_import(entry_dir, root, node.module, names))
    return found


def classify(text: str, rel: str) -> str:
    try:
        tree = ast.parse(text)
    except SyntaxError as exc:
        raise ResolutionError(f"Syntax error in {rel}: {exc.msg} (line {exc.lineno})") from exc
    binds_main = False
    for node in tree.body:
        if isinstance(node, ast.FunctionDef | ast.AsyncFunctionDef) and node.name == "main":
            return "script"
        if isinstance(node, ast.Import | ast.ImportFrom):
            binds_main |= any((a.asname or a.name) == "main" for a in node.names)
        elif isinstance(node, ast.Assign):
            binds_main |= any(isinstance(t, ast.Name) and t.id == "main" for t in node.targets)
    if binds_main:
        return "module"
    raise ResolutionError(f"{rel} neither defines nor exports a main function")


def wrap_source(text: str, rel: str, style: str) -> str:
    if not text.endswith("\n"):
        text += "\n"
    return f"# owdebug: {to_posix(rel)}\n{text}"


def _dotted_name(rel: str) -> str:
    path = to_posix(rel).removesuffix(".py")
    path = path.removesuffix("/__init__")
    return path.replace("/", ".")


def make_bootstrap(rel: str, style: str) -> str:
    entry = json.dumps(to_posix(rel))
    header = (
        f"# owdebug bootstrap for {to_posix(rel)}\n"
        "import importlib\n"
        "import os\n"
        "import runpy\n"
        "import sys\n"
        "\n"
        "_ROOT = os.path.dirname(os.path.abspath(__file__))\n"
        f"_ENTRY = os.path.join(_ROOT, {entry})\n"
        "for _path in (_ROOT, os.path.dirname(_ENTRY)):\n"
        "    if _path not in sys.path:\n"
        "        sys.path.insert(0, _path)\n"
        "\n"
    )
    if style == "module":
        return header + f"main = importlib.import_module({json.dumps(_dotted_name(rel))}).main\n"
    return header + 'main = runpy.run_path(_ENTRY, run_name="__owdebug_entry__")["main"]\n'


def resolve(entry: str | Path, root: Path, *, binary: bool = False) -> SourcePayload:
    return package(
        entry,
        root,
        kind=NAME,
        binary=binary,
        bootstrap_name=BOOTSTRAP_NAME,
        find_imports=find_imports,
        classify=classify,
        wrap_source=wrap_source,
        make_bootstrap=make_bootstrap,
    )


def wrap_remote(code: str) -> SourcePayload:
    """Payload for deployed action code when no local source is given."""
    rel = "__main__.py"
    return SourcePayload(
        entry_path=rel,
        code=wrap_source(code, rel, classify(code, rel)).encode("utf-8"),
        is_binary=False,
        kind=NAME,
    )


def loader(mount_path: str) -> str:
    """Init code: on every run, execute the current revision's bootstrap afresh.

    Modules loaded from the mount are dropped from ``sys.modules`` before and
    after each run so edited dependencies are re-imported.
    """
    mount = json.dumps(to_posix(mount_path).rstrip("/") or "/")
    bootstrap = json.dumps(BOOTSTRAP_NAME)
    return f"""\
import importlib
import os
import runpy
import sys

_MOUNT = {mount}


def _purge():
    prefix = os.path.realpath(_MOUNT) + "/"
    for name, module in list(sys.modules.items()):
        origin = getattr(module, "__file__", None) or ""
        if origin.startswith(prefix):
            del sys.modules[name]
    sys.path[:] = [p for p in sys.path if not str(p).startswith(prefix)]
    importlib.invalidate_caches()


def main(args):
    revision = os.path.realpath(os.path.join(_MOUNT, "current"))
    _purge()
    try:
        namespace = runpy.run_path(os.path.join(revision, {bootstrap}), run_name="__owdebug__")
        return namespace["main"](args)
    finally:
        _purge()
"""
