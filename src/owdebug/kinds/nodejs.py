"""Node.js source kind.

Local dependencies are CommonJS ``require()`` calls with a relative path.
An entry file is a *module* when it assigns ``exports.main`` or
``module.exports``; otherwise it is a plain *script* whose top-level
``main`` the bootstrap exports.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from pathlib import Path

from owdebug.errors import ResolutionError
from owdebug.kinds._walk import is_within, package, read_source, to_posix
from owdebug.types import SourcePayload

NAME = "nodejs"
BOOTSTRAP_NAME = "__owdebug_main__.js"
SUFFIXES = (".js", ".cjs")

_REQUIRE_RE = re.compile(r"""\brequire\(\s*(['"`])(?P<spec>[^'"`]+)\1\s*\)""")
_COMMENT_OR_STRING_RE = re.compile(
    r"""(?P<string>'(?:\\.|[^'\\\n])*'|"(?:\\.|[^"\\\n])*"|`(?:\\.|[^`\\])*`)"""
    r"|/\*.*?\*/"
    r"|//[^\n]*",
    re.S,
)
_MODULE_RE = re.compile(r"\b(?:module\.)?exports\.main\s*=|\bmodule\.exports\s*=")
_SCRIPT_MAIN_RE = re.compile(r"\bfunction\s+main\s*\(|\b(?:const|let|var)\s+main\s*=")

_EXTENSIONS = ("", ".js", ".cjs", ".json")
_SCANNED = (".js", ".cjs")


def _strip_comments(text: str) -> str:
    """Drop ``//`` and ``/* */`` comments; string literals are kept as they are."""
    return _COMMENT_OR_STRING_RE.sub(
        lambda m: m.group("string") if m.group("string") is not None else " ", text
    )


def _candidates(base: Path) -> Iterator[Path]:
    for ext in _EXTENSIONS:
        yield base.with_name(base.name + ext) if ext else base
    yield base / "index.js"


def find_imports(file: Path, root: Path, entry_dir: Path) -> list[Path]:
    if file.suffix not in _SCANNED:
        return []
    found: list[Path] = []
    for match in _REQUIRE_RE.finditer(_strip_comments(read_source(file))):
        spec = to_posix(match.group("spec"))
        if not spec.startswith(("./", "../", "/")):
            continue  # package from node_modules or a core module
        base = (file.parent / spec).resolve()
        target = next((c for c in _candidates(base) if c.is_file()), None)
        if target is None:
            if is_within(base, root):
                raise ResolutionError(f"Cannot find {spec!r} required from {file}")
            continue
        found.append(target)
    return found


def classify(text: str, rel: str) -> str:
    code = _strip_comments(text)
    if _MODULE_RE.search(code):
        return "module"
    if _SCRIPT_MAIN_RE.search(code):
        return "script"
    raise ResolutionError(f"{rel} neither defines nor exports a main function")


def wrap_source(text: str, rel: str, style: str) -> str:
    if not text.endswith("\n"):
        # a trailing line comment would otherwise swallow the export below
        text += "\n"
    out = f"// owdebug: {to_posix(rel)}\n{text}"
    if style == "script":
        out += ";module.exports.main = main;\n"
    return out


def make_bootstrap(rel: str, style: str) -> str:
    entry = json.dumps(to_posix(rel))
    if style == "module":
        return (
            f"// owdebug bootstrap for {to_posix(rel)}\n"
            'const path = require("path");\n'
            f"module.exports = require(path.join(__dirname, {entry}));\n"
        )
    return (
        f"// owdebug bootstrap for {to_posix(rel)}\n"
        'const fs = require("fs");\n'
        'const path = require("path");\n'
        'const Module = require("module");\n'
        "\n"
        f"const filename = path.join(__dirname, {entry});\n"
        "const entry = new Module(filename, module);\n"
        "entry.filename = filename;\n"
        "entry.paths = Module._nodeModulePaths(path.dirname(filename));\n"
        'const source = fs.readFileSync(filename, "utf8");\n'
        'entry._compile(source + "\\n;module.exports.main = main;\\n", filename);\n'
        "module.exports = entry.exports;\n"
    )


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
    rel = "action.js"
    return SourcePayload(
        entry_path=rel,
        code=wrap_source(code, rel, classify(code, rel)).encode("utf-8"),
        is_binary=False,
        kind=NAME,
    )


def loader(mount_path: str) -> str:
    """Init code: on every run, require the current revision's bootstrap afresh."""
    mount = json.dumps(to_posix(mount_path).rstrip("/") or "/")
    bootstrap = json.dumps(BOOTSTRAP_NAME)
    return f"""\
const fs = require("fs");
const path = require("path");

const MOUNT = {mount};

function main(params) {{
    const base = fs.realpathSync(MOUNT) + "/";
    const revision = fs.realpathSync(path.join(MOUNT, "current"));
    for (const key of Object.keys(require.cache)) {{
        if (key.startsWith(base)) {{
            delete require.cache[key];
        }}
    }}
    process.chdir(revision);
    return require(path.join(revision, {bootstrap})).main(params);
}}

module.exports.main = main;
"""
