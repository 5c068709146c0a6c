"""Local import discovery for test units.

Scans a file's text for references to other local files and resolves them
to paths, then expands them transitively. Scanning is pluggable per file
extension: a regex scanner covers JavaScript/TypeScript ``import``/
``require`` forms, and an ``ast``-based scanner covers Python imports.
Both are approximate by nature; anything they cannot resolve to an
existing local file is ignored rather than reported.

The import graph of a real project may contain cycles. Transitive
expansion keeps a visited set so every file is expanded at most once.
"""

from __future__ import annotations

import ast
import os
import re
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


JS_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")


@dataclass
class DependencyNode:
    """Direct and transitive local dependencies of one test unit."""

    direct: list[str] = field(default_factory=list)
    transitive: list[str] = field(default_factory=list)
    last_modified: int = 0  # epoch millis

    @property
    def all(self) -> list[str]:
        """Direct dependencies followed by transitive ones."""
        return self.direct + [d for d in self.transitive if d not in self.direct]

    def to_dict(self) -> dict[str, Any]:
        return {
            "directDependencies": list(self.direct),
            "transitiveDependencies": list(self.transitive),
            "lastModified": self.last_modified,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DependencyNode:
        return cls(
            direct=[str(d) for d in data.get("directDependencies", [])],
            transitive=[str(d) for d in data.get("transitiveDependencies", [])],
            last_modified=int(data.get("lastModified", 0) or 0),
        )


class ImportScanner:
    """Base class for per-language import scanners.

    Subclasses list the file extensions they handle and implement
    :meth:`scan`, returning resolved local dependency paths.
    """

    extensions: tuple[str, ...] = ()

    def handles(self, path: Path) -> bool:
        return path.suffix in self.extensions

    def scan(self, path: Path, text: str, root: Path) -> list[Path]:
        raise NotImplementedError


class RegexImportScanner(ImportScanner):
    """Finds relative ``import``/``require``/``from`` specifiers in JS/TS."""

    extensions = JS_EXTENSIONS

    IMPORT_PATTERN = re.compile(
        r"""(?:\bfrom\s+|\bimport\s*\(?\s*|\brequire\s*\(\s*)['"`]([^'"`]+)['"`]"""
    )

    def scan(self, path: Path, text: str, root: Path) -> list[Path]:
        found: list[Path] = []
        for match in self.IMPORT_PATTERN.finditer(text):
            specifier = match.group(1)
            # Bare specifiers are packages, not local files
            if not specifier.startswith("."):
                continue
            resolved = self._resolve(path.parent, specifier)
            if resolved is not None:
                found.append(resolved)
        return found

    def _resolve(self, base_dir: Path, specifier: str) -> Path | None:
        candidate = base_dir / specifier
        if candidate.is_file():
            return candidate

        for ext in JS_EXTENSIONS:
            with_ext = candidate.with_name(candidate.name + ext)
            if with_ext.is_file():
                return with_ext

        for ext in JS_EXTENSIONS:
            index_file = candidate / f"index{ext}"
            if index_file.is_file():
                return index_file

        return None


class PythonImportScanner(ImportScanner):
    """Resolves Python imports that point at modules inside the project root.

    Relative imports are resolved against the importing file's package;
    absolute imports are resolved against *root*. Imports of installed
    packages do not exist under the root and are dropped.
    """

    extensions = (".py",)

    def scan(self, path: Path, text: str, root: Path) -> list[Path]:
        try:
            tree = ast.parse(text, filename=str(path))
        except (SyntaxError, ValueError):
            return []

        found: list[Path] = []
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    module = self._module_file(root, alias.name.split("."))
                    if module is not None:
                        found.append(module)
            elif isinstance(node, ast.ImportFrom):
                if node.level > 0:
                    base = path.parent
                    for _ in range(node.level - 1):
                        base = base.parent
                else:
                    base = root
                parts = node.module.split(".") if node.module else []

                # "from pkg import name" may name a submodule or an attribute
                matched_submodule = False
                for alias in node.names:
                    if alias.name == "*":
                        continue
                    submodule = self._module_file(base, parts + [alias.name])
                    if submodule is not None:
                        found.append(submodule)
                        matched_submodule = True
                if parts and not matched_submodule:
                    module = self._module_file(base, parts)
                    if module is not None:
                        found.append(module)
        return found

    @staticmethod
    def _module_file(base: Path, parts: list[str]) -> Path | None:
        if not parts:
            return None
        candidate = base.joinpath(*parts)
        module_file = candidate.with_name(candidate.name + ".py")
        if module_file.is_file():
            return module_file
        package_init = candidate / "__init__.py"
        if package_init.is_file():
            return package_init
        return None


def default_scanners() -> list[ImportScanner]:
    return [PythonImportScanner(), RegexImportScanner()]


class DependencyResolver:
    """Resolves the local dependency closure of test files.

    Paths are reported as identities: POSIX-style paths relative to *root*.
    """

    def __init__(
        self,
        root: str | Path | None = None,
        scanners: list[ImportScanner] | None = None,
    ) -> None:
        self.root = Path(root if root is not None else os.getcwd()).resolve()
        self.scanners = scanners if scanners is not None else default_scanners()

    def normalize(self, path: str | Path) -> str:
        """Return the identity of *path*: relative to root, forward slashes."""
        absolute = self.absolute(path)
        return os.path.relpath(absolute, self.root).replace("\\", "/")

    def absolute(self, path: str | Path) -> Path:
        """Absolute, lexically normalized path for an identity or path."""
        p = Path(path)
        if not p.is_absolute():
            p = self.root / p
        return Path(os.path.normpath(p))

    def _scanner_for(self, path: Path) -> ImportScanner | None:
        for scanner in self.scanners:
            if scanner.handles(path):
                return scanner
        return None

    def direct_dependencies(self, path: str | Path) -> list[str]:
        """Scan one file for local imports.

        Args:
            path: File to scan.

        Returns:
            Identities of the existing local files it imports, deduplicated
            in first-seen order. Unreadable files have no dependencies.
        """
        absolute = self.absolute(path)
        scanner = self._scanner_for(absolute)
        if scanner is None:
            return []
        try:
            text = absolute.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return []

        own_identity = self.normalize(absolute)
        seen: set[str] = set()
        result: list[str] = []
        for dep in scanner.scan(absolute, text, self.root):
            identity = self.normalize(dep)
            if identity == own_identity or identity in seen:
                continue
            seen.add(identity)
            result.append(identity)
        return result

    def transitive_dependencies(
        self,
        dependencies: list[str],
        exclude: set[str] | None = None,
    ) -> list[str]:
        """Expand *dependencies* to everything they reach, breadth-first.

        Args:
            dependencies: Starting identities (not included in the result).
            exclude: Identities never to report, typically the unit itself.

        Returns:
            Identities reachable from the starting set, excluding the
            starting set and *exclude*. Each file is scanned at most once,
            so import cycles terminate.
        """
        start = [self.normalize(d) for d in dependencies]
        visited: set[str] = set(start) | (exclude or set())
        queue: deque[str] = deque(start)
        result: list[str] = []

        while queue:
            current = queue.popleft()
            for dep in self.direct_dependencies(current):
                if dep in visited:
                    continue
                visited.add(dep)
                result.append(dep)
                queue.append(dep)

        return result

    def resolve(
        self,
        path: str | Path,
        explicit: list[str] | None = None,
    ) -> DependencyNode:
        """Build the dependency node for a test unit.

        Args:
            path: The test file.
            explicit: Dependencies to use instead of scanning the file.
                Nonexistent explicit dependencies are dropped.

        Returns:
            DependencyNode with direct and transitive identities.
        """
        identity = self.normalize(path)
        if explicit is not None:
            direct = []
            for dep in explicit:
                dep_identity = self.normalize(dep)
                if dep_identity != identity and dep_identity not in direct:
                    if self.absolute(dep_identity).is_file():
                        direct.append(dep_identity)
        else:
            direct = self.direct_dependencies(path)

        transitive = self.transitive_dependencies(direct, exclude={identity})
        return DependencyNode(
            direct=direct,
            transitive=transitive,
            last_modified=int(time.time() * 1000),
        )

    def find_cycle(self, path: str | Path) -> list[str] | None:
        """Find an import cycle reachable from *path*, if any.

        Returns:
            Identities forming the cycle (first element repeated at the
            end), or None when the reachable import graph is acyclic.
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        color: dict[str, int] = {}
        stack: list[str] = []
        edges: dict[str, list[str]] = {}

        def deps_of(name: str) -> list[str]:
            if name not in edges:
                edges[name] = self.direct_dependencies(name)
            return edges[name]

        def dfs(name: str) -> list[str] | None:
            color[name] = GRAY
            stack.append(name)
            for dep in deps_of(name):
                state = color.get(dep, WHITE)
                if state == GRAY:
                    return stack[stack.index(dep):] + [dep]
                if state == WHITE:
                    cycle = dfs(dep)
                    if cycle is not None:
                        return cycle
            stack.pop()
            color[name] = BLACK
            return None

        return dfs(self.normalize(path))
