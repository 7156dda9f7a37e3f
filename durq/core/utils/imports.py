"""
Locating the app module and the handler modules it lists.

The CLI accepts either a dotted path ("myproject.queue_app") or a file
("myproject/queue_app.py"). Files are loaded under a synthetic, path-derived
module name so importing the same file twice yields the same module object
and handlers are not registered twice.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import os
import sys
from types import ModuleType

from durq.core.logging import get_logger

logger = get_logger("imports")

_PROJECT_MARKERS = ("pyproject.toml", "setup.cfg", "setup.py")


def find_project_root(directory: str) -> str | None:
    """
    `directory` itself if it holds a project marker file, else None.

    Parents are deliberately not searched: a monorepo's top-level
    pyproject.toml would expose sibling services on sys.path.
    """
    directory = os.path.abspath(directory)
    if any(os.path.exists(os.path.join(directory, m)) for m in _PROJECT_MARKERS):
        return directory
    return None


def setup_sys_path_from_cwd() -> str | None:
    """Put the current directory on sys.path when it is a project root."""
    cwd = os.getcwd()
    if find_project_root(cwd) is None or cwd in sys.path:
        return None
    sys.path.insert(0, cwd)
    logger.debug(f"Project root {cwd} prepended to sys.path")
    return cwd


def import_module_path(module_path: str) -> ModuleType:
    """importlib.import_module; raises ModuleNotFoundError when absent."""
    return importlib.import_module(module_path)


def _compute_synthetic_module_name(path: str) -> str:
    digest = hashlib.sha256(os.path.realpath(path).encode()).hexdigest()
    return f"durq._dynamic.{digest[:12]}"


def _loaded_from(file_path: str) -> ModuleType | None:
    for module in list(sys.modules.values()):
        origin = getattr(module, "__file__", None)
        if origin and os.path.realpath(origin) == file_path:
            return module
    return None


def import_file_path(
    file_path: str,
    module_name: str | None = None,
    add_parent_to_path: bool = True,
) -> ModuleType:
    """
    Load a .py file as a module, reusing it if that file is already loaded.

    The file's directory is added to sys.path (unless add_parent_to_path is
    False) so sibling imports inside it resolve.

    Raises:
        FileNotFoundError: the file does not exist
        ImportError: no loader could be built for it
    """
    file_path = os.path.realpath(file_path)
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"No such module file: {file_path}")

    existing = _loaded_from(file_path)
    if existing is not None:
        return existing

    parent = os.path.dirname(file_path)
    if add_parent_to_path and parent not in sys.path:
        sys.path.insert(0, parent)

    name = module_name or _compute_synthetic_module_name(file_path)
    spec = importlib.util.spec_from_file_location(name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot build a loader for {file_path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    spec.loader.exec_module(module)
    return module


def import_by_path(path: str, module_name: str | None = None) -> ModuleType:
    """Dispatch to import_file_path or import_module_path based on the shape of `path`."""
    if path.endswith(".py") or os.path.sep in path:
        return import_file_path(path, module_name)
    return import_module_path(path)
