"""Load model definitions from files."""

from __future__ import annotations

import importlib
import importlib.util
import sys
from pathlib import Path

from lens.pipeline.decorators import ModelMetadata, clear_registry, get_registry


def load_models_from_file(file_path: str | Path) -> dict[str, ModelMetadata]:
    """Load a Python file and return all @model-decorated functions found."""
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Model file not found: {file_path}")

    clear_registry()

    module_name = f"lens_models_{file_path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load module from {file_path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
        models = dict(get_registry())
    finally:
        clear_registry()
        del sys.modules[module_name]

    return models


def load_builtin_project() -> dict[str, ModelMetadata]:
    """The bundled MovieLens project."""
    module_name = "lens.project.movielens"
    clear_registry()
    if module_name in sys.modules:
        importlib.reload(sys.modules[module_name])
    else:
        importlib.import_module(module_name)
    models = dict(get_registry())
    clear_registry()
    return models
