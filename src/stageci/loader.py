# loader.py
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import List

from pydantic import ValidationError

from .definition import pipeline_from_dict
from .errors import DefinitionError
from .model import Pipeline

DEFAULT_PIPELINE_FILES = ("stageci_pipeline.py", "stageci_pipeline.json")


def find_pipeline_files(directory: str | Path = ".") -> List[Path]:
    """
    Find pipeline definition files in `directory`:
      - stageci_pipeline.py / stageci_pipeline.json
      - *_pipeline.py / *.pipeline.json
    """
    root = Path(directory)
    found = {root / name for name in DEFAULT_PIPELINE_FILES if (root / name).exists()}
    found.update(root.glob("*_pipeline.py"))
    found.update(root.glob("*.pipeline.json"))
    return sorted(found)


def _load_python(path: Path) -> Pipeline:
    module_name = f"stageci_pipeline_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    definition = None
    if "get_pipeline" in globals_dict and callable(globals_dict["get_pipeline"]):
        definition = globals_dict["get_pipeline"]()
    elif "PIPELINE" in globals_dict:
        definition = globals_dict["PIPELINE"]

    if isinstance(definition, dict):
        return _from_dict(definition, path)
    if not isinstance(definition, Pipeline):
        raise DefinitionError(
            "Pipeline file must define get_pipeline() -> Pipeline or PIPELINE = pipeline(...)",
            path=str(path),
        )
    return definition


def _from_dict(data: dict, path: Path) -> Pipeline:
    try:
        return pipeline_from_dict(data)
    except ValidationError as e:
        raise DefinitionError(f"invalid pipeline definition:\n{e}", path=str(path)) from e
    except ValueError as e:
        raise DefinitionError(str(e), path=str(path)) from e


def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a .py file (get_pipeline() or PIPELINE) or a
    .json descriptor.
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise DefinitionError(f"Pipeline file not found: {p}", path=str(p))

    if p.suffix == ".py":
        return _load_python(p)
    if p.suffix == ".json":
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise DefinitionError(f"invalid JSON: {e}", path=str(p)) from e
        if not isinstance(data, dict):
            raise DefinitionError("pipeline descriptor must be a JSON object", path=str(p))
        return _from_dict(data, p)

    raise DefinitionError(f"Pipeline must be a .py or .json file, got: {p.name}", path=str(p))
