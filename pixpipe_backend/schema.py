import functools
import json
from pathlib import Path

BUNDLED_SCHEMA = Path(__file__).resolve().parent / "pixpipe.schema.json"


@functools.lru_cache(maxsize=8)
def _read_schema(path: str) -> dict:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"schema {path} must be a JSON object")
    return data


def load_schema_json(schema_path: str | None = None) -> dict:
    """Pipeline config schema; the bundled one unless `schema_path` is given. Callers must not mutate it."""
    p = Path(schema_path).expanduser().resolve() if schema_path is not None else BUNDLED_SCHEMA
    return _read_schema(str(p))
