"""Service declaration document (YAML) loading."""

from pathlib import Path
from typing import List, Union

import yaml
from pydantic import ValidationError

from rollout_engine.core.errors import InvalidSpec
from rollout_engine.core.models import ServiceSpec
from rollout_engine.core.schemas import ServiceDeclarationDocument


def parse_declarations(text: str, source: str = "<string>") -> List[ServiceSpec]:
    """Parse a declaration document into domain specs.

    Raises:
        InvalidSpec: malformed YAML or a schema violation
    """
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise InvalidSpec(f"{source}: invalid YAML: {e}") from e

    if isinstance(data, list):
        data = {"services": data}
    if not isinstance(data, dict):
        raise InvalidSpec(f"{source}: expected a mapping with a 'services' list")

    try:
        document = ServiceDeclarationDocument.model_validate(data)
    except ValidationError as e:
        raise InvalidSpec(f"{source}: {e}") from e

    return [entry.to_domain() for entry in document.services]


def load_declarations(path: Union[str, Path]) -> List[ServiceSpec]:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise InvalidSpec(f"Declaration file not found: {path}") from e
    return parse_declarations(text, source=str(path))
