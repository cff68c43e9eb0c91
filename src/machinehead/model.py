from __future__ import annotations

from pathlib import Path
from typing import ClassVar, Type, TypeVar

import yaml
from identify.identify import tags_from_path
from pydantic import BaseModel, ConfigDict

C = TypeVar("C", bound="Model")


class Model(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(
        frozen=True,
        use_enum_values=True,
        extra="forbid",
        coerce_numbers_to_str=True,
    )

    @classmethod
    def model_validate_yaml(cls: Type[C], y: str) -> C:
        return cls.model_validate(yaml.safe_load(y))

    @classmethod
    def from_file(cls: Type[C], file: Path) -> C:
        tags = tags_from_path(str(file))

        if "json" in tags:
            return cls.model_validate_json(file.read_text())
        elif "yaml" in tags:
            return cls.model_validate_yaml(file.read_text())
        else:
            raise NotImplementedError(f"Cannot load {file}: only JSON and YAML files are supported.")
